"""
Target Finder role.

Resolves a target profile against the per-concept address lists sent by the
Conductor and returns the final list of targets.
"""
import logging
from typing import Dict, List, Optional

from dispers.shared.codec import Cipher, PayloadCodec
from dispers.shared.errors import PayloadDecodeError
from dispers.shared.operation_tree import decode_tree, evaluate
from dispers.shared.protocol import InputTF, OutputTF
from dispers.shared.utils import Timer

logger = logging.getLogger(__name__)


class TargetFinder:
    """Target Finder enclave."""

    def __init__(self, cipher: Optional[Cipher] = None):
        self.codec = PayloadCodec(cipher)

    def _address_sets(self, request: InputTF) -> Dict[str, List[str]]:
        address_sets = {}
        for name, blob in (request.enc_instances or {}).items():
            addresses = self.codec.open(blob, request.is_encrypted, f"address list {name!r}")
            if not isinstance(addresses, list) or not all(isinstance(a, str) for a in addresses):
                raise PayloadDecodeError(f"Address list {name!r} is not a list of strings")
            address_sets[name] = addresses
        return address_sets

    def run(self, request: InputTF) -> OutputTF:
        """
        Compute the targets of a query.

        Args:
            request: Address lists (`enc_instances`) and target profile
                     (`enc_operation`)

        Returns:
            OutputTF whose `enc_targets` holds the resolved address list

        Raises:
            OperationTreeError: The profile is malformed or names an unknown
                                concept; surfaced unchanged
        """
        address_sets = self._address_sets(request)
        tree = decode_tree(self.codec.open(request.enc_operation, request.is_encrypted, "operation"))

        with Timer() as t:
            targets = evaluate(tree, address_sets)

        logger.debug(
            "Resolved %d targets from %d address lists in %.2fms",
            len(targets), len(address_sets), t.elapsed_ms,
        )
        return OutputTF(
            enc_targets=self.codec.seal(targets, request.is_encrypted),
            task_metadata=request.task_metadata,
        )
