"""
Concept Indexer role.

Turns the concepts of a query (or of an instance subscription) into stable
identifiers. The indexer sees concepts in clear only inside its enclave; what
leaves it is the hash plus the payload it was given.
"""
import hashlib
import hmac
import logging
from typing import Callable, List, Optional

from dispers.shared.codec import Cipher, PayloadCodec
from dispers.shared.errors import ConceptHashError
from dispers.shared.protocol import Concept, InputCI, OutputCI
from dispers.shared.utils import Timer

logger = logging.getLogger(__name__)

HashFunction = Callable[[str], bytes]


def hmac_sha256(salt: str) -> HashFunction:
    """Default concept hash: HMAC-SHA256 keyed by `salt`."""
    key = salt.encode("utf-8")

    def _hash(concept: str) -> bytes:
        return hmac.new(key, concept.strip().lower().encode("utf-8"), hashlib.sha256).digest()

    return _hash


class ConceptIndexer:
    """
    Concept Indexer enclave.

    Stateless: every call to `run` is independent.
    """

    def __init__(
        self,
        salt: str = "",
        cipher: Optional[Cipher] = None,
        hash_fn: Optional[HashFunction] = None,
    ):
        """
        Initialize the indexer.

        Args:
            salt: Secret mixed into the default hash function
            cipher: Cipher for encrypted concepts
            hash_fn: Replacement hash function (concept -> digest)
        """
        self.codec = PayloadCodec(cipher)
        self.hash_fn = hash_fn or hmac_sha256(salt)

    def hash_concept(self, concept: str) -> bytes:
        if not concept or not concept.strip():
            raise ConceptHashError("Cannot hash an empty concept")
        try:
            return self.hash_fn(concept)
        except ConceptHashError:
            raise
        except Exception as e:
            raise ConceptHashError(f"Cannot hash concept: {e}") from e

    def run(self, request: InputCI) -> OutputCI:
        """
        Hash every concept of the request.

        Args:
            request: Plaintext `concepts` or, when encrypted, `enc_concepts`

        Returns:
            One Concept per input, in input order, carrying the original
            payload and its hash
        """
        hashes: List[Concept] = []

        with Timer() as t:
            if request.is_encrypted:
                for concept in request.enc_concepts or []:
                    if concept.enc_concept is None:
                        raise ConceptHashError("Encrypted concept without payload")
                    clear = self.codec.open_bytes(concept.enc_concept, True)
                    hashes.append(Concept(
                        enc_concept=concept.enc_concept,
                        hash=self.hash_concept(clear.decode("utf-8")),
                    ))
            else:
                for concept in request.concepts or []:
                    hashes.append(Concept(
                        enc_concept=concept.encode("utf-8"),
                        hash=self.hash_concept(concept),
                    ))

        logger.debug("Hashed %d concepts in %.2fms", len(hashes), t.elapsed_ms)
        return OutputCI(hashes=hashes)
