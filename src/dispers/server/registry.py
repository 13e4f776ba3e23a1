"""
Registry of data holders subscribed to concepts.

The Conductor keeps, for every concept hash, the addresses of the instances
that registered under it. An instance re-registering with a newer version
supersedes its previous record under every concept.
"""
import logging
import threading
from typing import Dict, Iterable, List

from dispers.shared.errors import InstanceConflictError
from dispers.shared.protocol import Instance

logger = logging.getLogger(__name__)


class InstanceRegistry:
    """In-memory concept -> instances index."""

    def __init__(self):
        self._instances: Dict[str, Instance] = {}        # domain -> latest record
        self._concepts: Dict[str, List[str]] = {}        # concept hash -> domains
        self._lock = threading.Lock()

    def subscribe(self, instance: Instance, concept_hashes: Iterable[str]) -> bool:
        """
        Register an instance under concepts.

        Args:
            instance: Instance record
            concept_hashes: Hex hashes of the concepts it matches

        Returns:
            False when an older version was ignored, True otherwise

        Raises:
            InstanceConflictError: Same version already registered with
                                   another token
        """
        with self._lock:
            current = self._instances.get(instance.domain)
            if current is not None:
                if instance.version < current.version:
                    logger.warning(
                        "Ignoring version %d of %s, version %d is registered",
                        instance.version, instance.domain, current.version,
                    )
                    return False
                if instance.version == current.version and instance.token_bearer != current.token_bearer:
                    raise InstanceConflictError(instance.domain, instance.version)

            self._instances[instance.domain] = instance
            for concept_hash in concept_hashes:
                domains = self._concepts.setdefault(concept_hash, [])
                if instance.domain not in domains:
                    domains.append(instance.domain)
        logger.info("Registered %s (version %d)", instance.domain, instance.version)
        return True

    def unsubscribe(self, domain: str) -> None:
        with self._lock:
            self._instances.pop(domain, None)
            for domains in self._concepts.values():
                if domain in domains:
                    domains.remove(domain)

    def addresses(self, concept_hash: str) -> List[str]:
        """Addresses registered under a concept, in registration order."""
        with self._lock:
            return [
                self._instances[domain].address
                for domain in self._concepts.get(concept_hash, [])
            ]

    def __len__(self) -> int:
        return len(self._instances)
