"""HTTP clients for remote roles and Conductors."""
from dispers.client.remote import (
    ConductorClient,
    RemoteConceptIndexer,
    RemoteDataAggregator,
    RemoteTarget,
    RemoteTargetFinder,
)

__all__ = [
    "ConductorClient",
    "RemoteConceptIndexer",
    "RemoteDataAggregator",
    "RemoteTarget",
    "RemoteTargetFinder",
]
