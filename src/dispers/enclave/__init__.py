"""Stateless processing roles run inside enclaves."""
from dispers.enclave.concept_indexer import ConceptIndexer
from dispers.enclave.data_aggregator import DataAggregator
from dispers.enclave.stack import InMemoryStack
from dispers.enclave.target import TargetRole
from dispers.enclave.target_finder import TargetFinder

__all__ = [
    "ConceptIndexer",
    "DataAggregator",
    "InMemoryStack",
    "TargetRole",
    "TargetFinder",
]
