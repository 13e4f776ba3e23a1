"""Conductor and its HTTP surface."""
from dispers.server.conductor import Conductor
from dispers.server.registry import InstanceRegistry
from dispers.server.settings import DispersSettings

__all__ = [
    "Conductor",
    "InstanceRegistry",
    "DispersSettings",
]
