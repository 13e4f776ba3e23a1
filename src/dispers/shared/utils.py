"""
Shared utility functions.
"""
import base64
import json
import logging
import sys
import time
from typing import Any, List, Optional, Sequence, TypeVar, Union

import numpy as np

T = TypeVar("T")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Union[str, int] = "INFO") -> None:
    """
    Send dispers logs to stderr.

    Args:
        level: Logging level name or number
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger("dispers")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


def b64encode(data: bytes) -> str:
    """Encode bytes as a base64 string (Go []byte JSON convention)."""
    return base64.b64encode(data).decode("utf-8")


def b64decode(data: Union[str, bytes]) -> bytes:
    """Decode a base64 string back into bytes."""
    return base64.b64decode(data, validate=True)


def canonical_json(obj: Any) -> str:
    """Compact JSON with sorted keys, stable across processes."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def split_evenly(items: Sequence[T], parts: int) -> List[List[T]]:
    """
    Split a sequence into `parts` contiguous chunks of near-equal size.

    Args:
        items: Sequence to split
        parts: Number of chunks (at least 1)

    Returns:
        List of exactly `parts` lists; trailing chunks may be empty
    """
    if parts < 1:
        raise ValueError(f"Cannot split into {parts} parts")
    indices = np.array_split(np.arange(len(items)), parts)
    return [[items[int(i)] for i in chunk] for chunk in indices]


class Timer:
    """Context manager for timing operations."""

    def __init__(self, name: str = "Operation"):
        self.name = name
        self.start_time: Optional[float] = None
        self.elapsed: Optional[float] = None

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        self.elapsed = time.perf_counter() - self.start_time

    @property
    def elapsed_ms(self) -> float:
        """Get elapsed time in milliseconds."""
        if self.elapsed is None:
            if self.start_time is not None:
                return (time.perf_counter() - self.start_time) * 1000
            return 0.0
        return self.elapsed * 1000
