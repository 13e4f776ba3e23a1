"""Shared protocol, set algebra and utilities."""
from dispers.shared.codec import Cipher, PayloadCodec
from dispers.shared.operation_tree import (
    And,
    Leaf,
    NodeType,
    OperationTree,
    Or,
    decode_tree,
    encode_tree,
    evaluate,
)
from dispers.shared.utils import Timer, configure_logging

__all__ = [
    "Cipher",
    "PayloadCodec",
    "And",
    "Leaf",
    "NodeType",
    "OperationTree",
    "Or",
    "decode_tree",
    "encode_tree",
    "evaluate",
    "Timer",
    "configure_logging",
]
