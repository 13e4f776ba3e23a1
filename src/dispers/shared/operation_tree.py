"""
Target profile set algebra.

A target profile is a binary expression tree over named address-sets:

- Leaf: names one address-set
- Or:   union of both children's sets
- And:  intersection of both children's sets

Leaf names are resolved at evaluation time against a mapping supplied by the
Target Finder (concept identifier -> list of addresses). The tree travels as a
self-describing JSON record whose `type` field selects the node kind:

    {"type": 0, "value": "A"}
    {"type": 1, "left_node": {...}, "right_node": {...}}
"""
import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, List, Mapping, Sequence, Union

from dispers.shared.errors import (
    MalformedTreeError,
    UnknownLeafError,
    UnknownNodeKindError,
)

MAX_TREE_DEPTH = 256


class NodeType(IntEnum):
    """Wire discriminator of a tree node."""
    SINGLE = 0
    OR = 1
    AND = 2


class _Node:
    """Operator sugar shared by every node kind."""

    def __or__(self, other: "OperationTree") -> "Or":
        return Or(self, other)

    def __and__(self, other: "OperationTree") -> "And":
        return And(self, other)


@dataclass(frozen=True)
class Leaf(_Node):
    """Reference to one address-set by name."""
    name: str

    @property
    def node_type(self) -> NodeType:
        return NodeType.SINGLE


@dataclass(frozen=True)
class Or(_Node):
    """Deduplicated union of two subtrees."""
    left: "OperationTree"
    right: "OperationTree"

    @property
    def node_type(self) -> NodeType:
        return NodeType.OR


@dataclass(frozen=True)
class And(_Node):
    """Intersection of two subtrees."""
    left: "OperationTree"
    right: "OperationTree"

    @property
    def node_type(self) -> NodeType:
        return NodeType.AND


OperationTree = Union[Leaf, Or, And]


def union(a: Sequence[str], b: Sequence[str]) -> List[str]:
    """Union of two address lists, first-seen order, no duplicates."""
    seen = set()
    result = []
    for item in list(a) + list(b):
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def intersection(a: Sequence[str], b: Sequence[str]) -> List[str]:
    """
    Addresses of `b` that are also in `a`, in `b` order, no duplicates.

    Membership is tested against a set built from `a`; the result is the
    same as a linear scan of `a` for every element of `b`.
    """
    members = set(a)
    seen = set()
    result = []
    for item in b:
        if item in members and item not in seen:
            seen.add(item)
            result.append(item)
    return result


def evaluate(tree: OperationTree, address_sets: Mapping[str, Sequence[str]]) -> List[str]:
    """
    Resolve a target profile into a list of addresses.

    Args:
        tree: Root node of the target profile
        address_sets: Mapping from leaf name to its ordered list of addresses

    Returns:
        Deduplicated list of addresses

    Raises:
        UnknownLeafError: A leaf name is missing from `address_sets`
        UnknownNodeKindError: A node is not a Leaf, Or or And
    """
    if isinstance(tree, Leaf):
        if tree.name not in address_sets:
            raise UnknownLeafError(tree.name, address_sets.keys())
        return list(address_sets[tree.name])

    if isinstance(tree, (Or, And)):
        a = evaluate(tree.left, address_sets)
        b = evaluate(tree.right, address_sets)
        if isinstance(tree, Or):
            return union(a, b)
        return intersection(a, b)

    raise UnknownNodeKindError(type(tree).__name__)


def encode_tree(tree: OperationTree) -> Dict[str, Any]:
    """Encode a tree into its self-describing wire record."""
    if isinstance(tree, Leaf):
        return {"type": int(NodeType.SINGLE), "value": tree.name}
    if isinstance(tree, (Or, And)):
        return {
            "type": int(tree.node_type),
            "left_node": encode_tree(tree.left),
            "right_node": encode_tree(tree.right),
        }
    raise UnknownNodeKindError(type(tree).__name__)


def tree_to_json(tree: OperationTree) -> str:
    """Encode a tree as a JSON string."""
    return json.dumps(encode_tree(tree))


def _node_type(payload: Mapping[str, Any]) -> NodeType:
    raw = payload.get("type")
    if raw is None:
        raise MalformedTreeError("No type defined")
    # JSON numbers may come back as floats; bools are ints in Python
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise MalformedTreeError(f"Invalid type field: {raw!r}")
    if isinstance(raw, float):
        if not raw.is_integer():
            raise MalformedTreeError(f"Invalid type field: {raw!r}")
        raw = int(raw)
    try:
        return NodeType(raw)
    except ValueError:
        raise UnknownNodeKindError(raw) from None


def _decode_node(payload: Any, depth: int) -> OperationTree:
    if depth > MAX_TREE_DEPTH:
        raise MalformedTreeError(f"Tree deeper than {MAX_TREE_DEPTH} levels")
    if not isinstance(payload, Mapping):
        raise MalformedTreeError(f"Expected a node object, got {type(payload).__name__}")

    node_type = _node_type(payload)

    if node_type == NodeType.SINGLE:
        value = payload.get("value", "")
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise MalformedTreeError(f"Leaf value must be a string, got {type(value).__name__}")
        return Leaf(value)

    children = []
    for field in ("left_node", "right_node"):
        if field not in payload or payload[field] is None:
            raise MalformedTreeError(f"Missing {field} for {node_type.name} node")
        children.append(_decode_node(payload[field], depth + 1))

    if node_type == NodeType.OR:
        return Or(children[0], children[1])
    return And(children[0], children[1])


def decode_tree(payload: Union[Mapping[str, Any], str, bytes]) -> OperationTree:
    """
    Decode a target profile from its wire form.

    Args:
        payload: Parsed JSON object, or a JSON document as str/bytes

    Returns:
        The decoded tree

    Raises:
        MalformedTreeError: Missing/invalid discriminator, missing child,
            invalid JSON or a tree exceeding MAX_TREE_DEPTH
        UnknownNodeKindError: Discriminator outside {0, 1, 2}
    """
    if isinstance(payload, (str, bytes, bytearray)):
        try:
            payload = json.loads(payload)
        except RecursionError as e:
            raise MalformedTreeError(f"Target profile is deeper than {MAX_TREE_DEPTH} levels") from e
        except ValueError as e:
            raise MalformedTreeError(f"Target profile is not valid JSON: {e}") from e
    return _decode_node(payload, 1)


def leaf_names(tree: OperationTree) -> List[str]:
    """Leaf names in left-to-right order, without duplicates."""
    if isinstance(tree, Leaf):
        return [tree.name]
    if isinstance(tree, (Or, And)):
        return union(leaf_names(tree.left), leaf_names(tree.right))
    raise UnknownNodeKindError(type(tree).__name__)


def tree_depth(tree: OperationTree) -> int:
    if isinstance(tree, Leaf):
        return 1
    if isinstance(tree, (Or, And)):
        return 1 + max(tree_depth(tree.left), tree_depth(tree.right))
    raise UnknownNodeKindError(type(tree).__name__)
