"""
In-memory data holder.

Evaluates a LocalQuery the way a data holder does against its own documents:
doctype, CouchDB-style selector, sort, skip and limit. Used by the Target role
when the pipeline runs in a single process (tests, demos).
"""
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dispers.shared.protocol import LocalQuery, StackQuery

_MISSING = object()


def _lookup(document: Mapping[str, Any], path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _compare(value: Any, op: str, operand: Any) -> bool:
    if op == "$exists":
        return (value is not _MISSING) == bool(operand)
    if value is _MISSING:
        return op in ("$ne", "$nin")
    if op == "$eq":
        return value == operand
    if op == "$ne":
        return value != operand
    if op == "$in":
        return value in operand
    if op == "$nin":
        return value not in operand
    try:
        if op == "$gt":
            return value > operand
        if op == "$gte":
            return value >= operand
        if op == "$lt":
            return value < operand
        if op == "$lte":
            return value <= operand
    except TypeError:
        return False
    raise ValueError(f"Unsupported selector operator: {op}")


def matches(document: Mapping[str, Any], selector: Mapping[str, Any]) -> bool:
    """
    Check a document against a CouchDB-style selector.

    Supports implicit equality, $eq, $ne, $gt, $gte, $lt, $lte, $in, $nin,
    $exists, and the $and / $or combinators.
    """
    for key, condition in selector.items():
        if key == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
        else:
            value = _lookup(document, key)
            if isinstance(condition, Mapping) and any(k.startswith("$") for k in condition):
                if not all(_compare(value, op, operand) for op, operand in condition.items()):
                    return False
            elif value is _MISSING or value != condition:
                return False
    return True


def _sort_key(field: str):
    def key(document: Mapping[str, Any]) -> Tuple[int, str, Any]:
        value = _lookup(document, field)
        if value is _MISSING or value is None:
            return (0, "", 0)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return (1, "number", value)
        return (1, type(value).__name__, value)
    return key


def run_local_query(documents: List[Dict[str, Any]], local_query: LocalQuery) -> List[Dict[str, Any]]:
    """Apply a LocalQuery to a list of documents."""
    find = local_query.find_request

    rows = [
        doc for doc in documents
        if (not local_query.doctype or doc.get("doctype", local_query.doctype) == local_query.doctype)
        and matches(doc, find.selector)
    ]

    # Stable sorts applied from the least to the most significant field
    for order in reversed(find.sort or []):
        for field, direction in order.items():
            rows.sort(key=_sort_key(field), reverse=str(direction).lower() == "desc")

    if find.skip:
        rows = rows[find.skip:]
    # A zero limit is unset
    for limit in (find.limit, local_query.limit):
        if limit:
            rows = rows[:limit]
    return rows


class InMemoryStack:
    """
    Documents of several data holders, keyed by domain.

    Callable as the Target role's fetch function.
    """

    def __init__(self, documents: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.documents: Dict[str, List[Dict[str, Any]]] = dict(documents or {})

    def add_documents(self, domain: str, documents: List[Dict[str, Any]]) -> None:
        self.documents.setdefault(domain, []).extend(documents)

    def fetch(self, query: StackQuery) -> List[Dict[str, Any]]:
        """Rows of `query.domain` matching its local query; unknown domains hold nothing."""
        return run_local_query(self.documents.get(query.domain, []), query.local_query)

    __call__ = fetch
