"""
Error hierarchy shared by every role and by the Conductor.

All errors derive from DispersError so transports can map the whole family
to a failed task with a single except clause.
"""
from typing import Iterable, Optional


class DispersError(Exception):
    """Base class for all dispers errors."""


# Set algebra

class OperationTreeError(DispersError):
    """Base class for target profile decode/evaluation errors."""


class MalformedTreeError(OperationTreeError):
    """Structural violation found while decoding an OperationTree."""


class UnknownLeafError(OperationTreeError):
    """A Leaf names an address-set absent from the supplied mapping."""

    def __init__(self, name: str, known: Iterable[str]):
        self.name = name
        self.known = sorted(known)
        super().__init__(
            f"Unknown concept : {name!r} expect one of : {', '.join(self.known)}"
        )


class UnknownNodeKindError(OperationTreeError):
    """A node discriminator outside {Leaf, Or, And}."""

    def __init__(self, kind: object):
        self.kind = kind
        super().__init__(f"Unknown node type: {kind!r}")


# Protocol

class ProtocolError(DispersError):
    """Base class for message-level errors."""


class UnknownRoleError(ProtocolError):
    """A patch names a role the Conductor does not accept results from."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Unknown role: {role!r} (expected 't' or 'da')")


class MalformedPatchError(ProtocolError):
    """A patch names a role but does not carry that role's output."""


class PayloadDecodeError(ProtocolError):
    """An enc_* payload could not be turned back into its structure."""


class EncryptionUnavailableError(ProtocolError):
    """A message is flagged encrypted but no cipher is configured."""


# Roles

class RoleError(DispersError):
    """Base class for failures inside a processing role."""


class ConceptHashError(RoleError):
    """A concept could not be hashed."""


class InstanceConflictError(RoleError):
    """Two records of the same instance share a version but disagree."""

    def __init__(self, domain: str, version: int):
        self.domain = domain
        self.version = version
        super().__init__(
            f"Conflicting records for instance {domain!r} at version {version}"
        )


class RemoteRoleError(RoleError):
    """A role or Conductor reached over HTTP failed or was unreachable."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        prefix = f"{url} returned {status_code}" if status_code else f"{url} unreachable"
        super().__init__(f"{prefix}: {message}")


class UnknownAggregationError(RoleError):
    """An aggregation job names no known function or patch."""

    def __init__(self, job: str, known: Iterable[str]):
        self.job = job
        super().__init__(
            f"Unknown aggregation job: {job!r} (expected one of {', '.join(sorted(known))})"
        )


# Conductor

class ConductorError(DispersError):
    """Base class for Conductor-level failures."""


class UnknownQueryError(ConductorError):
    """No correlation state exists for a query identifier."""

    def __init__(self, query_id: str):
        self.query_id = query_id
        super().__init__(f"Unknown query: {query_id}")


class QueryFailedError(ConductorError):
    """A pipeline stage failed for a query."""

    def __init__(self, query_id: str, stage: str, cause: Optional[BaseException] = None):
        self.query_id = query_id
        self.stage = stage
        message = f"Query {query_id} failed at {stage}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
