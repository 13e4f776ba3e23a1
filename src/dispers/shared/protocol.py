"""
Protocol definitions for Conductor <-> role communication.

Every message is a flat pydantic model whose JSON field names are fixed by the
pipeline's existing consumers. Byte fields (`enc_*`, `hash`) travel as base64
strings. Whether a byte field holds plaintext JSON or ciphertext is selected by
the message's `is_encrypted` flag; the record shape is the same in both modes.
"""
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer

from dispers.shared.errors import MalformedPatchError, PayloadDecodeError, UnknownRoleError
from dispers.shared.utils import b64decode, b64encode, canonical_json


def _blob_from_wire(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return b64decode(value)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 payload: {e}") from e
    return value


Blob = Annotated[
    bytes,
    BeforeValidator(_blob_from_wire),
    PlainSerializer(b64encode, return_type=str, when_used="json"),
]

TaskMetadata = Optional[Dict[str, Any]]


class Message(BaseModel):
    """Base for wire records: populate by field name or JSON alias."""
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-compatible dict using wire field names, omitting empty fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# Concept Indexer

class Concept(Message):
    """A (possibly encrypted) concept and its resolved hash."""
    enc_concept: Optional[Blob] = None
    hash: Optional[Blob] = None


class InputCI(Message):
    is_encrypted: bool = False
    concepts: Optional[List[str]] = None
    enc_concepts: Optional[List[Concept]] = None


class OutputCI(Message):
    hashes: List[Concept] = Field(default_factory=list)
    task_metadata: TaskMetadata = Field(None, alias="metadata_task")


# Target Finder

class InputTF(Message):
    """Per-concept address lists and the target profile to resolve."""
    is_encrypted: bool = False
    enc_instances: Optional[Dict[str, Blob]] = None
    enc_operation: Optional[Blob] = None
    task_metadata: TaskMetadata = Field(None, alias="metadata_task")


class OutputTF(Message):
    enc_targets: Optional[Blob] = None
    task_metadata: TaskMetadata = Field(None, alias="metadata_task")


# Targets

class FindParams(Message):
    """Find request sent to data holders, following CouchDB conventions."""
    selector: Dict[str, Any] = Field(default_factory=dict)
    skip: Optional[int] = None
    limit: Optional[int] = None
    sort: Optional[List[Dict[str, str]]] = None


class LocalQuery(Message):
    """Which data a data holder has to retrieve."""
    find_request: FindParams = Field(default_factory=FindParams, alias="findrequest")
    doctype: str = ""
    index: Dict[str, Any] = Field(default_factory=dict)
    limit: Optional[int] = None


class Instance(Message):
    """
    Location of a data holder and the token it created.

    When an instance registers twice the record with the higher version wins.
    """
    domain: str
    token_bearer: str
    version: int = 0

    @property
    def address(self) -> str:
        """Canonical address string used in address-sets."""
        return canonical_json(self.model_dump(mode="json"))

    @classmethod
    def from_address(cls, address: str) -> "Instance":
        try:
            return cls.model_validate(json.loads(address))
        except ValueError as e:
            raise PayloadDecodeError(f"Invalid instance address {address!r}: {e}") from e


class InputT(Message):
    is_encrypted: bool = False
    enc_local_query: Optional[Blob] = None
    enc_addresses: Optional[Blob] = None
    conductor_url: str = ""
    query_id: Optional[str] = Field(None, alias="queryid")
    task_metadata: TaskMetadata = Field(None, alias="metadata_task")


class StackQuery(Message):
    """Everything one data holder needs to run its part of a query."""
    domain: str
    local_query: LocalQuery = Field(default_factory=LocalQuery)
    token_bearer: str
    is_encrypted: bool = False
    conductor_url: str = ""
    query_id: str = Field(alias="queryid")
    number_of_targets: int = Field(alias="number_targets")


class OutputT(Message):
    data: Optional[List[Dict[str, Any]]] = None
    query_id: Optional[str] = Field(None, alias="queryid")
    task_metadata: TaskMetadata = Field(None, alias="metadata_task")


class TargetDispatch(Message):
    """Acknowledgement of the Target role: how many targets will report."""
    query_id: Optional[str] = Field(None, alias="queryid")
    number_of_targets: int = Field(alias="number_targets")
    task_metadata: TaskMetadata = Field(None, alias="metadata_task")


# Data Aggregators

class AggregationJob(Message):
    """Aggregation requested by the querier."""
    job: str = ""
    args: Dict[str, Any] = Field(default_factory=dict)


class AggregationFunction(Message):
    """Executable form of a job applied to raw rows."""
    function: str = Field("", alias="func")
    args: Dict[str, Any] = Field(default_factory=dict)


class AggregationPatch(Message):
    """Executable form of a job merging previous aggregation results."""
    patch: str = ""
    args: Dict[str, Any] = Field(default_factory=dict)


class InputDA(Message):
    query_id: str = Field(alias="queryid")
    aggregation_id: Tuple[int, int] = Field((0, 0), alias="aggregationid")
    conductor_url: str = ""
    is_encrypted: bool = False
    enc_jobs: Optional[Blob] = None
    enc_data: Optional[Blob] = None
    task_metadata: TaskMetadata = Field(None, alias="metadata_task")


class OutputDA(Message):
    results: Optional[Dict[str, Any]] = None
    query_id: Optional[str] = Field(None, alias="queryid")
    aggregation_id: Tuple[int, int] = Field((0, 0), alias="aggregationid")
    task_metadata: TaskMetadata = Field(None, alias="metadata_task")


# Conductor

class LayerDA(Message):
    """One aggregation layer: `size` parallel aggregators running `jobs`."""
    data: Optional[List[Dict[str, Any]]] = Field(None, alias="layer_data")
    size: int = Field(1, alias="layer_size", ge=1)
    enc_jobs: Optional[Blob] = Field(None, alias="layer_enc_jobs")
    jobs: List[AggregationJob] = Field(default_factory=list, alias="layer_jobs")


class InputNewQuery(Message):
    concepts: Optional[List[str]] = None
    pseudo_concepts: Optional[Dict[str, str]] = None
    is_encrypted: bool = False
    local_query: Optional[LocalQuery] = None
    target_profile: Optional[Union[Dict[str, Any], str]] = None
    layers_da: List[LayerDA] = Field(default_factory=list)
    enc_local_query: Optional[Blob] = None
    enc_concepts: Optional[List[Concept]] = None
    enc_operation: Optional[Blob] = None


class Role(str, Enum):
    """Roles allowed to push results back to the Conductor."""
    TARGET = "t"
    DATA_AGGREGATOR = "da"


@dataclass(frozen=True)
class TargetPartial:
    """Rows reported by one target."""
    output: OutputT


@dataclass(frozen=True)
class AggregatorPartial:
    """Results reported by one aggregator of one layer."""
    output: OutputDA


RoleResult = Union[TargetPartial, AggregatorPartial]


class InputPatchQuery(Message):
    is_encrypted: bool = False
    role: str
    output_da: Optional[OutputDA] = None
    output_t: Optional[OutputT] = None

    def to_role_result(self) -> RoleResult:
        """
        Turn the wire patch into its tagged variant.

        Raises:
            UnknownRoleError: `role` is neither "t" nor "da"
            MalformedPatchError: The payload for `role` is missing
        """
        try:
            role = Role(self.role)
        except ValueError:
            raise UnknownRoleError(self.role) from None

        if role == Role.TARGET:
            if self.output_t is None:
                raise MalformedPatchError("Patch from role 't' carries no output_t")
            return TargetPartial(self.output_t)
        if self.output_da is None:
            raise MalformedPatchError("Patch from role 'da' carries no output_da")
        return AggregatorPartial(self.output_da)

    @classmethod
    def from_role_result(cls, result: RoleResult, is_encrypted: bool = False) -> "InputPatchQuery":
        if isinstance(result, TargetPartial):
            return cls(is_encrypted=is_encrypted, role=Role.TARGET.value, output_t=result.output)
        return cls(is_encrypted=is_encrypted, role=Role.DATA_AGGREGATOR.value, output_da=result.output)


class SubscribeRequest(Message):
    """An instance registering itself under a list of concepts."""
    instance: Instance
    is_encrypted: bool = False
    concepts: Optional[List[str]] = None
    enc_concepts: Optional[List[Concept]] = None


class QueryCreated(Message):
    query_id: str = Field(alias="queryid")


class QueryState(str, Enum):
    PENDING = "pending"
    COLLECTING = "collecting"
    AGGREGATING = "aggregating"
    FINISHED = "finished"
    FAILED = "failed"


class QueryStatus(Message):
    query_id: str = Field(alias="queryid")
    state: QueryState
    number_of_targets: Optional[int] = Field(None, alias="number_targets")
    targets_reported: int = 0
    pending_reports: int = 0
    results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    task_metadata: List[Dict[str, Any]] = Field(default_factory=list, alias="metadata_tasks")
