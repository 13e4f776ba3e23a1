"""
Conductor: orchestrates one query across the processing roles.

Pipeline:
1. Concept Indexer hashes the query's concepts
2. Target Finder resolves the target profile against the registry
3. Target dispatches one stack query per target; targets report back
   through `patch`, in any order
4. Data Aggregators run layer by layer over the collected rows and report
   back through `patch`

The Conductor only keeps the correlation state needed to know when a stage is
complete. Roles are any objects exposing the in-process `run` signature, so
remote HTTP roles (see `dispers.client`) plug in unchanged.
"""
import json
import logging
import threading
import uuid
from collections import OrderedDict
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from dispers.enclave.concept_indexer import ConceptIndexer
from dispers.enclave.data_aggregator import DataAggregator
from dispers.enclave.target import FetchFunction, TargetRole
from dispers.enclave.target_finder import TargetFinder
from dispers.server.registry import InstanceRegistry
from dispers.shared.codec import Cipher, PayloadCodec
from dispers.shared.errors import (
    MalformedPatchError,
    PayloadDecodeError,
    QueryFailedError,
    UnknownQueryError,
)
from dispers.shared.protocol import (
    AggregatorPartial,
    Concept,
    InputCI,
    InputDA,
    InputNewQuery,
    InputT,
    InputTF,
    OutputDA,
    OutputT,
    QueryState,
    QueryStatus,
    RoleResult,
    SubscribeRequest,
    TargetPartial,
)
from dispers.shared.utils import b64encode, split_evenly

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
# (query id, layer, data) of an aggregation layer ready to run
LayerLaunch = Tuple[str, int, List[Row]]

# Forgotten query ids remembered so late reports do not revive them
MAX_FORGOTTEN = 1024


@dataclass
class _Query:
    """Correlation state of one query."""
    query_id: str
    request: Optional[InputNewQuery] = None
    state: QueryState = QueryState.PENDING
    number_of_targets: Optional[int] = None
    targets_reported: int = 0
    rows: List[Row] = field(default_factory=list)
    pending: List[OutputT] = field(default_factory=list)
    layer: int = 0
    layer_results: Dict[int, Dict[int, Dict[str, Any]]] = field(default_factory=dict)
    results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    failed_stage: Optional[str] = None
    failure: Optional[BaseException] = None
    task_metadata: List[Dict[str, Any]] = field(default_factory=list)
    done: threading.Event = field(default_factory=threading.Event)

    def status(self) -> QueryStatus:
        return QueryStatus(
            query_id=self.query_id,
            state=self.state,
            number_of_targets=self.number_of_targets,
            targets_reported=self.targets_reported,
            pending_reports=len(self.pending),
            results=self.results,
            error=self.error,
            task_metadata=list(self.task_metadata),
        )


class Conductor:
    """
    Query orchestrator.

    Thread-safe: targets and aggregators may report concurrently. Roles are
    never called while the state lock is held.
    """

    def __init__(
        self,
        concept_indexer: Any,
        target_finder: Any,
        target: Any,
        data_aggregator: Any,
        registry: Optional[InstanceRegistry] = None,
        conductor_url: str = "",
        cipher: Optional[Cipher] = None,
        executor: Optional[Executor] = None,
    ):
        """
        Initialize the Conductor.

        Args:
            concept_indexer: Role with run(InputCI) -> OutputCI
            target_finder: Role with run(InputTF) -> OutputTF
            target: Role with run(InputT) -> TargetDispatch
            data_aggregator: Role with run(InputDA) -> OutputDA
            registry: Concept -> instances index
            conductor_url: URL roles report back to
            cipher: Platform cipher used to seal payloads of encrypted queries
            executor: Pool running aggregators; inline when None
        """
        self.concept_indexer = concept_indexer
        self.target_finder = target_finder
        self.target = target
        self.data_aggregator = data_aggregator
        self.registry = registry if registry is not None else InstanceRegistry()
        self.conductor_url = conductor_url
        self.codec = PayloadCodec(cipher)
        self.executor = executor
        self._queries: Dict[str, _Query] = {}
        self._forgotten: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def in_process(
        cls,
        fetch: FetchFunction,
        salt: str = "",
        registry: Optional[InstanceRegistry] = None,
        conductor_url: str = "",
        cipher: Optional[Cipher] = None,
        executor: Optional[Executor] = None,
    ) -> "Conductor":
        """Conductor with every role running in this process."""
        target = TargetRole(fetch, cipher=cipher, executor=executor)
        conductor = cls(
            ConceptIndexer(salt, cipher=cipher),
            TargetFinder(cipher=cipher),
            target,
            DataAggregator(cipher=cipher),
            registry=registry,
            conductor_url=conductor_url,
            cipher=cipher,
            executor=executor,
        )
        target.reporter = conductor.report_target
        return conductor

    # Subscriptions

    def _hash_concepts(self, is_encrypted: bool, concepts: Optional[List[str]],
                       enc_concepts: Optional[List[Concept]]) -> List[Concept]:
        output = self.concept_indexer.run(InputCI(
            is_encrypted=is_encrypted,
            concepts=None if is_encrypted else concepts,
            enc_concepts=enc_concepts if is_encrypted else None,
        ))
        return output.hashes

    def subscribe(self, request: SubscribeRequest) -> bool:
        """Register an instance under the hashes of its concepts."""
        hashes = self._hash_concepts(request.is_encrypted, request.concepts, request.enc_concepts)
        return self.registry.subscribe(request.instance, [c.hash.hex() for c in hashes])

    # Queries

    def _get(self, query_id: str) -> _Query:
        query = self._queries.get(query_id)
        if query is None:
            raise UnknownQueryError(query_id)
        return query

    def _state(self, query_id: str) -> _Query:
        """Correlation state of a query, created on first sight."""
        query = self._queries.get(query_id)
        if query is None:
            query = self._queries[query_id] = _Query(query_id)
        return query

    def _dropped(self, query_id: str, what: str) -> bool:
        """True when `query_id` was forgotten; the caller ignores `what`."""
        if query_id in self._forgotten:
            logger.warning("Query %s was forgotten, ignoring %s", query_id, what)
            return True
        return False

    def _keep_metadata(self, query: _Query, metadata: Optional[Dict[str, Any]]) -> None:
        if metadata is not None:
            query.task_metadata.append(metadata)

    def _fail(self, query_id: str, stage: str, error: BaseException) -> None:
        logger.error("Query %s failed at %s: %s", query_id, stage, error)
        with self._lock:
            if self._dropped(query_id, "failure"):
                return
            query = self._state(query_id)
            query.state = QueryState.FAILED
            query.error = f"{stage}: {error}"
            query.failed_stage = stage
            query.failure = error
            query.done.set()

    def _address_sets(self, request: InputNewQuery, hashes: List[Concept]) -> Dict[str, bytes]:
        pseudo = request.pseudo_concepts or {}
        if request.is_encrypted:
            names = [b64encode(c.enc_concept or b"") for c in hashes]
        else:
            names = list(request.concepts or [])
        if len(names) != len(hashes):
            raise PayloadDecodeError(
                f"Concept Indexer returned {len(hashes)} hashes for {len(names)} concepts"
            )

        address_sets = {}
        for name, concept in zip(names, hashes):
            addresses = self.registry.addresses(concept.hash.hex())
            address_sets[pseudo.get(name, name)] = self.codec.seal(addresses, request.is_encrypted)
        return address_sets

    def _operation(self, request: InputNewQuery) -> bytes:
        if request.is_encrypted:
            if request.enc_operation is None:
                raise PayloadDecodeError("Encrypted query without enc_operation")
            return request.enc_operation
        profile = request.target_profile
        if profile is None:
            raise PayloadDecodeError("Query without target_profile")
        if isinstance(profile, str):
            try:
                profile = json.loads(profile)
            except ValueError as e:
                raise PayloadDecodeError(f"target_profile is not valid JSON: {e}") from e
        return self.codec.seal(profile, False)

    def _local_query(self, request: InputNewQuery) -> bytes:
        if request.is_encrypted:
            if request.enc_local_query is None:
                raise PayloadDecodeError("Encrypted query without enc_local_query")
            return request.enc_local_query
        if request.local_query is None:
            raise PayloadDecodeError("Query without local_query")
        return self.codec.seal(request.local_query.to_wire(), False)

    def new_query(self, request: InputNewQuery, query_id: Optional[str] = None) -> str:
        """
        Start a query.

        Args:
            request: The querier's request
            query_id: Identifier to use; a fresh one is generated when None

        Returns:
            The query identifier

        Raises:
            DispersError: A role failed; the query is marked failed and the
                          role's error is re-raised unchanged
        """
        query_id = query_id or uuid.uuid4().hex
        with self._lock:
            self._forgotten.pop(query_id, None)
            query = self._state(query_id)
            query.request = request
        logger.info("New query %s", query_id)

        stage = "concept indexer"
        try:
            hashes = self._hash_concepts(request.is_encrypted, request.concepts, request.enc_concepts)

            stage = "target finder"
            tf_output = self.target_finder.run(InputTF(
                is_encrypted=request.is_encrypted,
                enc_instances=self._address_sets(request, hashes),
                enc_operation=self._operation(request),
            ))
            with self._lock:
                self._keep_metadata(query, tf_output.task_metadata)

            stage = "target"
            dispatch = self.target.run(InputT(
                is_encrypted=request.is_encrypted,
                enc_local_query=self._local_query(request),
                enc_addresses=tf_output.enc_targets,
                conductor_url=self.conductor_url,
                query_id=query_id,
            ))
        except Exception as e:
            self._fail(query_id, stage, e)
            raise

        self.set_target_count(query_id, dispatch.number_of_targets, dispatch.task_metadata)
        return query_id

    def set_target_count(self, query_id: str, number_of_targets: int,
                         metadata: Optional[Dict[str, Any]] = None) -> None:
        """Declare how many targets will report; flushes queued reports."""
        launch = None
        with self._lock:
            if self._dropped(query_id, "target count"):
                return
            query = self._state(query_id)
            query.number_of_targets = number_of_targets
            if query.state == QueryState.PENDING:
                query.state = QueryState.COLLECTING
            self._keep_metadata(query, metadata)

            pending, query.pending = query.pending, []
            if pending:
                logger.info("Query %s: applying %d queued target reports", query_id, len(pending))
            for output in pending:
                launch = self._accept_target(query, output) or launch
            if number_of_targets == 0:
                launch = self._collection_complete(query)
        self._launch(launch)

    # Patches

    def patch(self, result: RoleResult, query_id: Optional[str] = None) -> None:
        """
        Receive an intermediate result from a role.

        Args:
            result: Rows of one target or results of one aggregator
            query_id: Query the result belongs to; defaults to the id carried
                      by the result

        Raises:
            MalformedPatchError: No query id is known for the result
        """
        query_id = query_id or result.output.query_id
        if not query_id:
            raise MalformedPatchError("Patch without query id")

        if isinstance(result, TargetPartial):
            self._record_target(query_id, result.output)
        elif isinstance(result, AggregatorPartial):
            self._record_aggregation(query_id, result.output)
        else:
            raise MalformedPatchError(f"Unsupported role result: {type(result).__name__}")

    def report_target(self, output: OutputT, conductor_url: str = "") -> None:
        """Reporter used by in-process Target roles."""
        self.patch(TargetPartial(output))

    def _record_target(self, query_id: str, output: OutputT) -> None:
        with self._lock:
            if self._dropped(query_id, "target report"):
                return
            query = self._state(query_id)
            if query.state in (QueryState.FAILED, QueryState.FINISHED):
                logger.warning("Query %s is %s, ignoring target report", query_id, query.state.value)
                return
            if query.number_of_targets is None:
                query.pending.append(output)
                logger.debug("Query %s: target report queued until the target count is known", query_id)
                return
            launch = self._accept_target(query, output)
        self._launch(launch)

    def _accept_target(self, query: _Query, output: OutputT) -> Optional[LayerLaunch]:
        if query.targets_reported >= query.number_of_targets:
            logger.warning(
                "Query %s: extra target report ignored (%d expected)",
                query.query_id, query.number_of_targets,
            )
            return None
        query.rows.extend(output.data or [])
        query.targets_reported += 1
        self._keep_metadata(query, output.task_metadata)
        if query.targets_reported == query.number_of_targets:
            return self._collection_complete(query)
        return None

    def _finish(self, query: _Query, results: Dict[str, Any]) -> None:
        query.results = results
        query.state = QueryState.FINISHED
        query.done.set()
        logger.info("Query %s finished", query.query_id)

    def _collection_complete(self, query: _Query) -> Optional[LayerLaunch]:
        logger.info(
            "Query %s: %d rows collected from %d targets",
            query.query_id, len(query.rows), query.targets_reported,
        )
        if query.request is None or not query.request.layers_da:
            self._finish(query, {"data": list(query.rows)})
            return None
        query.state = QueryState.AGGREGATING
        query.layer = 0
        return query.query_id, 0, list(query.rows)

    def _record_aggregation(self, query_id: str, output: OutputDA) -> None:
        layer, index = output.aggregation_id
        with self._lock:
            if self._dropped(query_id, f"aggregation {[layer, index]}"):
                return
            query = self._state(query_id)
            if query.state in (QueryState.FAILED, QueryState.FINISHED):
                logger.warning("Query %s is %s, ignoring aggregation %s", query_id, query.state.value, [layer, index])
                return
            if query.request is not None:
                layers = query.request.layers_da
                if layer >= len(layers) or index >= layers[layer].size:
                    logger.warning("Query %s: aggregation slot %s does not exist", query_id, [layer, index])
                    return
            slots = query.layer_results.setdefault(layer, {})
            if index in slots:
                logger.warning("Query %s: duplicate aggregation %s ignored", query_id, [layer, index])
                return
            slots[index] = output.results or {}
            self._keep_metadata(query, output.task_metadata)
            launch = self._layer_complete(query)
        self._launch(launch)

    def _layer_complete(self, query: _Query) -> Optional[LayerLaunch]:
        if query.state != QueryState.AGGREGATING:
            return None
        layers = query.request.layers_da
        size = layers[query.layer].size
        slots = query.layer_results.get(query.layer, {})
        # Slots recorded before the layer sizes were known may be out of range
        if not all(i in slots for i in range(size)):
            return None

        results = [slots[i] for i in range(size)]
        if query.layer == len(layers) - 1:
            self._finish(query, results[0] if size == 1 else {"partials": results})
            return None
        query.layer += 1
        logger.info("Query %s: starting aggregation layer %d", query.query_id, query.layer)
        return query.query_id, query.layer, results

    # Aggregation

    def _launch(self, launch: Optional[LayerLaunch]) -> None:
        if launch is None:
            return
        query_id, layer, data = launch
        try:
            requests = self._layer_requests(query_id, layer, data)
        except Exception as e:
            self._fail(query_id, f"data aggregator layer {layer}", e)
            return
        for request in requests:
            if self.executor is not None:
                self.executor.submit(self._aggregate, request)
            else:
                self._aggregate(request)

    def _layer_requests(self, query_id: str, layer: int, data: List[Row]) -> List[InputDA]:
        with self._lock:
            request = self._get(query_id).request
        layer_def = request.layers_da[layer]
        if request.is_encrypted:
            if layer_def.enc_jobs is None:
                raise PayloadDecodeError(f"Encrypted layer {layer} without layer_enc_jobs")
            jobs = layer_def.enc_jobs
        else:
            jobs = self.codec.seal([job.to_wire() for job in layer_def.jobs], False)

        return [
            InputDA(
                query_id=query_id,
                aggregation_id=(layer, index),
                conductor_url=self.conductor_url,
                is_encrypted=request.is_encrypted,
                enc_jobs=jobs,
                enc_data=self.codec.seal(chunk, request.is_encrypted),
            )
            for index, chunk in enumerate(split_evenly(data, layer_def.size))
        ]

    def _aggregate(self, request: InputDA) -> None:
        slot = list(request.aggregation_id)
        try:
            output = self.data_aggregator.run(request)
        except Exception as e:
            self._fail(request.query_id, f"data aggregator {slot}", e)
            return
        try:
            self.patch(AggregatorPartial(output), request.query_id)
        except Exception as e:
            # Nothing reads the executor future, so failures are recorded here
            logger.exception("Query %s: recording aggregation %s failed", request.query_id, slot)
            self._fail(request.query_id, f"conductor patch {slot}", e)

    # Status

    def status(self, query_id: str) -> QueryStatus:
        """
        Raises:
            UnknownQueryError: No state for `query_id`
        """
        with self._lock:
            return self._get(query_id).status()

    def result(self, query_id: str) -> Optional[Dict[str, Any]]:
        """
        Final results of a query, or None while it is running.

        Raises:
            UnknownQueryError: No state for `query_id`
            QueryFailedError: The query failed
        """
        with self._lock:
            query = self._get(query_id)
            if query.state == QueryState.FAILED:
                raise QueryFailedError(query_id, query.failed_stage or "unknown stage", query.failure)
            return query.results

    def wait(self, query_id: str, timeout: Optional[float] = None) -> QueryStatus:
        """Block until a query finishes or fails, or `timeout` expires."""
        with self._lock:
            query = self._get(query_id)
        query.done.wait(timeout)
        return self.status(query_id)

    def forget(self, query_id: str) -> None:
        """Drop the correlation state of a query (cancellation)."""
        with self._lock:
            if self._queries.pop(query_id, None) is None:
                raise UnknownQueryError(query_id)
            self._forgotten[query_id] = None
            while len(self._forgotten) > MAX_FORGOTTEN:
                self._forgotten.popitem(last=False)
        logger.info("Query %s forgotten", query_id)

    def __len__(self) -> int:
        return len(self._queries)
