"""
Target role.

Receives the resolved targets of a query and the local query, turns them into
one StackQuery per data holder, and runs every StackQuery independently. Each
target reports its rows to the Conductor on its own schedule.
"""
import logging
from concurrent.futures import Executor
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from dispers.shared.codec import Cipher, PayloadCodec
from dispers.shared.errors import InstanceConflictError, PayloadDecodeError
from dispers.shared.protocol import (
    InputT,
    Instance,
    LocalQuery,
    OutputT,
    StackQuery,
    TargetDispatch,
)
from dispers.shared.utils import Timer

logger = logging.getLogger(__name__)

# (stack query) -> rows held by that data holder
FetchFunction = Callable[[StackQuery], List[Dict[str, Any]]]
# (target output, conductor url) -> None
Reporter = Callable[[OutputT, str], None]


def resolve_instances(instances: Sequence[Instance]) -> List[Instance]:
    """
    Keep one record per domain, the one with the highest version.

    Records sharing domain and version must be identical.

    Raises:
        InstanceConflictError: Same domain and version, different token
    """
    latest: Dict[str, Instance] = {}
    for instance in instances:
        current = latest.get(instance.domain)
        if current is None or instance.version > current.version:
            latest[instance.domain] = instance
        elif instance.version == current.version and instance.token_bearer != current.token_bearer:
            raise InstanceConflictError(instance.domain, instance.version)
    return list(latest.values())


def build_stack_query(
    number_of_targets: int,
    conductor_url: str,
    query_id: str,
    instance: Instance,
    local_query: LocalQuery,
    is_encrypted: bool = False,
) -> StackQuery:
    return StackQuery(
        domain=instance.domain,
        local_query=local_query,
        token_bearer=instance.token_bearer,
        is_encrypted=is_encrypted,
        conductor_url=conductor_url,
        query_id=query_id,
        number_of_targets=number_of_targets,
    )


class TargetRole:
    """
    Target enclave.

    Runs stack queries on `executor` when one is given, inline otherwise.
    """

    def __init__(
        self,
        fetch: FetchFunction,
        reporter: Optional[Reporter] = None,
        cipher: Optional[Cipher] = None,
        executor: Optional[Executor] = None,
    ):
        """
        Initialize the Target role.

        Args:
            fetch: Retrieves the rows of one data holder
            reporter: Sends a target's output back to the Conductor
            cipher: Cipher for encrypted messages
            executor: Pool running targets concurrently
        """
        self.fetch = fetch
        self.reporter = reporter
        self.codec = PayloadCodec(cipher)
        self.executor = executor

    def build_stack_queries(self, request: InputT) -> List[StackQuery]:
        """One StackQuery per distinct instance of the request."""
        addresses = self.codec.open(request.enc_addresses, request.is_encrypted, "addresses")
        if not isinstance(addresses, list):
            raise PayloadDecodeError("Addresses are not a list")
        try:
            local_query = LocalQuery.model_validate(
                self.codec.open(request.enc_local_query, request.is_encrypted, "local query")
            )
        except ValidationError as e:
            raise PayloadDecodeError(f"Invalid local query: {e}") from e

        instances = resolve_instances([Instance.from_address(a) for a in addresses])
        return [
            build_stack_query(
                len(instances), request.conductor_url, request.query_id or "", instance, local_query,
                is_encrypted=request.is_encrypted,
            )
            for instance in instances
        ]

    def execute(self, query: StackQuery) -> OutputT:
        """Run one target and return its rows."""
        with Timer() as t:
            rows = self.fetch(query)
        logger.debug("Target %s returned %d rows in %.2fms", query.domain, len(rows), t.elapsed_ms)
        return OutputT(data=rows, query_id=query.query_id)

    def _execute_and_report(self, query: StackQuery) -> None:
        try:
            output = self.execute(query)
        except Exception as e:
            # A target that fails still reports, so the query can complete
            logger.error("Target %s failed for query %s: %s", query.domain, query.query_id, e)
            output = OutputT(
                data=[],
                query_id=query.query_id,
                task_metadata={"status": "failed", "error": str(e)},
            )
        if self.reporter is None:
            return
        try:
            self.reporter(output, query.conductor_url)
        except Exception as e:
            # Nothing reads the executor future, so the failure is only logged
            logger.error(
                "Target %s could not report query %s to %s: %s",
                query.domain, query.query_id, query.conductor_url, e,
            )

    def run(self, request: InputT) -> TargetDispatch:
        """
        Dispatch every target of a query.

        Args:
            request: Resolved targets and local query

        Returns:
            How many targets will report for `request.query_id`
        """
        queries = self.build_stack_queries(request)
        dispatch = TargetDispatch(
            query_id=request.query_id,
            number_of_targets=len(queries),
            task_metadata=request.task_metadata,
        )
        logger.info("Dispatching %d targets for query %s", len(queries), request.query_id)

        for query in queries:
            if self.executor is not None:
                self.executor.submit(self._execute_and_report, query)
            else:
                self._execute_and_report(query)
        return dispatch
