"""
HTTP clients for roles and Conductors running in other processes.

Remote roles expose the same `run` method as the in-process roles, so the
Conductor does not know whether a role is local or remote.
"""
import logging
from typing import Any, Dict, Optional, Type

import httpx
from pydantic import BaseModel

from dispers.shared.errors import RemoteRoleError
from dispers.shared.protocol import (
    AggregatorPartial,
    InputNewQuery,
    InputPatchQuery,
    Message,
    OutputCI,
    OutputDA,
    OutputT,
    OutputTF,
    QueryCreated,
    QueryStatus,
    RoleResult,
    SubscribeRequest,
    TargetDispatch,
    TargetPartial,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class _HttpClient:
    """JSON over HTTP with errors mapped to RemoteRoleError."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_session = session is None
        self.session = session or httpx.Client()

    def close(self) -> None:
        """Close the underlying session if this client created it."""
        if self._owns_session:
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise RemoteRoleError(url, str(e)) from e

        if r.status_code >= 400:
            try:
                body = r.json()
            except ValueError:
                body = None
            detail = body.get("detail", r.text) if isinstance(body, dict) else r.text
            raise RemoteRoleError(url, str(detail), r.status_code)
        return r.json() if r.content else None


class RemoteRole(_HttpClient):
    """A processing role behind an enclave HTTP endpoint."""

    path: str = ""
    output_model: Type[BaseModel] = BaseModel

    def run(self, request: Message) -> Any:
        logger.debug("POST %s%s", self.base_url, self.path)
        return self.output_model.model_validate(self._request("POST", self.path, request.to_wire()))


class RemoteConceptIndexer(RemoteRole):
    path = "/conceptindexer"
    output_model = OutputCI


class RemoteTargetFinder(RemoteRole):
    path = "/targetfinder"
    output_model = OutputTF


class RemoteTarget(RemoteRole):
    path = "/target"
    output_model = TargetDispatch


class RemoteDataAggregator(RemoteRole):
    path = "/dataaggregation"
    output_model = OutputDA


class ConductorClient(_HttpClient):
    """Client of a Conductor's HTTP API, used by queriers and by roles reporting back."""

    def new_query(self, request: InputNewQuery) -> str:
        created = QueryCreated.model_validate(self._request("POST", "/query", request.to_wire()))
        return created.query_id

    def status(self, query_id: str) -> QueryStatus:
        return QueryStatus.model_validate(self._request("GET", f"/query/{query_id}"))

    def subscribe(self, request: SubscribeRequest) -> None:
        self._request("POST", "/subscribe", request.to_wire())

    def patch(self, result: RoleResult, query_id: Optional[str] = None) -> None:
        query_id = query_id or result.output.query_id
        body = InputPatchQuery.from_role_result(result)
        self._request("PATCH", f"/query/{query_id}", body.to_wire())

    def report_target(self, output: OutputT) -> None:
        self.patch(TargetPartial(output))

    def report_aggregation(self, output: OutputDA) -> None:
        self.patch(AggregatorPartial(output))


def http_reporter(timeout: float = DEFAULT_TIMEOUT, session: Optional[httpx.Client] = None):
    """
    Target reporter posting each output to the Conductor URL of its query.

    All reports share one session.
    """
    session = session or httpx.Client()

    def report(output: OutputT, conductor_url: str) -> None:
        ConductorClient(conductor_url, timeout=timeout, session=session).report_target(output)

    return report
