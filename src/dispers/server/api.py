"""
FastAPI server for the Conductor.

Endpoints:
- POST /subscribe - Register an instance under concepts
- POST /query - Start a query
- GET /query/{queryid} - Query status and results
- PATCH /query/{queryid} - Roles push intermediate results
- DELETE /query/{queryid} - Drop a query's correlation state
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from dispers import __version__
from dispers.client.remote import (
    RemoteConceptIndexer,
    RemoteDataAggregator,
    RemoteTarget,
    RemoteTargetFinder,
)
from dispers.enclave.concept_indexer import ConceptIndexer
from dispers.enclave.data_aggregator import DataAggregator
from dispers.enclave.stack import InMemoryStack
from dispers.enclave.target import TargetRole
from dispers.enclave.target_finder import TargetFinder
from dispers.server.conductor import Conductor
from dispers.server.settings import DispersSettings
from dispers.shared.errors import DispersError, UnknownQueryError
from dispers.shared.protocol import (
    InputNewQuery,
    InputPatchQuery,
    QueryCreated,
    QueryStatus,
    SubscribeRequest,
)
from dispers.shared.utils import configure_logging

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    registered_instances: int
    active_queries: int


def build_conductor(settings: DispersSettings) -> Conductor:
    """
    Wire a Conductor from settings.

    Roles with a configured URL are reached over HTTP; the others run in
    this process.
    """
    executor = ThreadPoolExecutor(max_workers=settings.max_workers)
    timeout = settings.request_timeout

    if settings.target_url:
        target = RemoteTarget(settings.target_url, timeout=timeout)
    else:
        target = TargetRole(InMemoryStack(), executor=executor)

    conductor = Conductor(
        concept_indexer=(
            RemoteConceptIndexer(settings.concept_indexer_url, timeout=timeout)
            if settings.concept_indexer_url else ConceptIndexer(settings.concept_salt)
        ),
        target_finder=(
            RemoteTargetFinder(settings.target_finder_url, timeout=timeout)
            if settings.target_finder_url else TargetFinder()
        ),
        target=target,
        data_aggregator=(
            RemoteDataAggregator(settings.data_aggregator_url, timeout=timeout)
            if settings.data_aggregator_url else DataAggregator()
        ),
        conductor_url=settings.conductor_url,
        executor=executor,
    )
    if isinstance(target, TargetRole):
        target.reporter = conductor.report_target
    return conductor


def _bad_request(e: DispersError) -> HTTPException:
    if isinstance(e, UnknownQueryError):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def create_app(
    settings: Optional[DispersSettings] = None,
    conductor: Optional[Conductor] = None,
) -> FastAPI:
    """
    Create and configure the Conductor app.

    Args:
        settings: Settings; read from the environment when None
        conductor: Pre-built Conductor (tests, embedding); built from
                   settings when None
    """
    settings = settings or DispersSettings()
    if conductor is None:
        conductor = build_conductor(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Conductor ready at %s", settings.conductor_url)
        yield
        if conductor.executor is not None:
            conductor.executor.shutdown(wait=False)
        logger.info("Conductor shutting down")

    app = FastAPI(
        title="dispers",
        description="Conductor of the privacy-preserving query pipeline",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.conductor = conductor
    app.state.settings = settings

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(
            status="healthy",
            registered_instances=len(conductor.registry),
            active_queries=len(conductor),
        )

    @app.post("/subscribe")
    def subscribe(request: SubscribeRequest):
        try:
            accepted = conductor.subscribe(request)
        except DispersError as e:
            raise _bad_request(e)
        return {
            "status": "registered" if accepted else "ignored",
            "domain": request.instance.domain,
            "version": request.instance.version,
        }

    @app.post("/query", response_model=QueryCreated)
    def new_query(request: InputNewQuery):
        try:
            query_id = conductor.new_query(request)
        except DispersError as e:
            raise _bad_request(e)
        return QueryCreated(query_id=query_id)

    @app.get("/query/{queryid}", response_model=QueryStatus, response_model_exclude_none=True)
    def query_status(queryid: str):
        try:
            return conductor.status(queryid)
        except DispersError as e:
            raise _bad_request(e)

    @app.patch("/query/{queryid}")
    def patch_query(queryid: str, request: InputPatchQuery):
        try:
            conductor.patch(request.to_role_result(), queryid)
        except DispersError as e:
            raise _bad_request(e)
        return {"status": "accepted", "queryid": queryid}

    @app.delete("/query/{queryid}")
    def forget_query(queryid: str):
        try:
            conductor.forget(queryid)
        except DispersError as e:
            raise _bad_request(e)
        return {"status": "forgotten", "queryid": queryid}

    return app


def run_server(settings: Optional[DispersSettings] = None):
    """Run the Conductor server."""
    import uvicorn
    settings = settings or DispersSettings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run_server()
