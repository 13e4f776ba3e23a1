"""
FastAPI server hosting the processing roles.

Endpoints:
- POST /conceptindexer - Hash concepts
- POST /targetfinder - Resolve a target profile
- POST /target - Dispatch stack queries; targets report to the Conductor
- POST /dataaggregation - Run one aggregation slot
"""
import logging
from concurrent.futures import Executor
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from dispers import __version__
from dispers.client.remote import http_reporter
from dispers.enclave.concept_indexer import ConceptIndexer
from dispers.enclave.data_aggregator import DataAggregator
from dispers.enclave.stack import InMemoryStack
from dispers.enclave.target import FetchFunction, Reporter, TargetRole
from dispers.enclave.target_finder import TargetFinder
from dispers.shared.codec import Cipher
from dispers.shared.errors import DispersError
from dispers.shared.protocol import (
    InputCI,
    InputDA,
    InputT,
    InputTF,
    OutputCI,
    OutputDA,
    OutputTF,
    TargetDispatch,
)

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    roles: list


class EnclaveState:
    """Role instances served by the app."""
    def __init__(self):
        self.concept_indexer: Optional[ConceptIndexer] = None
        self.target_finder: Optional[TargetFinder] = None
        self.target: Optional[TargetRole] = None
        self.data_aggregator: Optional[DataAggregator] = None


def _run(role, request, name: str):
    if role is None:
        raise HTTPException(status_code=500, detail=f"{name} not initialized")
    try:
        return role.run(request)
    except DispersError as e:
        logger.error("%s failed: %s", name, e)
        raise HTTPException(status_code=400, detail=str(e))


def create_app(
    fetch: Optional[FetchFunction] = None,
    salt: str = "",
    cipher: Optional[Cipher] = None,
    reporter: Optional[Reporter] = None,
    executor: Optional[Executor] = None,
) -> FastAPI:
    """
    Create the enclave app.

    Args:
        fetch: Retrieves a data holder's rows; an empty in-memory stack by default
        salt: Concept hash salt
        cipher: Cipher for encrypted messages
        reporter: Target reporter; posts to the query's Conductor URL by default
        executor: Pool running targets
    """
    state = EnclaveState()
    state.concept_indexer = ConceptIndexer(salt, cipher=cipher)
    state.target_finder = TargetFinder(cipher=cipher)
    state.target = TargetRole(
        fetch or InMemoryStack(),
        reporter=reporter or http_reporter(),
        cipher=cipher,
        executor=executor,
    )
    state.data_aggregator = DataAggregator(cipher=cipher)

    app = FastAPI(
        title="dispers enclave",
        description="Stateless processing roles of the dispers pipeline",
        version=__version__,
    )
    app.state.enclave = state

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(
            status="healthy",
            roles=["conceptindexer", "targetfinder", "target", "dataaggregation"],
        )

    @app.post("/conceptindexer", response_model=OutputCI, response_model_exclude_none=True)
    def concept_indexer(request: InputCI):
        return _run(state.concept_indexer, request, "Concept Indexer")

    @app.post("/targetfinder", response_model=OutputTF, response_model_exclude_none=True)
    def target_finder(request: InputTF):
        return _run(state.target_finder, request, "Target Finder")

    @app.post("/target", response_model=TargetDispatch, response_model_exclude_none=True)
    def target(request: InputT):
        return _run(state.target, request, "Target")

    @app.post("/dataaggregation", response_model=OutputDA, response_model_exclude_none=True)
    def data_aggregation(request: InputDA):
        return _run(state.data_aggregator, request, "Data Aggregator")

    return app


def run_server(host: str = "127.0.0.1", port: int = 8001):
    """Run the enclave server directly."""
    import uvicorn
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    run_server()
