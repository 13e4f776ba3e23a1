"""Tests for the HTTP surfaces: Conductor app, enclave app and remote clients."""
import base64
import json

import pytest
from fastapi.testclient import TestClient

from dispers.client.remote import (
    ConductorClient,
    RemoteConceptIndexer,
    RemoteDataAggregator,
    RemoteTarget,
    RemoteTargetFinder,
    http_reporter,
)
from dispers.enclave.api import create_app as create_enclave_app
from dispers.enclave.concept_indexer import ConceptIndexer
from dispers.server.api import build_conductor, create_app
from dispers.server.conductor import Conductor
from dispers.server.settings import DispersSettings
from dispers.shared.errors import RemoteRoleError
from dispers.shared.operation_tree import And, Leaf, Or, encode_tree
from dispers.shared.protocol import (
    AggregationJob,
    InputCI,
    InputNewQuery,
    InputTF,
    LayerDA,
    LocalQuery,
    OutputT,
    QueryState,
    SubscribeRequest,
)

from conftest import ALICE, BOB, DOCTYPE, SUBSCRIPTIONS

BASE_URL = "http://testserver"


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def query_body(tree, layers=None):
    return InputNewQuery(
        concepts=["A", "B", "C"],
        target_profile=encode_tree(tree),
        local_query=LocalQuery(doctype=DOCTYPE),
        layers_da=layers or [],
    ).to_wire()


@pytest.fixture
def conductor(stack, registry):
    return Conductor.in_process(stack, salt="salt", registry=registry)


@pytest.fixture
def client(conductor):
    app = create_app(DispersSettings(), conductor)
    client = TestClient(app)
    for instance, concepts in SUBSCRIPTIONS:
        response = client.post("/subscribe", json={"instance": instance.to_wire(), "concepts": concepts})
        assert response.status_code == 200
    return client


class TestConductorApp:
    """Conductor endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "registered_instances": 3, "active_queries": 0}

    def test_subscribe_older_version_ignored(self, client):
        older = {"domain": ALICE.domain, "token_bearer": "old", "version": 0}
        response = client.post("/subscribe", json={"instance": older, "concepts": ["A"]})
        assert response.json() == {"status": "ignored", "domain": ALICE.domain, "version": 0}

    def test_subscribe_conflict(self, client):
        clash = {"domain": BOB.domain, "token_bearer": "other", "version": 1}
        response = client.post("/subscribe", json={"instance": clash, "concepts": ["A"]})
        assert response.status_code == 400
        assert BOB.domain in response.json()["detail"]

    def test_query_and_status(self, client):
        layers = [LayerDA(size=1, jobs=[AggregationJob(job="sum", args={"key": "amount"})])]
        response = client.post("/query", json=query_body(Or(Leaf("A"), And(Leaf("B"), Leaf("C"))), layers))
        assert response.status_code == 200
        query_id = response.json()["queryid"]

        status = client.get(f"/query/{query_id}").json()
        assert status["queryid"] == query_id
        assert status["state"] == "finished"
        assert status["number_targets"] == 3
        assert status["results"] == {"sum_amount": {"sum": 100.0}}
        assert "error" not in status

    def test_unknown_leaf(self, client):
        response = client.post("/query", json=query_body(And(Leaf("A"), Leaf("Z"))))
        assert response.status_code == 400
        assert "Unknown concept" in response.json()["detail"]

    def test_patch_target(self, client):
        body = {"role": "t", "output_t": {"data": [{"amount": 5}]}}
        response = client.patch("/query/q1", json=body)
        assert response.json() == {"status": "accepted", "queryid": "q1"}

        status = client.get("/query/q1").json()
        assert status["state"] == "pending"
        assert status["pending_reports"] == 1

    def test_patch_unknown_role(self, client):
        response = client.patch("/query/q1", json={"role": "ci"})
        assert response.status_code == 400

    def test_patch_without_payload(self, client):
        response = client.patch("/query/q1", json={"role": "da"})
        assert response.status_code == 400

    def test_unknown_query(self, client):
        assert client.get("/query/nope").status_code == 404
        assert client.delete("/query/nope").status_code == 404

    def test_forget(self, client):
        query_id = client.post("/query", json=query_body(Leaf("A"))).json()["queryid"]
        assert client.delete(f"/query/{query_id}").json()["status"] == "forgotten"
        assert client.get(f"/query/{query_id}").status_code == 404


class TestEnclaveApp:
    """Role endpoints."""

    @pytest.fixture
    def reports(self):
        return []

    @pytest.fixture
    def enclave(self, stack, reports):
        app = create_enclave_app(stack, salt="salt", reporter=lambda output, url: reports.append((output, url)))
        return TestClient(app)

    def test_health(self, enclave):
        assert enclave.get("/health").json()["status"] == "healthy"

    def test_concept_indexer(self, enclave):
        response = enclave.post("/conceptindexer", json={"concepts": ["age"]})
        assert response.status_code == 200
        expected = ConceptIndexer("salt").run(InputCI(concepts=["age"])).to_wire()
        assert response.json() == expected
        assert response.json()["hashes"][0]["enc_concept"] == b64(b"age")

    def test_target_finder(self, enclave):
        body = {
            "enc_instances": {"A": b64(b'["x", "y"]'), "B": b64(b'["y"]')},
            "enc_operation": b64(json.dumps(encode_tree(And(Leaf("A"), Leaf("B")))).encode()),
            "metadata_task": {"step": 1},
        }
        response = enclave.post("/targetfinder", json=body)
        assert response.status_code == 200
        assert json.loads(base64.b64decode(response.json()["enc_targets"])) == ["y"]
        assert response.json()["metadata_task"] == {"step": 1}

    def test_target_finder_error(self, enclave):
        body = {
            "enc_instances": {"A": b64(b'["x"]')},
            "enc_operation": b64(json.dumps(encode_tree(Leaf("B"))).encode()),
        }
        response = enclave.post("/targetfinder", json=body)
        assert response.status_code == 400
        assert "'B'" in response.json()["detail"]

    def test_target_finder_deeply_nested_operation(self, enclave):
        depth = 100000
        operation = '{"type": 1, "left_node": ' * depth + '{"type": 0, "value": "A"}' + '}' * depth
        body = {
            "enc_instances": {"A": b64(b'["x"]')},
            "enc_operation": b64(operation.encode()),
        }
        response = enclave.post("/targetfinder", json=body)
        assert response.status_code == 400

    def test_target(self, enclave, reports):
        body = {
            "enc_local_query": b64(json.dumps(LocalQuery(doctype=DOCTYPE).to_wire()).encode()),
            "enc_addresses": b64(json.dumps([ALICE.address, BOB.address]).encode()),
            "conductor_url": "http://conductor",
            "queryid": "q1",
        }
        response = enclave.post("/target", json=body)
        assert response.status_code == 200
        assert response.json() == {"queryid": "q1", "number_targets": 2}
        assert [url for _, url in reports] == ["http://conductor", "http://conductor"]
        assert sum(len(output.data) for output, _ in reports) == 3

    def test_data_aggregation(self, enclave):
        body = {
            "queryid": "q1",
            "aggregationid": [0, 1],
            "enc_jobs": b64(json.dumps([{"job": "count"}]).encode()),
            "enc_data": b64(json.dumps([{"amount": 1}, {"amount": 2}]).encode()),
        }
        response = enclave.post("/dataaggregation", json=body)
        assert response.status_code == 200
        assert response.json() == {
            "results": {"count": {"length": 2}},
            "queryid": "q1",
            "aggregationid": [0, 1],
        }


class TestRemoteClients:
    """Clients talking to the apps through the test client."""

    @pytest.fixture
    def enclave_session(self, stack):
        return TestClient(create_enclave_app(stack, salt="salt", reporter=lambda output, url: None))

    def test_remote_concept_indexer(self, enclave_session):
        remote = RemoteConceptIndexer(BASE_URL, session=enclave_session)
        request = InputCI(concepts=["age", "city"])
        assert remote.run(request) == ConceptIndexer("salt").run(request)

    def test_remote_error(self, enclave_session):
        remote = RemoteTargetFinder(BASE_URL, session=enclave_session)
        with pytest.raises(RemoteRoleError) as exc:
            remote.run(InputTF(enc_instances={}, enc_operation=b'{"value": "A"}'))
        assert exc.value.status_code == 400
        assert "No type defined" in str(exc.value)

    def test_conductor_client(self, client):
        remote = ConductorClient(BASE_URL, session=client)
        query_id = remote.new_query(InputNewQuery.model_validate(query_body(Leaf("C"))))
        status = remote.status(query_id)
        assert status.state == QueryState.FINISHED
        assert status.number_of_targets == 2

    def test_fully_remote_pipeline(self, stack, registry):
        clients = {}
        enclave = TestClient(create_enclave_app(
            stack,
            salt="salt",
            reporter=lambda output, url: clients["conductor"].report_target(output),
        ))
        conductor = Conductor(
            RemoteConceptIndexer(BASE_URL, session=enclave),
            RemoteTargetFinder(BASE_URL, session=enclave),
            RemoteTarget(BASE_URL, session=enclave),
            RemoteDataAggregator(BASE_URL, session=enclave),
            registry=registry,
            conductor_url=BASE_URL,
        )
        clients["conductor"] = ConductorClient(BASE_URL, session=TestClient(create_app(DispersSettings(), conductor)))

        for instance, concepts in SUBSCRIPTIONS:
            clients["conductor"].subscribe(SubscribeRequest(instance=instance, concepts=concepts))

        jobs = [AggregationJob(job="mean", args={"key": "amount"})]
        layers = [LayerDA(size=2, jobs=jobs), LayerDA(size=1, jobs=jobs)]
        query_id = clients["conductor"].new_query(
            InputNewQuery.model_validate(query_body(Or(Leaf("B"), Leaf("C")), layers))
        )

        status = clients["conductor"].status(query_id)
        assert status.state == QueryState.FINISHED
        assert status.results["mean_amount"]["mean"] == pytest.approx(25.0)

    def test_http_reporter(self, client):
        report = http_reporter(session=client)
        report(OutputT(data=[{"amount": 7}], query_id="q8"), BASE_URL)
        report(OutputT(data=[], query_id="q8"), BASE_URL)

        status = client.get("/query/q8").json()
        assert status["state"] == "pending"
        assert status["pending_reports"] == 2

    def test_http_reporter_error(self, enclave_session):
        # The enclave app has no query routes
        report = http_reporter(session=enclave_session)
        with pytest.raises(RemoteRoleError) as exc:
            report(OutputT(data=[], query_id="q8"), BASE_URL)
        assert exc.value.status_code == 404

    def test_client_closes_its_own_session(self, client):
        with ConductorClient(BASE_URL) as owned:
            session = owned.session
        assert session.is_closed

        with ConductorClient(BASE_URL, session=client):
            pass
        assert not client.is_closed


class TestSettings:

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("DISPERS_PORT", "9000")
        monkeypatch.setenv("DISPERS_TARGET_URL", "http://enclave:8001")
        settings = DispersSettings()
        assert settings.port == 9000
        assert settings.target_url == "http://enclave:8001"
        assert settings.concept_indexer_url is None

    def test_build_conductor_in_process(self):
        conductor = build_conductor(DispersSettings(max_workers=2))
        assert isinstance(conductor.concept_indexer, ConceptIndexer)
        assert conductor.target.reporter == conductor.report_target
        conductor.executor.shutdown()

    def test_build_conductor_remote(self):
        conductor = build_conductor(DispersSettings(target_url="http://enclave:8001"))
        assert isinstance(conductor.target, RemoteTarget)
        conductor.executor.shutdown()
