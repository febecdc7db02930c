"""
Unit tests for api/routes.py - request validation and response shapes

The coordinator is stubbed here; full runs against the in-memory host are
covered in tests/integration/test_api_integration.py.
"""
import pytest
from starlette.testclient import TestClient

from core.schemas import GenerateResult, RunResult
from api.routes import create_app
from infrastructure.broadcaster import LiveBroadcaster
from infrastructure.config import ConfigurationError, Settings


class StubCoordinator:
    def __init__(self, error=None):
        self.error = error
        self.runs = []
        self.generated = []

    def run(self, objective, constraints, execution):
        self.runs.append((objective, constraints, execution))
        if self.error:
            raise self.error
        return RunResult(run_id="r1", repo="demo", live_url="https://octo.github.io/demo/")

    def generate_repo_with_prs(self, objective, tasks, execution):
        self.generated.append((objective, tasks, execution))
        if self.error:
            raise self.error
        return GenerateResult(repo="demo", live_url="https://octo.github.io/demo/")


@pytest.fixture
def stub():
    return StubCoordinator()


@pytest.fixture
def stub_client(settings, stub):
    with TestClient(create_app(settings=settings, coordinator=stub)) as client:
        yield client


# =============================================================================
# APP CREATION
# =============================================================================

def test_create_app_requires_credentials(stub):
    with pytest.raises(ConfigurationError):
        create_app(settings=Settings(), coordinator=stub)


def test_health(stub_client):
    response = stub_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "foreman", "version": "0.1.0", "observers": 0}


# =============================================================================
# MULTI-AGENT RUN
# =============================================================================

@pytest.mark.parametrize("body, message", [
    (b"not json", "Request body must be a JSON object"),
    (b"[1, 2]", "Request body must be a JSON object"),
    (b"{}", "objective required"),
    (b'{"objective": ""}', "objective required"),
    (b'{"objective": "x", "constraints": [1]}', "constraints must be an object"),
])
def test_multi_agent_run_rejects_bad_bodies(stub_client, stub, body, message):
    response = stub_client.post(
        "/multi-agent-run", content=body, headers={"content-type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json() == {"error": message}
    assert stub.runs == []


def test_multi_agent_run_rejects_bad_execution(stub_client, stub):
    response = stub_client.post(
        "/multi-agent-run", json={"objective": "x", "execution": {"auto_merge": "maybe"}}
    )

    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid execution options")


def test_multi_agent_run_passes_inputs(stub_client, stub):
    response = stub_client.post("/multi-agent-run", json={
        "objective": "add health endpoint",
        "constraints": {"risk": "low"},
        "execution": {"auto_merge": True, "tokens_used": 10},
    })

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "run_id": "r1",
        "repo": "demo",
        "live_url": "https://octo.github.io/demo/",
        "tasks": [],
        "plan": {},
    }
    objective, constraints, execution = stub.runs[0]
    assert objective == "add health endpoint"
    assert constraints == {"risk": "low"}
    assert execution.auto_merge is True
    assert execution.enable_pages is False
    assert execution.budget().tokens_used == 10


def test_multi_agent_run_null_execution_fields_use_defaults(stub_client, stub):
    response = stub_client.post("/multi-agent-run", json={
        "objective": "x y",
        "execution": {
            "ci_conclusion": None,
            "tokens_used": None,
            "api_calls": None,
            "auto_merge": None,
            "enable_pages": None,
        },
    })

    assert response.status_code == 200
    execution = stub.runs[0][2]
    assert execution.ci_conclusion == "success"
    assert execution.auto_merge is False
    assert execution.enable_pages is False
    assert execution.budget().tokens_used == 0
    assert execution.budget().api_calls == 0


def test_multi_agent_run_failure_is_500(settings):
    stub = StubCoordinator(error=RuntimeError("host unreachable"))

    with TestClient(create_app(settings=settings, coordinator=stub)) as client:
        response = client.post("/multi-agent-run", json={"objective": "x"})

    assert response.status_code == 500
    assert response.json() == {"error": "host unreachable"}


# =============================================================================
# GENERATE REPO WITH PRS
# =============================================================================

@pytest.mark.parametrize("body", [
    {},
    {"objective": "x"},
    {"objective": "x", "tasks": []},
    {"objective": "x", "tasks": "task-1"},
    {"tasks": [{"id": "t", "description": "d"}]},
])
def test_generate_requires_objective_and_tasks(stub_client, body):
    response = stub_client.post("/generate-repo-with-prs", json=body)

    assert response.status_code == 400
    assert response.json() == {"error": "objective + tasks[] required"}


def test_generate_caps_task_count(stub_client, stub):
    tasks = [{"id": f"t{i}", "description": "d"} for i in range(26)]

    response = stub_client.post("/generate-repo-with-prs", json={"objective": "x", "tasks": tasks})

    assert response.status_code == 400
    assert response.json() == {"error": "Too many tasks (cap 25 in this endpoint)."}
    assert stub.generated == []


def test_generate_defaults_to_pages_and_parses_tasks(stub_client, stub):
    response = stub_client.post("/generate-repo-with-prs", json={
        "objective": "My Site",
        "tasks": [{"id": "t1", "description": "one", "dependencies": None}, "junk"],
    })

    assert response.status_code == 200
    assert response.json()["status"] == "success"
    objective, tasks, execution = stub.generated[0]
    assert [t.id for t in tasks] == ["t1"]
    assert tasks[0].dependencies == []
    assert execution.enable_pages is True


# =============================================================================
# WEBHOOK AND WEBSOCKET
# =============================================================================

def test_webhook_always_acknowledges(stub_client):
    response = stub_client.post("/webhook", json={"zen": "hi"}, headers={"x-github-event": "ping"})

    assert response.status_code == 200
    assert response.text == "OK"


def test_webhook_survives_broadcaster_errors(settings, stub):
    class BrokenBroadcaster(LiveBroadcaster):
        async def handle_webhook(self, event_name, payload):
            raise RuntimeError("broken")

    app = create_app(settings=settings, coordinator=stub, broadcaster=BrokenBroadcaster())
    with TestClient(app) as client:
        response = client.post("/webhook", json={}, headers={"x-github-event": "check_run"})

    assert response.status_code == 200


def test_websocket_sends_snapshot_and_answers_ping(stub_client):
    with stub_client.websocket_connect("/") as ws:
        snapshot = ws.receive_json()
        assert snapshot == {"type": "snapshot", "tasks": [], "prs": []}

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}
