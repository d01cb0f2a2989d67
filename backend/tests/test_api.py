import json

import pytest
from fastapi.testclient import TestClient

from codeloop.config import Settings
from codeloop.models.base import ModelTurn
from codeloop.services import Services
from server import create_app

from tests.fakes import ScriptedModel, call, tool_turn


def sse_events(text):
    return [json.loads(line[len("data: ") :]) for line in text.splitlines() if line.startswith("data: ")]


@pytest.fixture
def settings(tmp_path):
    projects = tmp_path / "projects"
    (projects / "demo").mkdir(parents=True)
    return Settings(projects_dir=str(projects), build_command="echo built", fix_turns=1)


@pytest.fixture
def services(settings):
    return Services(settings)


@pytest.fixture
def client(settings, services):
    with TestClient(create_app(settings, services)) as test_client:
        yield test_client


def script(services, *turns):
    models = []

    def factory(request, settings, caches):
        model = ScriptedModel(list(turns))
        models.append(model)
        return model

    services.model_client_factory = factory
    return models


class TestGenerate:
    def test_streams_events_and_result(self, client, services):
        models = script(
            services,
            tool_turn(call("write_file", "w1", path="src/app.ts", content="export {}")),
            ModelTurn(text="Added the app."),
        )
        resp = client.post(
            "/api/generate",
            json={
                "prompt": "Create the app",
                "previous_files": {"package.json": {"file": {"contents": "{}"}}},
            },
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")

        events = sse_events(resp.text)
        kinds = [event["event_type"] for event in events]
        assert "tool_call" in kinds
        assert "file_written" in kinds
        assert kinds[-1] == "result"

        result = events[-1]["data"]
        assert result["files"] == {"src": {"directory": {"app.ts": {"file": {"contents": "export {}"}}}}}
        assert result["explanation"] == "Added the app."
        assert result["turns"] == 2
        assert result["error"] is None
        assert models[0].closed

    def test_model_failure_reported(self, client, services):
        script(services, RuntimeError("upstream unavailable"))
        resp = client.post("/api/generate", json={"prompt": "p"})
        events = sse_events(resp.text)
        assert [e["event_type"] for e in events][-2:] == ["error", "result"]
        assert events[-2]["error"] == "upstream unavailable"
        assert events[-1]["data"]["error"] == "upstream unavailable"

    def test_missing_credentials(self, client):
        resp = client.post("/api/generate", json={"prompt": "p"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "An Anthropic API key is required"

    def test_project_path_escape(self, client, services):
        script(services)
        resp = client.post("/api/generate", json={"prompt": "p", "project_path": "../elsewhere"})
        assert resp.status_code == 400
        assert "Path escapes project root" in resp.json()["detail"]

    def test_disk_project_with_build_check(self, client, services, settings, tmp_path):
        script(
            services,
            tool_turn(call("write_file", "w1", path="index.html", content="<h1>hi</h1>")),
            ModelTurn(text="Done."),
        )
        resp = client.post("/api/generate", json={"prompt": "p", "project_path": "demo"})
        events = sse_events(resp.text)
        result = events[-1]["data"]
        assert result["files"] == {"index.html": {"file": {"contents": "<h1>hi</h1>"}}}
        assert (tmp_path / "projects" / "demo" / "index.html").read_text() == "<h1>hi</h1>"
        texts = [e["data"]["content"] for e in events if e["event_type"] == "text"]
        assert "Build successful.\n" in texts


class TestInteractions:
    def test_unknown_screenshot(self, client):
        resp = client.post("/api/screenshot/screenshot-1-1", json={"image": "data:image/png;base64,AAA"})
        assert resp.status_code == 404

    def test_unknown_question(self, client):
        assert client.post("/api/question/question-1-1", json={"answers": {}}).status_code == 404
        assert client.delete("/api/question/question-1-1").status_code == 404


class TestNative:
    def test_exec_requires_active_project(self, client):
        assert client.post("/api/native/exec", json={"command": "echo hi"}).status_code == 409

    def test_start_rejects_escape(self, client):
        resp = client.post("/api/native/start", json={"project_path": "../../etc"})
        assert resp.status_code == 400

    def test_start_exec_and_stream(self, client, tmp_path):
        resp = client.post("/api/native/start", json={"project_path": "demo"})
        assert resp.status_code == 200
        assert resp.json()["pid"] is None
        assert resp.json()["project_path"].endswith("demo")

        result = client.post("/api/native/exec", json={"command": "echo hi"}).json()
        assert result == {"stdout": "hi\n", "stderr": "", "exit_code": 0}

        stream = client.get("/api/native/exec-stream", params={"command": "echo streamed"})
        events = sse_events(stream.text)
        assert "".join(e.get("output", "") for e in events) == "streamed\n"
        assert events[-1] == {"done": True}

        assert client.post("/api/native/stop").json() == {"stopped": []}


def test_models_without_gateway(client, settings):
    body = client.get("/api/models").json()
    assert body["gateway_models"] == []
    assert body["default"] == settings.default_model
    assert settings.default_model in body["models"]


def test_root(client):
    assert client.get("/").json() == {"Hello": "Codeloop"}
