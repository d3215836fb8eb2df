# tests/unit/test_web_app.py

from __future__ import annotations
import sys
from pathlib import Path
import pytest
from fastapi.testclient import TestClient

# Ensure "src" is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from labforge.core.errors import UnauthorizedError, UserCancelledError
from labforge.core.ports import CancellationToken
from labforge.web.app import create_app


class FakeService:
    model = "fake"

    def __init__(self, supports_images=True, error=None):
        self.supports_images = supports_images
        self.error = error
        self.calls = []

    async def call_once(self, prompt, content, token, on_status=None):
        self.calls.append((prompt, content))
        if self.error:
            raise self.error
        return f"{prompt}:{content.upper()}"

    async def call_streaming(self, prompt, content, on_chunk, token, on_status=None):
        self.calls.append((prompt, content))
        for piece in ("one ", "two ", "three"):
            on_chunk(piece)
        return "one two three"

    async def call_multimodal_streaming(self, prompt, parts, on_chunk, token, on_status=None):
        self.calls.append((prompt, list(parts)))
        return "```powershell\nexit 0\n```"


def make_client(tmp_path: Path, monkeypatch, service) -> TestClient:
    cfg_dir = tmp_path / "config"
    prompts = cfg_dir / "prompts" / "default"
    prompts.mkdir(parents=True)
    for key in ("agent1_series", "agent1_single", "restructure", "combined", "script"):
        (prompts / f"{key}.md").write_text(key.upper(), encoding="utf-8")
    cfg = cfg_dir / "default.yaml"
    cfg.write_text(
        "provider: { name: ollama }\n"
        "storage: { backend: none, history_dir: runs }\n"
        "runtime: { stream: true }\n",
        encoding="utf-8",
    )
    monkeypatch.setattr("labforge.bootstrap.create_ai_service", lambda config, retry_policy=None: service)
    return TestClient(create_app(cfg, repo_root=tmp_path))


def test_config_endpoint(tmp_path, monkeypatch):
    client = make_client(tmp_path, monkeypatch, FakeService(supports_images=False))
    data = client.get("/api/config").json()
    assert data["provider"] == "ollama"
    assert data["model"] == "fake"
    assert data["supports_images"] is False
    assert [a["id"] for a in data["agents"]] == [1, 2, 3, 4]


def test_process_with_prompt_key_or_text(tmp_path, monkeypatch):
    svc = FakeService()
    client = make_client(tmp_path, monkeypatch, svc)
    r = client.post("/api/process", json={"content": "lab", "prompt_key": "combined"})
    assert r.status_code == 200
    assert r.json()["text"] == "COMBINED:LAB"
    r = client.post("/api/process", json={"content": "lab", "prompt": "P", "operation_id": "op-1"})
    assert r.json() == {"operation_id": "op-1", "text": "P:LAB"}


def test_process_validation(tmp_path, monkeypatch):
    client = make_client(tmp_path, monkeypatch, FakeService())
    assert client.post("/api/process", json={"content": "lab"}).status_code == 400
    assert client.post("/api/process", json={"content": "lab", "prompt_key": "nope"}).status_code == 404


@pytest.mark.parametrize("error, status", [
    (UnauthorizedError(), 401),
    (UserCancelledError(), 409),
])
def test_provider_errors_map_to_http(tmp_path, monkeypatch, error, status):
    client = make_client(tmp_path, monkeypatch, FakeService(error=error))
    r = client.post("/api/process", json={"content": "lab", "prompt": "P"})
    assert r.status_code == status
    assert r.json()["detail"] == error.message


def test_stream_endpoint(tmp_path, monkeypatch):
    client = make_client(tmp_path, monkeypatch, FakeService())
    r = client.post("/api/stream", json={"content": "lab", "prompt": "P"})
    assert r.status_code == 200
    assert r.text == "one two three"
    assert r.headers["X-Operation-Id"]


def test_script_endpoint(tmp_path, monkeypatch):
    svc = FakeService()
    client = make_client(tmp_path, monkeypatch, svc)
    r = client.post("/api/script", json={"instructions": "do it", "images": [{"data": "aGk="}]})
    assert r.status_code == 200
    assert r.json()["script"] == "exit 0"
    prompt, parts = svc.calls[0]
    assert prompt == "SCRIPT"
    assert parts[1].mime_type == "image/png"


def test_script_images_rejected_for_text_model(tmp_path, monkeypatch):
    client = make_client(tmp_path, monkeypatch, FakeService(supports_images=False))
    r = client.post("/api/script", json={"instructions": "do it", "images": [{"data": "aGk="}]})
    assert r.status_code == 400


def test_workflow_endpoint(tmp_path, monkeypatch):
    client = make_client(tmp_path, monkeypatch, FakeService())
    r = client.post("/api/workflow", json={"content": "notes", "agent_id": 2, "mode": "document"})
    assert r.status_code == 200
    data = r.json()
    assert data["statuses"]["2"] == "done"
    assert data["results"][0]["output"] == "RESTRUCTURE:NOTES"


def test_workflow_bad_agent(tmp_path, monkeypatch):
    client = make_client(tmp_path, monkeypatch, FakeService())
    r = client.post("/api/workflow", json={"content": "notes", "agent_id": 1, "mode": "document"})
    assert r.status_code == 400


def test_cancel_unknown_operation(tmp_path, monkeypatch):
    client = make_client(tmp_path, monkeypatch, FakeService())
    assert client.post("/api/cancel/missing").status_code == 404


def test_workflow_steps_share_run_history(tmp_path, monkeypatch):
    svc = FakeService()
    client = make_client(tmp_path, monkeypatch, svc)
    client.post("/api/workflow", json={"content": "notes", "agent_id": 2, "mode": "document"})
    history = client.app.state.ctx["history"]
    assert history.outputs[2] == "RESTRUCTURE:NOTES"

    # the next request picks up the recorded restructure output
    r = client.post("/api/workflow", json={"content": "", "agent_id": 3, "mode": "document"})
    assert r.status_code == 200
    assert r.json()["statuses"] == {"2": "done", "3": "done", "4": "pending"}
    assert svc.calls[-1] == ("COMBINED", "RESTRUCTURE:NOTES")


def test_duplicate_operation_id_is_rejected(tmp_path, monkeypatch):
    svc = FakeService()
    client = make_client(tmp_path, monkeypatch, svc)
    running = CancellationToken()
    client.app.state.operations["op-1"] = running

    r = client.post("/api/process", json={"content": "lab", "prompt": "P", "operation_id": "op-1"})
    assert r.status_code == 409
    assert svc.calls == []
    assert client.app.state.operations["op-1"] is running
    assert client.post("/api/cancel/op-1").json() == {"operation_id": "op-1", "cancelled": True}
    assert running.cancelled
