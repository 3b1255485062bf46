import asyncio

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from api.envelope import error_body
from conftest import FakeGenerator
from core.errors import ConfigValidationError
from main import app
from services.generation import GenerationCoordinator
from services.ollama_keepalive import OllamaKeepAlive
from services.preview_server import PreviewServerManager


@pytest.fixture
async def state(db_engine, store, ollama_transport):
    gate = asyncio.Event()
    gate.set()
    generator = FakeGenerator(gate=gate)
    coordinator = GenerationCoordinator(store, generator)
    preview = PreviewServerManager(host="127.0.0.1")
    keep_alive = OllamaKeepAlive(store, interval=60, http_transport=ollama_transport)

    app.state.engine = db_engine
    app.state.provider_store = store
    app.state.coordinator = coordinator
    app.state.preview = preview
    app.state.keep_alive = keep_alive
    yield app.state

    await coordinator.shutdown()
    await preview.stop()
    await keep_alive.stop()


@pytest.fixture
async def client(state):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


OPENAI_CONFIG = {
    "selected_provider": "openai",
    "providers": {"openai": {"api_key": "sk-openai-1234567890", "model": "gpt-4"}},
}


async def test_health(client):
    resp = await client.get("/health")
    assert resp.json()["status"] == "ok"


async def test_ensure_storage(client):
    body = (await client.post("/api/storage/ensure")).json()
    assert body["success"] is True
    assert body["data_dir"]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------
async def test_config_unset(client):
    body = (await client.get("/api/providers/config")).json()
    assert body == {"success": True, "error": None, "config": None}
    assert (await client.get("/api/providers/config/exists")).json()["exists"] is False


async def test_save_and_read_masked_config(client):
    saved = (await client.post("/api/providers/config", json=OPENAI_CONFIG)).json()
    assert saved["success"] is True

    resp = await client.get("/api/providers/config")
    body = resp.json()
    assert "sk-openai-1234567890" not in resp.text
    assert body["config"]["selected_provider"] == "openai"
    openai = body["config"]["providers"]["openai"]
    assert openai == {"configured": True, "api_key_masked": "sk-ope...7890", "model": "gpt-4"}
    assert (await client.get("/api/providers/config/exists")).json()["exists"] is True


async def test_save_rejects_unusable_selection(client):
    body = (await client.post("/api/providers/config", json={
        "selected_provider": "anthropic",
        "providers": {"anthropic": {"model": "claude-3-opus-20240229"}},
    })).json()
    assert body["success"] is False
    assert body["error"]["kind"] == "validation"
    assert (await client.get("/api/providers/config")).json()["config"] is None


async def test_save_ollama_starts_keep_alive(client, state):
    body = (await client.post("/api/providers/config", json={
        "selected_provider": "ollama",
        "providers": {"ollama": {"model": "llama3:8b", "base_url": "http://localhost:11434"}},
    })).json()
    assert body["success"] is True
    assert state.keep_alive.model == "llama3:8b"

    assert (await client.delete("/api/providers/config")).json()["success"] is True
    assert not state.keep_alive.running


async def test_invalid_payload_gets_envelope(client):
    resp = await client.post("/api/providers/config", json={"selected_provider": "gemini"})
    assert resp.status_code == 200
    assert resp.json()["success"] is False
    assert resp.json()["error"]["kind"] == "validation"


async def test_store_fault_reported_as_storage(client, state, monkeypatch):
    async def broken():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(state.provider_store, "get", broken)
    body = (await client.get("/api/providers/config")).json()
    assert body["success"] is False
    assert body["error"]["kind"] == "storage"


@pytest.mark.parametrize("exc,kind", [
    (ConfigValidationError("no key"), "validation"),
    (ValueError("bad"), "validation"),
    (PermissionError("denied"), "storage"),
    (RuntimeError("boom"), "internal"),
])
def test_error_body_kinds(exc, kind):
    assert error_body(exc).kind == kind


async def test_delete_config_is_idempotent(client):
    await client.post("/api/providers/config", json=OPENAI_CONFIG)
    assert (await client.delete("/api/providers/config")).json()["success"] is True
    assert (await client.delete("/api/providers/config")).json()["success"] is True
    assert (await client.get("/api/providers/config")).json()["config"] is None


async def test_catalog(client):
    providers = (await client.get("/api/providers/catalog")).json()["providers"]
    assert [p["id"] for p in providers] == ["openai", "anthropic", "ollama"]
    assert providers[2]["requires_api_key"] is False
    assert providers[0]["default_model"] == "gpt-4"


async def test_ollama_models(client):
    body = (await client.get(
        "/api/providers/ollama/models", params={"endpoint": "http://localhost:11434/api/tags"},
    )).json()
    assert body["endpoint"] == "http://localhost:11434"
    assert body["models"] == ["llama3:8b", "qwen2.5-coder:7b"]


async def test_legacy_key_flow(client):
    assert (await client.get("/api/providers/legacy-key")).json()["exists"] is False
    assert (await client.post("/api/providers/legacy-key", json={"api_key": "sk-legacy-0000"})).json()["success"]
    assert (await client.get("/api/providers/legacy-key")).json()["exists"] is True

    config = (await client.get("/api/providers/config")).json()["config"]
    assert config["selected_provider"] == "openai"
    assert config["providers"]["openai"]["model"] == "gpt-4"

    assert (await client.delete("/api/providers/legacy-key")).json()["success"]
    assert (await client.get("/api/providers/legacy-key")).json()["exists"] is False

    empty = (await client.post("/api/providers/legacy-key", json={"api_key": " "})).json()
    assert empty["success"] is False


# ---------------------------------------------------------------------------
# Generation + preview
# ---------------------------------------------------------------------------
async def test_generation_flow_and_preview(client, state):
    await client.post("/api/providers/config", json=OPENAI_CONFIG)

    started = (await client.post("/api/generation", json={"idea": "A todo app"})).json()
    assert started["success"] is True
    job_id = started["job_id"]
    await state.coordinator.join(job_id)

    job = (await client.get(f"/api/generation/{job_id}")).json()["job"]
    assert job["status"] == "succeeded"
    assert [p["stage"] for p in job["progress"]] == ["start", "plan", "ui_code", "finalize"]
    assert job["result"]["files"][0]["filename"] == "App.js"

    preview = (await client.post("/api/preview/start", json={"job_id": job_id})).json()
    assert preview["success"] is True
    assert preview["url"].startswith("http://127.0.0.1:")

    url = (await client.get("/api/preview/url")).json()
    assert url == {"success": True, "error": None, "url": preview["url"], "running": True}

    assert (await client.post("/api/preview/stop")).json()["success"] is True
    assert (await client.get("/api/preview/url")).json()["running"] is False


async def test_generation_without_provider_fails(client, state):
    job_id = (await client.post("/api/generation", json={"idea": "A todo app"})).json()["job_id"]
    await state.coordinator.join(job_id)

    job = (await client.get(f"/api/generation/{job_id}")).json()["job"]
    assert job["status"] == "failed"
    assert job["error"]["kind"] == "configuration"


async def test_second_generation_rejected(client, state):
    await client.post("/api/providers/config", json=OPENAI_CONFIG)
    state.coordinator.generator.gate.clear()

    first = (await client.post("/api/generation", json={"idea": "first"})).json()
    second = (await client.post("/api/generation", json={"idea": "second"})).json()
    assert second["success"] is False
    assert second["error"]["kind"] == "already_running"
    assert second["running_job_id"] == first["job_id"]

    cancelled = (await client.post(f"/api/generation/{first['job_id']}/cancel")).json()
    assert cancelled == {"success": True, "error": None, "outcome": "success"}
    again = (await client.post(f"/api/generation/{first['job_id']}/cancel")).json()
    assert again["success"] is False
    assert again["outcome"] == "already_terminal"


async def test_generation_empty_idea(client):
    body = (await client.post("/api/generation", json={"idea": "  "})).json()
    assert body["success"] is False
    assert body["error"]["kind"] == "validation"


async def test_unknown_job(client):
    assert (await client.get("/api/generation/nope")).json()["error"]["kind"] == "not_found"
    body = (await client.post("/api/generation/nope/cancel")).json()
    assert body["outcome"] == "not_found"


async def test_preview_from_files_and_bad_requests(client):
    ok = (await client.post("/api/preview/start", json={
        "files": [{"filename": "App.js", "content": "window.App = () => null;"}],
    })).json()
    assert ok["success"] is True

    missing = (await client.post("/api/preview/start", json={})).json()
    assert missing["success"] is False
    assert missing["error"]["kind"] == "validation"

    unknown = (await client.post("/api/preview/start", json={"job_id": "nope"})).json()
    assert unknown["success"] is False
