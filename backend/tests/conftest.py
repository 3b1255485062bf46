"""Pytest configuration and fixtures."""
import asyncio
import os
import tempfile

# Keep settings-derived paths out of the working tree
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="loadout-test-"))
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(os.environ["DATA_DIR"], "loadout.db"),
)

import httpx
import pytest
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.secrets import SecretBox
from models import init_db
from services.generation import GeneratedFile, GenerationResult, StageStatus
from services.provider_store import ProviderStore


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite per test, tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'loadout.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def secret_box():
    return SecretBox(Fernet.generate_key())


@pytest.fixture
def ollama_models():
    """Model names the fake Ollama runtime reports; tests may mutate it."""
    return ["llama3:8b", "qwen2.5-coder:7b"]


@pytest.fixture
def ollama_requests():
    return []


@pytest.fixture
def ollama_transport(ollama_models, ollama_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        ollama_requests.append(request)
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": m} for m in ollama_models]})
        if request.url.path == "/api/generate":
            return httpx.Response(200, json={"done": True})
        return httpx.Response(404, json={"error": "not found"})

    return httpx.MockTransport(handler)


@pytest.fixture
def store(session_factory, secret_box, ollama_transport):
    return ProviderStore(session_factory, secret_box, http_transport=ollama_transport)


class FakeGenerator:
    """Reports three stages; optionally blocks on ``gate`` or fails with ``error``."""

    def __init__(self, result=None, error=None, gate: asyncio.Event | None = None):
        self.result = result or GenerationResult(
            title="Todo",
            plan="Todo app",
            files=[GeneratedFile(
                filename="App.js",
                type="main",
                content="window.App = () => React.createElement('h1', null, 'Todo');",
            )],
        )
        self.error = error
        self.gate = gate
        self.requests = []
        self.providers = []

    async def generate(self, request, provider, ctx):
        self.requests.append(request)
        self.providers.append(provider)
        ctx.report("plan", "Planning UI components...", 20)
        if self.gate is not None:
            await self.gate.wait()
        ctx.report("ui_code", "Generating UI code...", 60)
        if self.error is not None:
            raise self.error
        ctx.report("finalize", "Files ready", 100, StageStatus.SUCCESS)
        return self.result


@pytest.fixture
def fake_generator():
    return FakeGenerator()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
