import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from models import async_session, engine, init_db
from api.storage import router as storage_router
from api.providers import router as providers_router
from api.generation import router as generation_router
from api.preview import router as preview_router
from core.secrets import SecretBox
from core.websocket import router as ws_router, events_to_ws_bridge, queue_listener
from services.generation import GenerationCoordinator
from services.generator import LLMGenerator
from services.llm_client import ChatClient
from services.ollama_keepalive import OllamaKeepAlive
from services.preview_server import PreviewServerManager
from services.provider_store import ProviderStore

VERSION = "0.1.0"

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("loadout.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Loadout host starting... DEBUG=%s, data=%s", settings.DEBUG, settings.DATA_DIR)

    # Storage + secrets
    await init_db(engine)
    app.state.engine = engine
    store = ProviderStore(async_session, SecretBox.from_settings())
    app.state.provider_store = store

    # Generation: coordinator → event queue → WebSocket bridge
    events: asyncio.Queue = asyncio.Queue()
    coordinator = GenerationCoordinator(store, LLMGenerator(ChatClient()))
    coordinator.add_listener(queue_listener(events))
    app.state.coordinator = coordinator
    bridge_task = asyncio.create_task(events_to_ws_bridge(events))

    # Preview server (started on demand)
    preview = PreviewServerManager()
    app.state.preview = preview

    # Ollama keep-alive warm-up
    keep_alive = OllamaKeepAlive(store)
    app.state.keep_alive = keep_alive
    try:
        await keep_alive.sync()
    except Exception as e:
        logger.warning("Ollama keep-alive warm-up failed: %s", e)

    yield

    # Shutdown
    logger.info("Loadout host shutting down...")
    await coordinator.shutdown()
    await preview.stop()
    await keep_alive.stop()

    bridge_task.cancel()
    try:
        await bridge_task
    except asyncio.CancelledError:
        pass

    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Loadout API",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed payloads get the same envelope as every other failure."""
    return JSONResponse(
        status_code=200,
        content={
            "success": False,
            "error": {"kind": "validation", "message": str(exc.errors())},
        },
    )


app.include_router(storage_router)
app.include_router(providers_router)
app.include_router(generation_router)
app.include_router(preview_router)
app.include_router(ws_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": VERSION}


if __name__ == "__main__":
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
