"""
Provider configuration API.

Secrets never leave the host in plaintext: the config returned by
GET /api/providers/config carries masked keys only. A save that omits a key
(or sends it blank) keeps the stored one.
"""
import logging

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from api.envelope import Envelope, error_body
from core.errors import ConfigValidationError
from core.secrets import mask_key
from services.provider_config import (
    PROVIDER_INFO,
    ProviderConfig,
    ProviderId,
    normalize_ollama_url,
)
from services.provider_store import ProviderStore

router = APIRouter(prefix="/api/providers", tags=["providers"])
logger = logging.getLogger("loadout.api.providers")


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------
class CredentialedView(BaseModel):
    configured: bool = False
    api_key_masked: str = ""
    model: str = ""


class LocalView(BaseModel):
    model: str = ""
    base_url: str = ""


class ProvidersView(BaseModel):
    openai: CredentialedView | None = None
    anthropic: CredentialedView | None = None
    ollama: LocalView | None = None


class ConfigView(BaseModel):
    selected_provider: ProviderId
    providers: ProvidersView


class ConfigResponse(Envelope):
    config: ConfigView | None = None


class MessageResponse(Envelope):
    message: str = ""


class ExistsResponse(Envelope):
    exists: bool = False


class CatalogEntry(BaseModel):
    id: ProviderId
    name: str
    requires_api_key: bool
    models: list[str] = []
    default_model: str = ""
    api_key_url: str = ""
    description: str = ""


class CatalogResponse(Envelope):
    providers: list[CatalogEntry] = []


class LocalModelsResponse(Envelope):
    endpoint: str = ""
    models: list[str] = []


class LegacyKeyRequest(BaseModel):
    api_key: str


def _store(request: Request) -> ProviderStore:
    return request.app.state.provider_store


def _mask_config(config: ProviderConfig) -> ConfigView:
    p = config.providers
    view = ProvidersView()
    for name in ("openai", "anthropic"):
        entry = getattr(p, name)
        if entry is not None:
            key = entry.api_key.get_secret_value() if entry.api_key else ""
            setattr(view, name, CredentialedView(
                configured=bool(key), api_key_masked=mask_key(key), model=entry.model,
            ))
    if p.ollama is not None:
        view.ollama = LocalView(model=p.ollama.model, base_url=p.ollama.base_url)
    return ConfigView(selected_provider=config.selected_provider, providers=view)


async def _sync_keepalive(request: Request) -> None:
    try:
        await request.app.state.keep_alive.sync()
    except Exception as e:
        logger.warning("Ollama keep-alive sync failed: %s", e)


# ---------------------------------------------------------------------------
# Provider config
# ---------------------------------------------------------------------------
@router.get("/config", response_model=ConfigResponse)
async def get_config(request: Request):
    try:
        config = await _store(request).get()
    except Exception as e:
        logger.error("Error reading provider config: %s", e, exc_info=True)
        return ConfigResponse(success=False, error=error_body(e))
    return ConfigResponse(config=_mask_config(config) if config else None)


@router.post("/config", response_model=MessageResponse)
async def save_config(req: ProviderConfig, request: Request):
    try:
        await _store(request).save(req)
    except ConfigValidationError as e:
        logger.info("Provider config rejected: %s", e.message)
        return MessageResponse(success=False, error=error_body(e))
    except Exception as e:
        logger.error("Error saving provider config: %s", e, exc_info=True)
        return MessageResponse(success=False, error=error_body(e))

    await _sync_keepalive(request)
    label = PROVIDER_INFO[req.selected_provider]["name"]
    return MessageResponse(message=f"{label} saved and selected")


@router.delete("/config", response_model=MessageResponse)
async def delete_config(request: Request):
    try:
        await _store(request).delete()
    except Exception as e:
        logger.error("Error deleting provider config: %s", e, exc_info=True)
        return MessageResponse(success=False, error=error_body(e))

    await _sync_keepalive(request)
    return MessageResponse(message="Provider configuration deleted")


@router.get("/config/exists", response_model=ExistsResponse)
async def config_exists(request: Request):
    try:
        return ExistsResponse(exists=await _store(request).exists())
    except Exception as e:
        logger.error("Error checking provider config: %s", e, exc_info=True)
        return ExistsResponse(success=False, error=error_body(e))


@router.get("/catalog", response_model=CatalogResponse)
async def catalog():
    return CatalogResponse(providers=[
        CatalogEntry(id=provider, **info) for provider, info in PROVIDER_INFO.items()
    ])


@router.get("/ollama/models", response_model=LocalModelsResponse)
async def ollama_models(request: Request, endpoint: str | None = Query(None)):
    """Never fails: an unreachable runtime yields an empty list."""
    models = await _store(request).discover_local_models(endpoint)
    return LocalModelsResponse(endpoint=normalize_ollama_url(endpoint), models=models)


# ---------------------------------------------------------------------------
# Legacy single OpenAI key
# ---------------------------------------------------------------------------
@router.post("/legacy-key", response_model=MessageResponse)
async def save_legacy_key(req: LegacyKeyRequest, request: Request):
    try:
        await _store(request).save_legacy_credential(req.api_key)
    except ConfigValidationError as e:
        return MessageResponse(success=False, error=error_body(e))
    except Exception as e:
        logger.error("Error saving legacy key: %s", e, exc_info=True)
        return MessageResponse(success=False, error=error_body(e))
    return MessageResponse(message="API key saved")


@router.get("/legacy-key", response_model=ExistsResponse)
async def has_legacy_key(request: Request):
    try:
        return ExistsResponse(exists=await _store(request).has_legacy_credential())
    except Exception as e:
        logger.error("Error checking legacy key: %s", e, exc_info=True)
        return ExistsResponse(success=False, error=error_body(e))


@router.delete("/legacy-key", response_model=MessageResponse)
async def delete_legacy_key(request: Request):
    try:
        await _store(request).delete_legacy_credential()
    except Exception as e:
        logger.error("Error deleting legacy key: %s", e, exc_info=True)
        return MessageResponse(success=False, error=error_body(e))
    return MessageResponse(message="API key deleted")
