"""Storage bootstrap: create the data directory and tables if missing."""
import logging

from fastapi import APIRouter, Request

from api.envelope import Envelope, error_body
from config import settings
from models import init_db

router = APIRouter(prefix="/api/storage", tags=["storage"])
logger = logging.getLogger("loadout.api.storage")


class StorageResponse(Envelope):
    data_dir: str = ""


@router.post("/ensure", response_model=StorageResponse)
async def ensure_storage(request: Request):
    """Idempotent; safe to call on every UI start."""
    try:
        await init_db(request.app.state.engine)
    except Exception as e:
        logger.error("Storage initialisation failed: %s", e, exc_info=True)
        return StorageResponse(success=False, error=error_body(e))
    return StorageResponse(data_dir=settings.DATA_DIR)
