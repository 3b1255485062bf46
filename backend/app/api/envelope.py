"""Response envelope shared by every router: ``{success, ..., error?}``."""
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from core.errors import LoadoutError


class ErrorBody(BaseModel):
    kind: str
    message: str = ""


class Envelope(BaseModel):
    success: bool = True
    error: ErrorBody | None = None


def error_body(exc: Exception) -> ErrorBody:
    """Classify ``exc`` into one of the documented error kinds."""
    if isinstance(exc, LoadoutError):
        return ErrorBody(**exc.to_dict())
    if isinstance(exc, ValueError):
        return ErrorBody(kind="validation", message=str(exc))
    if isinstance(exc, (SQLAlchemyError, OSError)):
        return ErrorBody(kind="storage", message=str(exc) or type(exc).__name__)
    return ErrorBody(kind="internal", message=str(exc) or type(exc).__name__)
