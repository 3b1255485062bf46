"""Error taxonomy shared by the host services and the HTTP/WebSocket bridge.

Services raise these exceptions; routers turn them into
``{"success": false, "error": {"kind": ..., "message": ...}}`` envelopes so the
UI never sees an unclassified failure.
"""
from __future__ import annotations

import enum


class GenerationErrorKind(str, enum.Enum):
    NETWORK = "network"
    QUOTA = "quota"
    MALFORMED_RESPONSE = "malformed_response"
    CANCELLED = "cancelled"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"


class PreviewErrorKind(str, enum.Enum):
    PORT_UNAVAILABLE = "port_unavailable"
    SPAWN_FAILED = "spawn_failed"


class LoadoutError(Exception):
    """Base exception for host operations."""

    kind: str = "internal"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": str(getattr(self.kind, "value", self.kind)), "message": self.message}


class ConfigValidationError(LoadoutError):
    """Selected provider has no usable entry."""

    kind = "validation"


class AlreadyRunningError(LoadoutError):
    kind = "already_running"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Generation {job_id} is already running; cancel it first")
        self.job_id = job_id


class GenerationError(LoadoutError):
    """Terminal failure of one generation job."""

    def __init__(
        self,
        kind: GenerationErrorKind,
        message: str = "",
        *,
        status_code: int = 0,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.status_code = status_code


class GenerationCancelled(GenerationError):
    """Raised at a cancellation checkpoint inside the generator."""

    def __init__(self, message: str = "Generation cancelled") -> None:
        super().__init__(GenerationErrorKind.CANCELLED, message)


class PreviewError(LoadoutError):
    def __init__(self, kind: PreviewErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
