"""
GenerationCoordinator: single-flight, cancellable generation jobs.

start() registers a job and returns its id immediately; the work runs in a
background asyncio task that resolves the selected provider and hands the
request to the injected Generator. Progress reported by the generator is
appended to the job's log and pushed synchronously to every listener, so
events of one job are strictly ordered and never interleave with another job.

Job lifecycle: pending -> running -> succeeded | failed | cancelled.
Exactly one terminal event is emitted per job; nothing follows it.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Literal, Optional, Protocol, Union

from pydantic import BaseModel

from config import settings
from core.errors import (
    AlreadyRunningError,
    ConfigValidationError,
    GenerationCancelled,
    GenerationError,
    GenerationErrorKind,
)
from services.llm_client import classify_provider_error
from services.provider_config import ActiveProvider, resolve_active_provider
from services.provider_store import ProviderStore

logger = logging.getLogger("loadout.generation")


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------
class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    CANCELLED = "cancelled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.CANCELLED, JobStatus.SUCCEEDED, JobStatus.FAILED)


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ERROR = "error"


class CancelOutcome(str, enum.Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class GeneratedFile(BaseModel):
    filename: str
    content: str
    type: str = "component"


class GenerationResult(BaseModel):
    title: str = ""
    plan: str = ""
    files: list[GeneratedFile] = []


class ErrorInfo(BaseModel):
    kind: str
    message: str = ""


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    job_id: str
    seq: int
    stage: str
    status: StageStatus = StageStatus.IN_PROGRESS
    message: str = ""
    percent: Optional[float] = None


class TerminalEvent(BaseModel):
    type: Literal["terminal"] = "terminal"
    job_id: str
    seq: int
    status: JobStatus
    result: Optional[GenerationResult] = None
    error: Optional[ErrorInfo] = None


GenerationEvent = Union[ProgressEvent, TerminalEvent]
EventListener = Callable[[GenerationEvent], None]


@dataclass
class GenerationRequest:
    idea: str
    chat_history: list[ChatMessage] = field(default_factory=list)


@dataclass
class GenerationJob:
    id: str
    request: GenerationRequest
    status: JobStatus = JobStatus.PENDING
    progress_log: list[ProgressEvent] = field(default_factory=list)
    result: Optional[GenerationResult] = None
    error: Optional[GenerationError] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    _seq: int = 0

    @property
    def idea(self) -> str:
        return self.request.idea

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def next_seq(self) -> int:
        self._seq += 1
        return self._seq


class GenerationContext:
    """Handed to the generator: progress reporting plus cancellation checkpoints."""

    def __init__(self, job: GenerationJob, report: Callable[..., None]):
        self.job = job
        self._report = report
        self._cancelled = asyncio.Event()

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def checkpoint(self) -> None:
        if self.cancelled:
            raise GenerationCancelled()

    def report(
        self,
        stage: str,
        message: str = "",
        percent: Optional[float] = None,
        status: StageStatus = StageStatus.IN_PROGRESS,
    ) -> None:
        self.checkpoint()
        self._report(self.job, stage, message, percent, status)


class Generator(Protocol):
    """Opaque capability: idea + history + provider -> project files."""

    async def generate(
        self,
        request: GenerationRequest,
        provider: ActiveProvider,
        ctx: GenerationContext,
    ) -> GenerationResult:
        ...


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------
class GenerationCoordinator:

    def __init__(
        self,
        store: ProviderStore,
        generator: Generator,
        *,
        history_limit: int = settings.GENERATION_HISTORY_LIMIT,
    ):
        self.store = store
        self.generator = generator
        self.history_limit = history_limit
        self._listeners: list[EventListener] = []
        self._jobs: OrderedDict[str, GenerationJob] = OrderedDict()
        self._contexts: dict[str, GenerationContext] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._active: Optional[GenerationJob] = None

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def active_job(self) -> Optional[GenerationJob]:
        return self._active

    def get(self, job_id: str) -> Optional[GenerationJob]:
        return self._jobs.get(job_id)

    def start(self, idea: str, chat_history: Optional[list[ChatMessage]] = None) -> str:
        """Register a new job and schedule it. Raises AlreadyRunningError."""
        active = self.active_job
        if active is not None:
            raise AlreadyRunningError(active.id)

        idea = (idea or "").strip()
        if not idea:
            raise ValueError("Idea must not be empty")

        job = GenerationJob(
            id=uuid.uuid4().hex,
            request=GenerationRequest(idea=idea, chat_history=list(chat_history or [])),
        )
        ctx = GenerationContext(job, self._emit_progress)
        self._register(job)
        self._contexts[job.id] = ctx
        self._active = job

        task = asyncio.create_task(self._run(job, ctx), name=f"generation-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))

        logger.info(
            "Generation %s started: %s%s (history: %d messages)",
            job.id, idea[:50], "..." if len(idea) > 50 else "", len(job.request.chat_history),
        )
        return job.id

    def cancel(self, job_id: str) -> CancelOutcome:
        job = self._jobs.get(job_id)
        if job is None:
            return CancelOutcome.NOT_FOUND
        if job.is_terminal:
            return CancelOutcome.ALREADY_TERMINAL

        ctx = self._contexts.get(job_id)
        if ctx is not None:
            ctx.cancel()
        self._finish(
            job,
            JobStatus.CANCELLED,
            error=GenerationCancelled("Cancelled by user"),
        )

        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
        logger.info("Generation %s cancelled", job_id)
        return CancelOutcome.SUCCESS

    async def join(self, job_id: str) -> Optional[GenerationJob]:
        """Wait until the job's background task has finished."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._jobs.get(job_id)

    async def shutdown(self) -> None:
        active = self.active_job
        if active is not None:
            self.cancel(active.id)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Background task
    # ------------------------------------------------------------------
    async def _run(self, job: GenerationJob, ctx: GenerationContext) -> None:
        job.status = JobStatus.RUNNING
        try:
            ctx.report("start", "Starting generation...", 0)
            config = await self.store.get()
            ctx.checkpoint()
            provider = resolve_active_provider(config)
            logger.info(
                "Generation %s using %s (%s)", job.id, provider.provider.value, provider.model,
            )
            result = await self.generator.generate(job.request, provider, ctx)
            ctx.checkpoint()
        except GenerationCancelled:
            self._finish(job, JobStatus.CANCELLED, error=GenerationCancelled())
        except asyncio.CancelledError:
            self._finish(job, JobStatus.CANCELLED, error=GenerationCancelled())
            raise
        except ConfigValidationError as exc:
            self._finish(
                job,
                JobStatus.FAILED,
                error=GenerationError(GenerationErrorKind.CONFIGURATION, exc.message),
            )
        except GenerationError as exc:
            self._finish(job, JobStatus.FAILED, error=exc)
        except Exception as exc:
            logger.error("Generation %s crashed: %s", job.id, exc, exc_info=True)
            self._finish(
                job,
                JobStatus.FAILED,
                error=GenerationError(classify_provider_error(exc), str(exc) or type(exc).__name__),
            )
        else:
            self._finish(job, JobStatus.SUCCEEDED, result=result)

    # ------------------------------------------------------------------
    # State transitions + emission (synchronous, one job at a time)
    # ------------------------------------------------------------------
    def _emit_progress(
        self,
        job: GenerationJob,
        stage: str,
        message: str,
        percent: Optional[float],
        status: StageStatus,
    ) -> None:
        if job.is_terminal:
            return
        event = ProgressEvent(
            job_id=job.id,
            seq=job.next_seq(),
            stage=stage,
            status=status,
            message=message,
            percent=percent,
        )
        job.progress_log.append(event)
        logger.debug("Generation %s progress: %s %s %s", job.id, stage, status.value, message)
        self._dispatch(event)

    def _finish(
        self,
        job: GenerationJob,
        status: JobStatus,
        *,
        result: Optional[GenerationResult] = None,
        error: Optional[GenerationError] = None,
    ) -> None:
        if job.is_terminal:
            return
        job.status = status
        job.result = result
        job.error = error
        job.finished_at = datetime.now(timezone.utc)
        self._contexts.pop(job.id, None)
        if self._active is job:
            self._active = None

        if status == JobStatus.FAILED and error is not None:
            logger.warning("Generation %s failed (%s): %s", job.id, error.kind.value, error.message)
        elif status == JobStatus.SUCCEEDED:
            logger.info(
                "Generation %s succeeded: %d files", job.id, len(result.files) if result else 0,
            )

        self._dispatch(TerminalEvent(
            job_id=job.id,
            seq=job.next_seq(),
            status=status,
            result=result,
            error=ErrorInfo(kind=error.kind.value, message=error.message) if error else None,
        ))
        self._prune_history()

    def _dispatch(self, event: GenerationEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.error("Generation listener failed: %s", exc, exc_info=True)

    def _register(self, job: GenerationJob) -> None:
        self._jobs[job.id] = job
        self._prune_history()

    def _prune_history(self) -> None:
        while len(self._jobs) > self.history_limit:
            oldest_id, oldest = next(iter(self._jobs.items()))
            if not oldest.is_terminal:
                break
            del self._jobs[oldest_id]
