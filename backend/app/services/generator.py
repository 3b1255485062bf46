"""
Default generator: idea (+ chat history) -> plan -> browser-ready UI files.

Two streamed model calls. The first produces a short plan, the second a JSON
file set. Cancellation is checked between streamed chunks. Output contract for
the files matches the preview server: plain browser JavaScript components that
register themselves on ``window``, with the root component on ``window.App``.
"""
import json
import logging

from core.errors import GenerationError, GenerationErrorKind
from services.generation import (
    GeneratedFile,
    GenerationContext,
    GenerationRequest,
    GenerationResult,
    StageStatus,
)
from services.llm_client import ChatClient
from services.provider_config import ActiveProvider

logger = logging.getLogger("loadout.generator")

# Progress is reported every this many streamed characters
PROGRESS_EVERY_CHARS = 400

PLAN_PROMPT = """You are a senior product engineer. Turn the user's app idea into a short build plan.

Return plain text with:
1. A one-line title.
2. The main screens and the components on each.
3. The state each component needs.

Keep it under 300 words."""

CODE_PROMPT = """You generate small single-page web apps that run directly in a browser.

RULES:
- React 18 and ReactDOM are available as globals. Tailwind CSS classes are available.
- No imports, no exports, no JSX, no build step: use React.createElement.
- Each file defines exactly one component and assigns it to window.<ComponentName>.
- The root component must be assigned to window.App and must be in a file named App.js.

RESPONSE FORMAT (strict JSON, no markdown):
{
  "title": "App title",
  "files": [
    {"filename": "Header.js", "type": "component", "content": "..."},
    {"filename": "App.js", "type": "main", "content": "..."}
  ]
}"""


def strip_code_fences(content: str) -> str:
    """Remove a ```json ... ``` wrapping if the model added one."""
    content = content.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        content = "\n".join(lines)
    return content


def parse_file_set(content: str) -> GenerationResult:
    """Parse the model's JSON answer; raises GenerationError(malformed_response)."""
    try:
        data = json.loads(strip_code_fences(content))
    except json.JSONDecodeError as e:
        raise GenerationError(
            GenerationErrorKind.MALFORMED_RESPONSE,
            f"Model returned invalid JSON ({e.msg})",
        ) from e

    if not isinstance(data, dict) or not isinstance(data.get("files"), list):
        raise GenerationError(
            GenerationErrorKind.MALFORMED_RESPONSE, "Model response has no 'files' list",
        )

    files = []
    for item in data["files"]:
        if not isinstance(item, dict):
            continue
        filename = str(item.get("filename") or "").strip()
        content_ = item.get("content")
        if not filename or not isinstance(content_, str):
            continue
        files.append(GeneratedFile(
            filename=filename,
            content=content_,
            type=str(item.get("type") or "component"),
        ))

    if not files:
        raise GenerationError(
            GenerationErrorKind.MALFORMED_RESPONSE, "Model response contained no usable files",
        )
    return GenerationResult(title=str(data.get("title") or ""), files=files)


class LLMGenerator:

    def __init__(self, client: ChatClient):
        self.client = client

    async def generate(
        self,
        request: GenerationRequest,
        provider: ActiveProvider,
        ctx: GenerationContext,
    ) -> GenerationResult:
        ctx.report("idea", "Processing your idea...", 5)
        history = [
            {"role": m.role, "content": m.content}
            for m in request.chat_history
            if m.role in ("user", "assistant") and m.content.strip()
        ]
        ctx.report("idea", "Idea captured", 10, StageStatus.SUCCESS)

        ctx.report("plan", "Planning UI components...", 15)
        plan = await self._stream(
            ctx, provider, "plan",
            [{"role": "system", "content": PLAN_PROMPT}, *history,
             {"role": "user", "content": request.idea}],
            start=15, end=40,
        )
        ctx.report("plan", "Plan ready", 40, StageStatus.SUCCESS)

        ctx.report("ui_code", "Generating UI code...", 45)
        raw = await self._stream(
            ctx, provider, "ui_code",
            [{"role": "system", "content": CODE_PROMPT},
             {"role": "user", "content": f"App idea:\n{request.idea}\n\nBuild plan:\n{plan}"}],
            start=45, end=90,
        )
        ctx.report("ui_code", "UI code received", 90, StageStatus.SUCCESS)

        ctx.report("finalize", "Validating generated files...", 95)
        result = parse_file_set(raw)
        result.plan = plan.strip()
        if not result.title:
            result.title = plan.strip().splitlines()[0][:80] if plan.strip() else request.idea[:80]
        ctx.report("finalize", f"{len(result.files)} files ready", 100, StageStatus.SUCCESS)
        logger.info("Generated %d files for job %s", len(result.files), ctx.job_id)
        return result

    async def _stream(
        self,
        ctx: GenerationContext,
        provider: ActiveProvider,
        stage: str,
        messages: list[dict],
        *,
        start: float,
        end: float,
    ) -> str:
        parts: list[str] = []
        received = 0
        next_report = PROGRESS_EVERY_CHARS
        async for chunk in self.client.stream_chat(provider, messages):
            ctx.checkpoint()
            parts.append(chunk)
            received += len(chunk)
            if received >= next_report:
                next_report += PROGRESS_EVERY_CHARS
                # creep towards the stage end without reaching it
                pct = start + (end - start) * (1 - PROGRESS_EVERY_CHARS / (received + PROGRESS_EVERY_CHARS))
                ctx.report(stage, f"Received {received} characters", round(pct, 1))
        return "".join(parts)
