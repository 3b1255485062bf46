"""
Streaming chat client for the supported providers.

OpenAI goes through the official SDK (AsyncOpenAI); Anthropic and Ollama are
called over httpx. Every provider yields plain text chunks, and every failure
is raised as a GenerationError with a classified kind.
"""
from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Optional

import httpx

from config import settings
from core.errors import GenerationError, GenerationErrorKind
from services.provider_config import ActiveProvider, ProviderId

logger = logging.getLogger("loadout.llm_client")

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MAX_TOKENS = 8192

PROVIDER_LABELS = {
    ProviderId.OPENAI: "OpenAI",
    ProviderId.ANTHROPIC: "Anthropic",
    ProviderId.OLLAMA: "Ollama",
}


def classify_provider_error(error, status_code: int = 0) -> GenerationErrorKind:
    """Map an SDK/HTTP failure (or its text) onto a GenerationErrorKind."""
    if isinstance(error, GenerationError):
        return error.kind

    err_str = str(error).lower()

    if status_code in (401, 403) or any(kw in err_str for kw in (
        "401", "403", "unauthorized", "authentication", "invalid api key",
        "incorrect api key", "invalid x-api-key", "permission denied",
    )):
        return GenerationErrorKind.AUTHENTICATION

    if status_code in (402, 429) or any(kw in err_str for kw in (
        "429", "rate limit", "rate_limit", "too many requests", "quota",
        "insufficient_quota", "credit balance",
    )):
        return GenerationErrorKind.QUOTA

    if isinstance(error, (json.JSONDecodeError, KeyError, TypeError)) or any(
        kw in err_str for kw in ("invalid json", "malformed", "unexpected response")
    ):
        return GenerationErrorKind.MALFORMED_RESPONSE

    return GenerationErrorKind.NETWORK


def _provider_error(provider: ProviderId, error, status_code: int = 0) -> GenerationError:
    kind = classify_provider_error(error, status_code)
    label = PROVIDER_LABELS.get(provider, provider.value)
    short_err = str(error)[:300]
    return GenerationError(kind, f"{label}: {short_err}", status_code=status_code)


def _error_text(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body[:300]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        if err:
            return str(err)
    return body[:300]


class ChatClient:
    """
    Provider-agnostic streaming chat.

    Usage:
        client = ChatClient()
        async for chunk in client.stream_chat(active_provider, messages):
            ...
    """

    def __init__(
        self,
        *,
        timeout: float = settings.AI_TIMEOUT,
        temperature: float = settings.AI_TEMPERATURE,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.temperature = temperature
        self._transport = http_transport

    async def stream_chat(
        self,
        provider: ActiveProvider,
        messages: list[dict],
        *,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[str]:
        temp = self.temperature if temperature is None else temperature
        logger.info(
            "Chat request to %s (%s), %d messages",
            provider.provider.value, provider.model, len(messages),
        )

        if provider.provider == ProviderId.OPENAI:
            stream = self._stream_openai(provider, messages, temp)
        elif provider.provider == ProviderId.ANTHROPIC:
            stream = self._stream_anthropic(provider, messages, temp)
        elif provider.provider == ProviderId.OLLAMA:
            stream = self._stream_ollama(provider, messages, temp)
        else:
            raise GenerationError(
                GenerationErrorKind.CONFIGURATION,
                f"Unknown provider: {provider.provider}",
            )

        async for chunk in stream:
            yield chunk

    async def complete(self, provider: ActiveProvider, messages: list[dict]) -> str:
        parts = [chunk async for chunk in self.stream_chat(provider, messages)]
        return "".join(parts)

    # ------------------------------------------------------------------
    # OpenAI
    # ------------------------------------------------------------------
    async def _stream_openai(
        self, provider: ActiveProvider, messages: list[dict], temperature: float
    ) -> AsyncIterator[str]:
        from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI

        client = AsyncOpenAI(
            api_key=provider.api_key.get_secret_value() if provider.api_key else "",
            timeout=self.timeout,
        )
        try:
            stream = await client.chat.completions.create(
                model=provider.model,
                messages=messages,
                temperature=temperature,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except APIStatusError as e:
            raise _provider_error(provider.provider, e.message, e.status_code) from e
        except APIConnectionError as e:
            raise GenerationError(
                GenerationErrorKind.NETWORK, f"OpenAI: {e.message}"
            ) from e
        except APIError as e:
            raise _provider_error(provider.provider, e.message) from e
        finally:
            await client.close()

    # ------------------------------------------------------------------
    # Anthropic (SSE over httpx)
    # ------------------------------------------------------------------
    async def _stream_anthropic(
        self, provider: ActiveProvider, messages: list[dict], temperature: float
    ) -> AsyncIterator[str]:
        system_text = ""
        chat_msgs = []
        for m in messages:
            if m["role"] == "system":
                system_text += m["content"] + "\n"
            else:
                chat_msgs.append({"role": m["role"], "content": m["content"]})

        body = {
            "model": provider.model,
            "max_tokens": ANTHROPIC_MAX_TOKENS,
            "messages": chat_msgs,
            "temperature": temperature,
            "stream": True,
        }
        if system_text.strip():
            body["system"] = system_text.strip()

        headers = {
            "x-api-key": provider.api_key.get_secret_value() if provider.api_key else "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
                async with http.stream("POST", ANTHROPIC_URL, headers=headers, json=body) as resp:
                    if resp.status_code != 200:
                        raw = (await resp.aread()).decode("utf-8", "replace")
                        raise _provider_error(provider.provider, _error_text(raw), resp.status_code)

                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = json.loads(line[5:].strip())
                        event_type = data.get("type")
                        if event_type == "content_block_delta":
                            text = data.get("delta", {}).get("text", "")
                            if text:
                                yield text
                        elif event_type == "error":
                            err = data.get("error", {})
                            raise _provider_error(provider.provider, err.get("message", err))
                        elif event_type == "message_stop":
                            break
        except httpx.HTTPError as e:
            raise GenerationError(GenerationErrorKind.NETWORK, f"Anthropic: {e}") from e
        except ValueError as e:
            raise GenerationError(
                GenerationErrorKind.MALFORMED_RESPONSE, f"Anthropic: invalid stream data ({e})"
            ) from e

    # ------------------------------------------------------------------
    # Ollama (NDJSON over httpx)
    # ------------------------------------------------------------------
    async def _stream_ollama(
        self, provider: ActiveProvider, messages: list[dict], temperature: float
    ) -> AsyncIterator[str]:
        body = {
            "model": provider.model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "stream": True,
            "options": {"temperature": temperature},
        }
        url = f"{provider.base_url}/api/chat"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
                async with http.stream("POST", url, json=body) as resp:
                    if resp.status_code != 200:
                        raw = (await resp.aread()).decode("utf-8", "replace")
                        raise _provider_error(provider.provider, _error_text(raw), resp.status_code)

                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        data = json.loads(line)
                        if data.get("error"):
                            raise _provider_error(provider.provider, data["error"])
                        text = data.get("message", {}).get("content", "")
                        if text:
                            yield text
                        if data.get("done"):
                            break
        except httpx.HTTPError as e:
            raise GenerationError(
                GenerationErrorKind.NETWORK,
                f"Ollama is not reachable at {provider.base_url}: {e}",
            ) from e
        except ValueError as e:
            raise GenerationError(
                GenerationErrorKind.MALFORMED_RESPONSE, f"Ollama: invalid stream data ({e})"
            ) from e
