"""
OllamaKeepAlive: keeps the selected local model loaded in memory.

Every OLLAMA_KEEPALIVE_INTERVAL seconds it sends an empty generate request
with ``keep_alive`` set, so the runtime does not unload the model between
generations. At most one loop runs at a time.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from config import settings
from services.provider_config import ProviderId, normalize_ollama_url
from services.provider_store import ProviderStore

logger = logging.getLogger("loadout.keepalive")


class OllamaKeepAlive:

    def __init__(
        self,
        store: ProviderStore,
        *,
        interval: float = settings.OLLAMA_KEEPALIVE_INTERVAL,
        keep_alive: str = settings.OLLAMA_KEEPALIVE_DURATION,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.interval = interval
        self.keep_alive = keep_alive
        self._transport = http_transport
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._model: Optional[str] = None
        self._base_url: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    @property
    def model(self) -> Optional[str]:
        return self._model if self.running else None

    async def start(self, model: str, base_url: str | None = None) -> None:
        base = normalize_ollama_url(base_url)
        if self.running and self._model == model and self._base_url == base:
            return
        await self.stop()

        self._model = model
        self._base_url = base
        self._running = True
        self._task = asyncio.create_task(self._loop(model, base), name="ollama-keepalive")
        logger.info(
            "Ollama keep-alive started: model=%s, every %ss (keep_alive=%s)",
            model, self.interval, self.keep_alive,
        )

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Ollama keep-alive stopped (model=%s)", self._model)
        self._model = None
        self._base_url = None

    async def sync(self) -> None:
        """Start or stop according to the stored config and the running runtime."""
        config = await self.store.get()
        entry = config.providers.ollama if config else None
        if (
            config is None
            or config.selected_provider != ProviderId.OLLAMA
            or entry is None
            or not entry.model
        ):
            await self.stop()
            return

        available = await self.store.discover_local_models(entry.base_url)
        if entry.model not in available:
            logger.info("Ollama model %s not available locally, keep-alive off", entry.model)
            await self.stop()
            return
        await self.start(entry.model, entry.base_url)

    # ------------------------------------------------------------------
    async def _loop(self, model: str, base_url: str) -> None:
        async with httpx.AsyncClient(timeout=30, transport=self._transport) as http:
            while self._running:
                await self.ping(http, model, base_url)
                await asyncio.sleep(self.interval)

    async def ping(self, http: httpx.AsyncClient, model: str, base_url: str) -> bool:
        try:
            resp = await http.post(
                f"{base_url}/api/generate",
                json={"model": model, "keep_alive": self.keep_alive},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Ollama keep-alive ping failed for %s: %s", model, exc)
            return False
        logger.debug("Ollama keep-alive ping ok: %s", model)
        return True
