"""ProviderStore: persistent multi-provider configuration.

One row per provider in ``provider_entries``; one flag marks the selected
provider. API keys are encrypted with SecretBox before they reach the database
and decrypted only while building the ProviderConfig returned by ``get()``.

The legacy single OpenAI key (``legacy_credentials``) is read through on every
``get()`` while no provider entries exist; it is never rewritten.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import SecretStr
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from core.errors import ConfigValidationError
from core.secrets import InvalidToken, SecretBox, mask_key
from models.legacy_credential import LegacyCredential
from models.provider_entry import ProviderEntryRecord
from services.provider_config import (
    DEFAULT_MODELS,
    PROVIDER_INFO,
    CredentialedEntry,
    LocalEntry,
    ProviderConfig,
    ProviderEntries,
    ProviderId,
    migrate_legacy_credential,
    normalize_ollama_url,
    requires_api_key,
)

logger = logging.getLogger("loadout.provider_store")


class ProviderStore:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secret_box: SecretBox,
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        discovery_timeout: float = settings.OLLAMA_DISCOVERY_TIMEOUT,
    ):
        self.session_factory = session_factory
        self.secret_box = secret_box
        self.discovery_timeout = discovery_timeout
        self._transport = http_transport

    # ------------------------------------------------------------------
    # Provider config
    # ------------------------------------------------------------------
    async def get(self) -> ProviderConfig | None:
        """Current config, the migrated legacy key, or None when unconfigured."""
        async with self.session_factory() as session:
            rows = await self._load_rows(session)
            if not rows:
                legacy = await self._read_legacy(session)
                return migrate_legacy_credential(legacy) if legacy else None

        entries: dict[str, CredentialedEntry | LocalEntry] = {}
        known = {p.value for p in ProviderId}
        selected = None
        for row in rows.values():
            entry = self._row_to_entry(row)
            if entry is not None:
                entries[row.provider] = entry
            if row.is_selected and row.provider in known:
                selected = row.provider

        if not entries:
            return None
        if selected is None:
            selected = next(iter(entries))
        elif selected not in entries:
            # keep the selection so resolving it fails instead of switching provider
            logger.warning("Selected provider %s has no readable entry", selected)
        return ProviderConfig(
            selected_provider=ProviderId(selected),
            providers=ProviderEntries(**entries),
        )

    async def save(self, config: ProviderConfig) -> None:
        """Merge ``config`` into the stored entries and select its provider.

        A credentialed entry without an api_key keeps the stored key; providers
        absent from ``config`` keep their rows. Raises ConfigValidationError
        (nothing written) if the selected provider ends up unusable.
        """
        async with self.session_factory() as session:
            rows = await self._load_rows(session)

            for provider in ProviderId:
                entry = config.providers.get(provider)
                if entry is None:
                    continue
                row = rows.get(provider.value)
                if requires_api_key(provider):
                    key = entry.api_key.get_secret_value().strip() if entry.api_key else ""
                    if not key and row is None:
                        continue
                    if row is None:
                        row = ProviderEntryRecord(provider=provider.value)
                        session.add(row)
                        rows[provider.value] = row
                    if key:
                        row.secret = self.secret_box.encrypt(key)
                    row.model = entry.model or row.model or DEFAULT_MODELS[provider]
                    logger.info(
                        "Provider entry updated: %s, model=%s, key=%s",
                        provider.value, row.model, mask_key(key) if key else "(kept)",
                    )
                else:
                    if not entry.model and row is None:
                        continue
                    if row is None:
                        row = ProviderEntryRecord(provider=provider.value, secret="")
                        session.add(row)
                        rows[provider.value] = row
                    row.model = entry.model or row.model
                    row.base_url = normalize_ollama_url(entry.base_url)
                    logger.info(
                        "Provider entry updated: %s, model=%s, base_url=%s",
                        provider.value, row.model, row.base_url,
                    )

            selected = config.selected_provider
            if not self._is_usable(rows.get(selected.value)):
                label = PROVIDER_INFO[selected]["name"]
                what = "API key" if requires_api_key(selected) else "model"
                raise ConfigValidationError(f"{label} has no {what} configured")

            for row in rows.values():
                row.is_selected = row.provider == selected.value

            await session.commit()

        logger.info("Provider config saved, selected=%s", selected.value)

    async def delete(self) -> None:
        """Remove every provider entry and the legacy key. Idempotent."""
        async with self.session_factory() as session:
            r1 = await session.execute(delete(ProviderEntryRecord))
            r2 = await session.execute(delete(LegacyCredential))
            await session.commit()
        logger.info(
            "Provider config deleted (%d entries, %d legacy keys)",
            r1.rowcount or 0, r2.rowcount or 0,
        )

    async def exists(self) -> bool:
        return await self.get() is not None

    # ------------------------------------------------------------------
    # Legacy single-key record
    # ------------------------------------------------------------------
    async def save_legacy_credential(self, api_key: str) -> None:
        api_key = api_key.strip()
        if not api_key:
            raise ConfigValidationError("API key is empty")
        async with self.session_factory() as session:
            row = (await session.execute(select(LegacyCredential))).scalars().first()
            if row is None:
                row = LegacyCredential(secret="")
                session.add(row)
            row.secret = self.secret_box.encrypt(api_key)
            await session.commit()
        logger.info("Legacy API key saved: %s", mask_key(api_key))

    async def has_legacy_credential(self) -> bool:
        async with self.session_factory() as session:
            return bool(await self._read_legacy(session))

    async def delete_legacy_credential(self) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(LegacyCredential))
            await session.commit()

    # ------------------------------------------------------------------
    # Local runtime discovery
    # ------------------------------------------------------------------
    async def discover_local_models(self, endpoint: str | None = None) -> list[str]:
        """Model names served by the Ollama runtime; [] when it is unreachable."""
        base = normalize_ollama_url(endpoint)
        try:
            async with httpx.AsyncClient(
                timeout=self.discovery_timeout, transport=self._transport
            ) as http:
                resp = await http.get(f"{base}/api/tags")
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("Ollama not reachable at %s: %s", base, exc)
            return []

        if not isinstance(data, dict):
            return []
        models = data.get("models") or []
        return [
            m["name"] for m in models
            if isinstance(m, dict) and isinstance(m.get("name"), str) and m["name"]
        ]

    # ------------------------------------------------------------------
    async def _load_rows(self, session: AsyncSession) -> dict[str, ProviderEntryRecord]:
        result = await session.execute(
            select(ProviderEntryRecord).order_by(ProviderEntryRecord.id)
        )
        return {row.provider: row for row in result.scalars().all()}

    async def _read_legacy(self, session: AsyncSession) -> str | None:
        row = (await session.execute(select(LegacyCredential))).scalars().first()
        if row is None or not row.secret:
            return None
        try:
            return self.secret_box.decrypt(row.secret) or None
        except (InvalidToken, ValueError):
            logger.warning("Legacy API key could not be decrypted, ignoring it")
            return None

    def _row_to_entry(self, row: ProviderEntryRecord) -> CredentialedEntry | LocalEntry | None:
        try:
            provider = ProviderId(row.provider)
        except ValueError:
            logger.warning("Unknown provider row ignored: %s", row.provider)
            return None

        if not requires_api_key(provider):
            return LocalEntry(model=row.model, base_url=row.base_url or settings.OLLAMA_BASE_URL)

        if not row.secret:
            return None
        try:
            api_key = self.secret_box.decrypt(row.secret)
        except (InvalidToken, ValueError):
            logger.warning("Stored key for %s could not be decrypted, dropping entry", row.provider)
            return None
        return CredentialedEntry(api_key=SecretStr(api_key), model=row.model)

    @staticmethod
    def _is_usable(row: ProviderEntryRecord | None) -> bool:
        if row is None:
            return False
        if requires_api_key(ProviderId(row.provider)):
            return bool(row.secret)
        return bool(row.model)
