"""Provider configuration domain types.

A ProviderConfig holds the selected provider plus at most one entry per
provider id. OpenAI and Anthropic entries carry an API key; the Ollama entry
carries a model name and the base URL of the local runtime instead.
"""
from __future__ import annotations

import enum
from typing import Optional

from pydantic import BaseModel, Field, SecretStr

from config import settings
from core.errors import ConfigValidationError


class ProviderId(str, enum.Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"


CREDENTIALED_PROVIDERS = (ProviderId.OPENAI, ProviderId.ANTHROPIC)

DEFAULT_MODELS = {
    ProviderId.OPENAI: settings.OPENAI_MODEL,
    ProviderId.ANTHROPIC: settings.ANTHROPIC_MODEL,
    ProviderId.OLLAMA: "",
}

PROVIDER_INFO = {
    ProviderId.OPENAI: {
        "name": "OpenAI",
        "requires_api_key": True,
        "models": ["gpt-4", "gpt-4-turbo-preview", "gpt-3.5-turbo"],
        "default_model": DEFAULT_MODELS[ProviderId.OPENAI],
        "api_key_url": "https://platform.openai.com/api-keys",
        "description": "High-quality models from OpenAI",
    },
    ProviderId.ANTHROPIC: {
        "name": "Anthropic",
        "requires_api_key": True,
        "models": [
            "claude-3-5-sonnet-20241022",
            "claude-3-opus-20240229",
            "claude-3-sonnet-20240229",
            "claude-3-haiku-20240307",
        ],
        "default_model": DEFAULT_MODELS[ProviderId.ANTHROPIC],
        "api_key_url": "https://console.anthropic.com/settings/keys",
        "description": "Claude models with strong reasoning",
    },
    ProviderId.OLLAMA: {
        "name": "Ollama (Local)",
        "requires_api_key": False,
        "models": [],  # discovered from the local runtime
        "default_model": "",
        "api_key_url": "",
        "description": "Free local models, no internet required",
    },
}


class CredentialedEntry(BaseModel):
    # None/blank on save means "keep the stored key"
    api_key: Optional[SecretStr] = None
    model: str = ""


class LocalEntry(BaseModel):
    model: str = ""
    base_url: str = settings.OLLAMA_BASE_URL


class ProviderEntries(BaseModel):
    openai: Optional[CredentialedEntry] = None
    anthropic: Optional[CredentialedEntry] = None
    ollama: Optional[LocalEntry] = None

    def get(self, provider: ProviderId) -> CredentialedEntry | LocalEntry | None:
        return getattr(self, provider.value)


class ProviderConfig(BaseModel):
    selected_provider: ProviderId
    providers: ProviderEntries = Field(default_factory=ProviderEntries)


class ActiveProvider(BaseModel):
    """Everything a chat client needs to call the selected provider."""

    provider: ProviderId
    model: str
    api_key: Optional[SecretStr] = None
    base_url: str = ""


def requires_api_key(provider: ProviderId) -> bool:
    return provider in CREDENTIALED_PROVIDERS


def normalize_ollama_url(url: str | None) -> str:
    """'http://host:11434/api/tags/' -> 'http://host:11434'."""
    base = (url or settings.OLLAMA_BASE_URL).strip().rstrip("/")
    if base.endswith("/api/tags"):
        base = base[: -len("/api/tags")]
    return base.rstrip("/") or settings.OLLAMA_BASE_URL


def migrate_legacy_credential(api_key: str) -> ProviderConfig:
    """Pure conversion of the legacy bare OpenAI key into a ProviderConfig."""
    return ProviderConfig(
        selected_provider=ProviderId.OPENAI,
        providers=ProviderEntries(
            openai=CredentialedEntry(
                api_key=SecretStr(api_key),
                model=DEFAULT_MODELS[ProviderId.OPENAI],
            )
        ),
    )


def resolve_active_provider(config: ProviderConfig | None) -> ActiveProvider:
    if config is None:
        raise ConfigValidationError(
            "No AI provider configured. Please configure a provider in settings."
        )

    provider = config.selected_provider
    entry = config.providers.get(provider)

    if provider == ProviderId.OLLAMA:
        if entry is None or not entry.model:
            raise ConfigValidationError(
                "No Ollama model selected. Please select a model in settings."
            )
        return ActiveProvider(
            provider=provider,
            model=entry.model,
            base_url=normalize_ollama_url(entry.base_url),
        )

    if entry is None or entry.api_key is None or not entry.api_key.get_secret_value().strip():
        label = PROVIDER_INFO[provider]["name"]
        raise ConfigValidationError(
            f"{label} API key not configured. Please set your API key in settings."
        )
    return ActiveProvider(
        provider=provider,
        model=entry.model or DEFAULT_MODELS[provider],
        api_key=entry.api_key,
    )
