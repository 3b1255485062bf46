"""Provider entries: one row per LLM provider (openai, anthropic, ollama).

Credentials are stored as Fernet tokens (see core.secrets). Rows for providers
that are not currently selected are kept so switching back does not require
re-entering the key.
"""
from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class ProviderEntryRecord(Base, TimestampMixin):
    __tablename__ = "provider_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    provider: Mapped[str] = mapped_column(String(20), unique=True)  # openai|anthropic|ollama
    secret: Mapped[str] = mapped_column(Text, default="")           # encrypted api key, "" for local
    model: Mapped[str] = mapped_column(String(200), default="")
    base_url: Mapped[str] = mapped_column(String(500), default="")
    is_selected: Mapped[bool] = mapped_column(default=False)
