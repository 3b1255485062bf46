"""Legacy single API key from the pre multi-provider releases (implicitly OpenAI).

Read-through only: ProviderStore converts it on every read while no provider
entries exist and never rewrites it.
"""
from sqlalchemy import Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class LegacyCredential(Base, TimestampMixin):
    __tablename__ = "legacy_credentials"

    id: Mapped[int] = mapped_column(primary_key=True)
    secret: Mapped[str] = mapped_column(Text)
