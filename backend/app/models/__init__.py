from models.base import Base, async_session, engine, init_db
from models.provider_entry import ProviderEntryRecord
from models.legacy_credential import LegacyCredential

__all__ = [
    "Base",
    "async_session",
    "engine",
    "init_db",
    "ProviderEntryRecord",
    "LegacyCredential",
]
