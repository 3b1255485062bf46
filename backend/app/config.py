from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Storage (local to the desktop user profile)
    DATA_DIR: str = "./data"
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/loadout.db"

    # App
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    HOST: str = "127.0.0.1"
    PORT: int = 8765

    # Fernet key for provider credentials; generated into DATA_DIR when empty
    SECRET_KEY: str = ""

    # LLM providers
    AI_TIMEOUT: int = 120
    AI_TEMPERATURE: float = 0.7
    OPENAI_MODEL: str = "gpt-4"
    ANTHROPIC_MODEL: str = "claude-3-5-sonnet-20241022"

    # Ollama (local runtime)
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_DISCOVERY_TIMEOUT: float = 3.0
    OLLAMA_KEEPALIVE_INTERVAL: int = 240    # seconds between pings
    OLLAMA_KEEPALIVE_DURATION: str = "10m"  # how long Ollama keeps the model loaded

    # Generation
    GENERATION_HISTORY_LIMIT: int = 20

    # Preview server
    PREVIEW_HOST: str = "127.0.0.1"
    PREVIEW_STARTUP_TIMEOUT: float = 10.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
