import os
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


def _read_openai_key_from_file() -> str | None:
    path = os.getenv("OPENAI_API_KEY_FILE", "/run/secrets/openai_api_key")
    try:
        if path and os.path.isfile(path):
            with open(path, "r", encoding="utf-8") as f:
                return f.read().strip()
    except OSError:
        return None
    return None


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "on"}


# Only accept explicit numeric '1' for stub mode (avoid accidental 'True' string from host env)
DEV_ALLOW_NO_LLM = os.getenv("DEV_ALLOW_NO_LLM", "0") == "1"


class Settings(BaseSettings):
    APP_ENV: str = os.getenv("APP_ENV", os.getenv("ENV", "dev"))  # dev | prod | test
    DATABASE_URL: str = "sqlite:///./data/budget_advisor.db"

    # Chat completion provider (OpenAI-compatible; Ollama shim by default)
    OPENAI_BASE_URL: str = "http://localhost:11434/v1"
    OPENAI_API_KEY: str = "ollama"
    OPENAI_API_KEY_FILE: str = "/run/secrets/openai_api_key"
    MODEL: str = "gpt-oss:20b"
    LLM_TIMEOUT_SEC: float = 60.0
    LLM_TEMPERATURE: float = 0.3
    DEV_ALLOW_NO_LLM: bool = DEV_ALLOW_NO_LLM

    # Embeddings
    EMBED_PROVIDER: str = "ollama"  # "openai" | "ollama"
    OPENAI_EMBED_MODEL: str = "text-embedding-3-small"
    OLLAMA_URL: str = "http://ollama:11434"
    OLLAMA_EMBED_MODEL: str = "nomic-embed-text"
    EMBED_DIM: int = 768  # width of the pgvector column (nomic-embed-text)
    EMBED_TIMEOUT_SEC: float = 30.0
    EMBED_BATCH_SIZE: int = 50
    EMBED_BACKFILL_INTERVAL_S: int = 120
    EMBED_BACKFILL_LOOKBACK_HOURS: int = 24

    # Recommendation agent
    AGENT_MAX_ITERATIONS: int = 5
    RECOMMENDATION_MIN_TRANSACTIONS: int = 5
    RECOMMENDATION_TTL_DAYS: int = 7
    RECOMMENDATION_RETENTION_DAYS: int = 30
    RECOMMENDATION_MAX: int = 5
    STALENESS_GRACE_MINUTES: int = 0

    # Scheduler
    SCHEDULER_ENABLED: bool = _env_bool("SCHEDULER_ENABLED", True)
    SCHEDULER_RUN_HOUR_UTC: int = 6
    SCHEDULER_USER_DELAY_S: float = 2.0
    SCHEDULER_ERROR_BACKOFF_S: int = 3600

    LOG_LEVEL: str = "INFO"
    DEV_JSON_LOGS: bool = False

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()

# Prefer env-provided key (dev) else secret file (prod)
if not os.getenv("OPENAI_API_KEY"):
    _file_key = _read_openai_key_from_file()
    if _file_key:
        settings.OPENAI_API_KEY = _file_key
