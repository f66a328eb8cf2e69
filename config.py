import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        access_token_ttl_secs: int = 3600,
        refresh_token_ttl_secs: int = 30 * 24 * 3600,
        fetch_dedup_secs: float = 5.0,
        fetch_max_retries: int = 3,
        fetch_backoff_secs: float = 3.0,
        llm_api_key: str = "",
        llm_endpoint: str = "https://api.cerebras.ai/v1/chat/completions",
        llm_model: str = "qwen-3-32b",
        llm_timeout_secs: float = 60.0,
        scheduler_enabled: bool = True,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.access_token_ttl_secs = access_token_ttl_secs
        self.refresh_token_ttl_secs = refresh_token_ttl_secs
        self.fetch_dedup_secs = fetch_dedup_secs
        self.fetch_max_retries = fetch_max_retries
        self.fetch_backoff_secs = fetch_backoff_secs
        self.llm_api_key = llm_api_key
        self.llm_endpoint = llm_endpoint
        self.llm_model = llm_model
        self.llm_timeout_secs = llm_timeout_secs
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'finance.db'}"
    return Settings(
        database_url=database_url,
        timezone=os.getenv("FINANCE_TIMEZONE", "Europe/Berlin"),
        secret_key=os.getenv(
            "FINANCE_SECRET_KEY",
            "4f0c2a9d7be41a35c86e1d0b93f57a2e6c18d4b0f7a3e95c2d16b8a0e4f7c931",
        ),
        access_token_ttl_secs=int(os.getenv("FINANCE_ACCESS_TOKEN_TTL_SECS", "3600")),
        refresh_token_ttl_secs=int(
            os.getenv("FINANCE_REFRESH_TOKEN_TTL_SECS", str(30 * 24 * 3600))
        ),
        fetch_dedup_secs=float(os.getenv("FINANCE_FETCH_DEDUP_SECS", "5")),
        fetch_max_retries=int(os.getenv("FINANCE_FETCH_MAX_RETRIES", "3")),
        fetch_backoff_secs=float(os.getenv("FINANCE_FETCH_BACKOFF_SECS", "3")),
        llm_api_key=os.getenv("FINANCE_LLM_API_KEY", "").strip(),
        llm_endpoint=os.getenv(
            "FINANCE_LLM_ENDPOINT", "https://api.cerebras.ai/v1/chat/completions"
        ),
        llm_model=os.getenv("FINANCE_LLM_MODEL", "qwen-3-32b"),
        llm_timeout_secs=float(os.getenv("FINANCE_LLM_TIMEOUT_SECS", "60")),
        scheduler_enabled=_env_flag("FINANCE_SCHEDULER_ENABLED", "1"),
    )
