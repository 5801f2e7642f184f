import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from errors import ConfigurationError


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_user_id: int,
        metadata_secret: str,
        plaid_client_id: Optional[str],
        plaid_secret: Optional[str],
        plaid_env: str,
        plaid_webhook_url: Optional[str],
        openai_api_key: Optional[str],
        openai_model: str,
        slack_bot_token: Optional[str],
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_user_id = default_user_id
        self.metadata_secret = metadata_secret
        self.plaid_client_id = plaid_client_id
        self.plaid_secret = plaid_secret
        self.plaid_env = plaid_env
        self.plaid_webhook_url = plaid_webhook_url
        self.openai_api_key = openai_api_key
        self.openai_model = openai_model
        self.slack_bot_token = slack_bot_token
        self.scheduler_enabled = scheduler_enabled

    def require(self, name: str) -> str:
        value = getattr(self, name, None)
        if not value:
            raise ConfigurationError(f"Missing required setting: {name}")
        return value


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "America/New_York")
    default_user_id = int(os.getenv("LEDGER_DEFAULT_USER_ID", "1"))
    metadata_secret = os.getenv(
        "LEDGER_METADATA_SECRET",
        "5c1f0d3e8a7b46c2b9e4f7a1d2c3b4a5e6f708192a3b4c5d6e7f8091a2b3c4d5",
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_user_id=default_user_id,
        metadata_secret=metadata_secret,
        plaid_client_id=os.getenv("PLAID_CLIENT_ID"),
        plaid_secret=os.getenv("PLAID_SECRET"),
        plaid_env=os.getenv("PLAID_ENV", "sandbox").lower(),
        plaid_webhook_url=os.getenv("PLAID_WEBHOOK_URL"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        slack_bot_token=os.getenv("SLACK_BOT_TOKEN"),
        scheduler_enabled=_env_flag("LEDGER_SCHEDULER_ENABLED", "true"),
    )
