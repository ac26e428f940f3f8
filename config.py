import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        labor_category: str,
        bot_token: str,
        extraction_keys: list[str],
        extraction_model: str,
        extraction_timeout_secs: float,
        pending_ttl_secs: int,
        chat_item_limit: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.labor_category = labor_category
        self.bot_token = bot_token
        self.extraction_keys = extraction_keys
        self.extraction_model = extraction_model
        self.extraction_timeout_secs = extraction_timeout_secs
        self.pending_ttl_secs = pending_ttl_secs
        self.chat_item_limit = chat_item_limit


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_keys(raw: str) -> list[str]:
    return [key.strip() for key in raw.split(",") if key.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    # Ledger rows are stamped and bucketed in UTC+5.
    timezone = os.getenv("LEDGER_TIMEZONE", "Asia/Tashkent")
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "UZS").upper()
    labor_category = os.getenv("LEDGER_LABOR_CATEGORY", "Ish haqi")
    bot_token = os.getenv("LEDGER_BOT_TOKEN", "")
    extraction_keys = _split_keys(os.getenv("LEDGER_EXTRACTION_KEYS", ""))
    extraction_model = os.getenv("LEDGER_EXTRACTION_MODEL", "gemini-2.5-flash-lite")
    extraction_timeout_secs = float(
        os.getenv("LEDGER_EXTRACTION_TIMEOUT_SECS", "30")
    )
    pending_ttl_secs = int(os.getenv("LEDGER_PENDING_TTL_SECS", "900"))
    chat_item_limit = int(os.getenv("LEDGER_CHAT_ITEM_LIMIT", "20"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        labor_category=labor_category,
        bot_token=bot_token,
        extraction_keys=extraction_keys,
        extraction_model=extraction_model,
        extraction_timeout_secs=extraction_timeout_secs,
        pending_ttl_secs=pending_ttl_secs,
        chat_item_limit=chat_item_limit,
    )
