"""Configuration management from environment variables."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
SPOOL_DIR = DATA_DIR / "spool"
STATE_DB = DATA_DIR / "state.db"
METRICS_FILE = DATA_DIR / "metrics.jsonl"

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
SPOOL_DIR.mkdir(exist_ok=True)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration."""

    # ERP
    ERP_BASE_URL: str | None = os.getenv("ERP_BASE_URL")
    ERP_API_KEY: str | None = os.getenv("ERP_API_KEY")
    ERP_PROXY_URL: str | None = os.getenv("ERP_PROXY_URL")

    # Sync
    PAGE_SIZE: int = int(os.getenv("PAGE_SIZE", "100"))
    PAGE_DELAY_SECONDS: float = float(os.getenv("PAGE_DELAY_SECONDS", "0.5"))
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "30"))
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
    EARLY_STOP_THRESHOLD: int = int(os.getenv("EARLY_STOP_THRESHOLD", "50"))
    MAX_CONSECUTIVE_SKIPPED_PAGES: int = int(os.getenv("MAX_CONSECUTIVE_SKIPPED_PAGES", "5"))
    ETA_WINDOW: int = int(os.getenv("ETA_WINDOW", "5"))
    FULL_SYNC_INTERVAL_HOURS: float = float(os.getenv("FULL_SYNC_INTERVAL_HOURS", "24"))
    SYNC_LOCK_STALE_MINUTES: float = float(os.getenv("SYNC_LOCK_STALE_MINUTES", "60"))
    AUTO_SYNC_ENABLED: bool = _env_bool("AUTO_SYNC_ENABLED")
    SYNC_INTERVAL_MINUTES: float = float(os.getenv("SYNC_INTERVAL_MINUTES", "5"))

    # Supabase
    SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE: str | None = os.getenv("SUPABASE_SERVICE_ROLE")
    INVOICES_TABLE: str = os.getenv("INVOICES_TABLE", "invoices")
    INVOICE_ITEMS_TABLE: str = os.getenv("INVOICE_ITEMS_TABLE", "invoice_items")
    SYNC_HISTORY_TABLE: str = os.getenv("SYNC_HISTORY_TABLE", "sync_history")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # API Security
    API_KEY: str | None = os.getenv("API_KEY")

    @classmethod
    def validate(cls, require_supabase: bool = True) -> None:
        """Validate required configuration."""
        errors = []
        if require_supabase:
            if not cls.SUPABASE_URL:
                errors.append("SUPABASE_URL is required")
            if not cls.SUPABASE_SERVICE_ROLE:
                errors.append("SUPABASE_SERVICE_ROLE is required")
        if cls.PAGE_SIZE <= 0:
            errors.append("PAGE_SIZE must be positive")
        if cls.MAX_RETRIES < 1:
            errors.append("MAX_RETRIES must be at least 1")
        if cls.EARLY_STOP_THRESHOLD < 1:
            errors.append("EARLY_STOP_THRESHOLD must be at least 1")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


config = Config()
