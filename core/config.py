"""Runtime configuration.

Settings are read from the environment. A `.env` file at the repo root is
loaded first if it exists, matching how the Temporal client is configured.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


REPO_ROOT = Path(__file__).resolve().parents[1]

env_path = REPO_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)


DEFAULT_DB_PATH = REPO_ROOT / "property_billing.db"
DEFAULT_TASK_QUEUE = "billing-maintenance"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Billing core settings.

    Attributes:
        db_path: SQLite database file used by the ledger store
        log_level: Root logging level
        log_json: Emit structured JSON logs instead of human-readable lines
        default_currency: Currency used when a document does not carry one
        temporal_endpoint: Temporal Cloud endpoint (host:port)
        temporal_namespace: Temporal namespace
        temporal_api_key: Temporal Cloud API key
        temporal_cert_path: Optional client certificate for mTLS
        task_queue: Task queue polled by the maintenance worker
    """
    db_path: Path = DEFAULT_DB_PATH
    log_level: int = logging.INFO
    log_json: bool = False
    default_currency: str = "KES"
    temporal_endpoint: Optional[str] = None
    temporal_namespace: str = "default"
    temporal_api_key: Optional[str] = None
    temporal_cert_path: Optional[str] = None
    task_queue: str = DEFAULT_TASK_QUEUE

    @classmethod
    def from_env(cls) -> "Settings":
        level_name = os.getenv("LOG_LEVEL", "INFO").upper()
        return cls(
            db_path=Path(os.getenv("BILLING_DB_PATH", str(DEFAULT_DB_PATH))),
            log_level=getattr(logging, level_name, logging.INFO),
            log_json=_env_bool("LOG_JSON"),
            default_currency=os.getenv("DEFAULT_CURRENCY", "KES"),
            temporal_endpoint=os.getenv("TEMPORAL_ENDPOINT"),
            temporal_namespace=os.getenv("TEMPORAL_NAMESPACE", "default"),
            temporal_api_key=os.getenv("TEMPORAL_API_KEY"),
            temporal_cert_path=os.getenv("TEMPORAL_CERT_PATH"),
            task_queue=os.getenv("BILLING_TASK_QUEUE", DEFAULT_TASK_QUEUE),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings (read once from the environment)."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
