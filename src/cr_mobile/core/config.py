"""
Configuración centralizada del reporter.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import dotenv_values


@dataclass
class Settings:
    """Configuración del pipeline de reportes."""

    # Colector
    COLLECTOR_ENDPOINT: str = "http://localhost:8080/v1/reports"
    APP_SECRET: str = ""
    AUTH_TOKEN: str = ""
    UPLOAD_TIMEOUT_SECONDS: int = 30

    # Entrega
    MAX_RETRIES: int = 5
    BACKOFF_BASE_MS: int = 1000
    BACKOFF_MAX_MS: int = 300_000
    BACKOFF_JITTER: bool = False
    MAX_CONCURRENT_UPLOADS: int = 1
    REPROCESS_INTERVAL_MINUTES: int = 0  # 0 = solo al arrancar

    # Consentimiento
    BATCH_CONSENT_PROMPT: bool = True

    # Store
    DB_PATH: Path = Path.home() / ".config" / "crashreporter_mobile" / "reports.db"
    DEDUPLICATE_BY_CONTENT: bool = False

    # Security
    TOKEN_STORAGE_KEY: str = "crashreporter_collector_token"

    ENABLED: bool = True

    # Debug
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    def ensure_db_dir(self) -> None:
        """Asegurar que existe el directorio de BD."""
        self.DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    @property
    def backoff_base_seconds(self) -> float:
        return self.BACKOFF_BASE_MS / 1000.0

    @property
    def backoff_max_seconds(self) -> float:
        return self.BACKOFF_MAX_MS / 1000.0

    def __str__(self) -> str:
        return f"<Settings endpoint={self.COLLECTOR_ENDPOINT} db={self.DB_PATH}>"


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on", "y", "si"}


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _load_raw_config() -> dict[str, Any]:
    dotenv_config = dotenv_values(".env")
    merged = {k: v for k, v in dotenv_config.items() if v is not None}
    merged.update(os.environ)
    return merged


def get_settings() -> Settings:
    """Factory para obtener settings a partir de .env y variables de entorno."""
    values = _load_raw_config()

    return Settings(
        COLLECTOR_ENDPOINT=str(
            values.get("CR_ENDPOINT", "http://localhost:8080/v1/reports")
        ),
        APP_SECRET=str(values.get("CR_APP_SECRET", "")),
        AUTH_TOKEN=str(values.get("CR_AUTH_TOKEN", "")),
        UPLOAD_TIMEOUT_SECONDS=_as_int(values.get("CR_UPLOAD_TIMEOUT"), 30),
        MAX_RETRIES=_as_int(values.get("CR_MAX_RETRIES"), 5),
        BACKOFF_BASE_MS=_as_int(values.get("CR_BACKOFF_BASE_MS"), 1000),
        BACKOFF_MAX_MS=_as_int(values.get("CR_BACKOFF_MAX_MS"), 300_000),
        BACKOFF_JITTER=_as_bool(values.get("CR_BACKOFF_JITTER"), False),
        MAX_CONCURRENT_UPLOADS=max(1, _as_int(values.get("CR_MAX_CONCURRENT_UPLOADS"), 1)),
        REPROCESS_INTERVAL_MINUTES=_as_int(values.get("CR_REPROCESS_INTERVAL"), 0),
        BATCH_CONSENT_PROMPT=_as_bool(values.get("CR_BATCH_CONSENT_PROMPT"), True),
        DB_PATH=Path(
            str(
                values.get(
                    "CR_DB_PATH",
                    Path.home() / ".config" / "crashreporter_mobile" / "reports.db",
                )
            )
        ),
        DEDUPLICATE_BY_CONTENT=_as_bool(values.get("CR_DEDUPLICATE"), False),
        ENABLED=_as_bool(values.get("CR_ENABLED"), True),
        DEBUG=_as_bool(values.get("CR_DEBUG"), False),
        LOG_LEVEL=str(values.get("CR_LOG_LEVEL", "INFO")),
    )
