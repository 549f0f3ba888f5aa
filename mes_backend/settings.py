from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path

DEFAULT_DATA_DIR = "data/mes"
DEFAULT_LEGACY_QUOTA_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_MAX_BYTES = 1024 * 1024
DEFAULT_READ_WORKERS = 4
DEFAULT_LOG_RETENTION_DAYS = 30
DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    primary_db_path: Path
    legacy_store_path: Path
    legacy_quota_bytes: int
    log_backup_max_bytes: int
    read_workers: int
    log_retention_days: int
    cors_allowed_origins: list[str]

    def to_dict(self) -> dict:
        payload = asdict(self)
        for key in ("data_dir", "primary_db_path", "legacy_store_path"):
            payload[key] = str(payload[key])
        return payload


def load_settings() -> Settings:
    """Snapshot the MES_* environment into a Settings object."""

    data_dir = Path(os.getenv("MES_DATA_DIR", DEFAULT_DATA_DIR))
    primary_db_path = Path(os.getenv("MES_PRIMARY_DB_PATH") or data_dir / "mes_records.db")
    legacy_store_path = Path(os.getenv("MES_LEGACY_STORE_PATH") or data_dir / "legacy_store.json")
    origins = [
        origin.strip()
        for origin in os.getenv("MES_CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
        if origin.strip()
    ]
    return Settings(
        data_dir=data_dir,
        primary_db_path=primary_db_path,
        legacy_store_path=legacy_store_path,
        legacy_quota_bytes=_env_int("MES_LEGACY_QUOTA_BYTES", DEFAULT_LEGACY_QUOTA_BYTES),
        log_backup_max_bytes=_env_int("MES_LOG_BACKUP_MAX_BYTES", DEFAULT_LOG_BACKUP_MAX_BYTES),
        read_workers=_env_int("MES_IMPORT_READ_WORKERS", DEFAULT_READ_WORKERS),
        log_retention_days=_env_int("MES_LOG_RETENTION_DAYS", DEFAULT_LOG_RETENTION_DAYS),
        cors_allowed_origins=origins,
    )
