"""Batch import of test records and instrument logs.

One call to `ImportCoordinator.import_batch` walks the states

    idle -> scanning_logs -> scanning_records -> persisting -> idle

and always returns to idle with progress cleared, whatever happens. Logs are
stored (and their key map completed) before any record is paired. Records are
written to the primary and the legacy store independently; a failing channel
is reported in the result but never undoes or skips the other one.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

from mes_backend.classifier import classify_files
from mes_backend.config_store import PRESERVED_KEYS, ConfigStore
from mes_backend.log_writer import DEFAULT_BACKUP_MAX_BYTES, write_log_files
from mes_backend.models import ChangeNotification, ImportSummary, RawFile, TestRecord
from mes_backend.normalizer import normalize_record_file
from mes_backend.notifications import ChangeNotifier
from mes_backend.pairing import resolve_pairings
from mes_backend.settings import Settings
from mes_backend.storage import (
    FanOutResult,
    FanOutWriter,
    KeyValueStore,
    LegacyRecordStore,
    SqliteStore,
    StorageError,
)

logger = logging.getLogger(__name__)

ProgressListener = Callable[[float], None]


class ImportPhase(str, Enum):
    IDLE = "idle"
    SCANNING_LOGS = "scanning_logs"
    SCANNING_RECORDS = "scanning_records"
    PERSISTING = "persisting"


class ImportInProgressError(RuntimeError):
    pass


class ImportFailedError(RuntimeError):
    pass


@dataclass
class ImportResult:
    status: str
    message: str
    summary: ImportSummary
    warnings: list[str] = field(default_factory=list)
    persistence: FanOutResult | None = None
    notification: dict | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "message": self.message,
            "summary": self.summary.to_dict(),
            "warnings": list(self.warnings),
            "persistence": self.persistence.to_dict() if self.persistence else None,
            "notification": self.notification,
        }


class ImportCoordinator:
    def __init__(
        self,
        primary: SqliteStore,
        kv_store: KeyValueStore,
        notifier: ChangeNotifier | None = None,
        *,
        backup_max_bytes: int = DEFAULT_BACKUP_MAX_BYTES,
        progress_listener: ProgressListener | None = None,
    ):
        self.primary = primary
        self.kv_store = kv_store
        self.legacy_store = LegacyRecordStore(kv_store)
        self.config_store = ConfigStore(kv_store)
        self.notifier = notifier or ChangeNotifier()
        self.writer = FanOutWriter(primary, self.legacy_store)
        self.backup_max_bytes = backup_max_bytes
        self.progress_listener = progress_listener

        self._busy_lock = threading.Lock()
        self.phase = ImportPhase.IDLE
        self.progress = 0.0

    @classmethod
    def from_settings(cls, settings: Settings, notifier: ChangeNotifier | None = None) -> "ImportCoordinator":
        return cls(
            SqliteStore(settings.primary_db_path),
            KeyValueStore(settings.legacy_store_path, quota_bytes=settings.legacy_quota_bytes),
            notifier,
            backup_max_bytes=settings.log_backup_max_bytes,
        )

    @property
    def busy(self) -> bool:
        return self._busy_lock.locked()

    def status(self) -> dict:
        return {"phase": self.phase.value, "busy": self.busy, "progress": round(self.progress, 2)}

    def _enter_phase(self, phase: ImportPhase) -> None:
        logger.info("Import phase: %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    def _report_progress(self, value: float) -> None:
        value = max(self.progress, min(100.0, value))
        self.progress = value
        if self.progress_listener is not None:
            self.progress_listener(value)

    def import_batch(self, files: Iterable[RawFile]) -> ImportResult:
        if not self._busy_lock.acquire(blocking=False):
            raise ImportInProgressError("An import is already running.")
        self.progress = 0.0
        try:
            return self._run_import(list(files))
        except ImportFailedError:
            logger.error("Import aborted; data written so far is kept.")
            raise
        except Exception as exc:
            logger.exception("Import failed unexpectedly")
            raise ImportFailedError(f"Import failed: {exc}") from exc
        finally:
            self.phase = ImportPhase.IDLE
            self.progress = 0.0
            self._busy_lock.release()

    def _run_import(self, files: list[RawFile]) -> ImportResult:
        batch = classify_files(files)
        summary = ImportSummary(json_count=len(batch.record_files), log_count=len(batch.log_files))
        if batch.is_empty:
            return ImportResult(
                status="warning",
                message="No .json or .log files found in the selection.",
                summary=summary,
            )
        logger.info("Import started: %d record files, %d log files.", summary.json_count, summary.log_count)

        if not self.primary.is_available() and not self.kv_store.is_available():
            raise ImportFailedError("No storage backend is reachable; nothing was imported.")

        warnings: list[str] = []

        self._enter_phase(ImportPhase.SCANNING_LOGS)
        log_total = len(batch.log_files)
        log_report = write_log_files(
            batch.log_files,
            primary=self.primary,
            backup=self.kv_store,
            backup_max_bytes=self.backup_max_bytes,
            on_file_done=lambda done: self._report_progress(done / log_total * 50),
        )
        warnings.extend(log_report.warnings)
        self._report_progress(50.0)

        self._enter_phase(ImportPhase.SCANNING_RECORDS)
        records: list[TestRecord] = []
        record_total = len(batch.record_files)
        for index, record_file in enumerate(batch.record_files, start=1):
            normalized = normalize_record_file(record_file)
            warnings.extend(normalized.warnings)

            pairing = resolve_pairings(normalized.records, record_file.name, log_report.key_map)
            summary.paired_count += pairing.paired_count
            for link in pairing.links:
                try:
                    self.primary.save_pairing(link)
                except StorageError as exc:
                    logger.warning("Pairing %s not stored: %s", link.record_key, exc)
                    warnings.append(f"{record_file.name}: pairing not stored.")

            records.extend(normalized.records)
            self._report_progress(50 + index / record_total * 50)
        self._report_progress(100.0)

        self._enter_phase(ImportPhase.PERSISTING)
        persistence = self.writer.append_records(records)
        for store_name, error in persistence.errors.items():
            warnings.append(f"{store_name} store write failed: {error}")
        summary.total_records = len(records)

        notification = None
        if persistence.written:
            total_count = persistence.written.get(self.legacy_store.name)
            if total_count is None:
                total_count = persistence.written[self.primary.name]
            notification = self.notifier.publish(
                ChangeNotification(record_count=len(records), total_count=total_count)
            )

        status = "success" if persistence.ok and not log_report.failed else "warning"
        logger.info(
            "Import finished: json=%d log=%d paired=%d total=%d status=%s",
            summary.json_count,
            summary.log_count,
            summary.paired_count,
            summary.total_records,
            status,
        )
        return ImportResult(
            status=status,
            message=f"Imported {summary.total_records} records, {summary.paired_count} paired with logs.",
            summary=summary,
            warnings=warnings,
            persistence=persistence,
            notification=notification,
        )

    def reset(self) -> dict:
        """Clear records, logs and pairings in both stores; station/model lists are kept."""

        if not self._busy_lock.acquire(blocking=False):
            raise ImportInProgressError("Cannot reset while an import is running.")
        try:
            errors: dict[str, str] = {}
            removed_keys: list[str] = []
            try:
                self.primary.clear()
            except StorageError as exc:
                logger.warning("Primary store reset failed: %s", exc)
                errors[self.primary.name] = str(exc)
            try:
                removed_keys = self.kv_store.clear(preserve=PRESERVED_KEYS)
            except StorageError as exc:
                logger.warning("Secondary store reset failed: %s", exc)
                errors[self.legacy_store.name] = str(exc)

            notification = self.notifier.publish(ChangeNotification(record_count=0, total_count=0, action="clear"))
            logger.info("Reset finished: removed %d secondary keys, errors=%s", len(removed_keys), errors or None)
            return {
                "status": "warning" if errors else "success",
                "message": "Stored test data cleared." if not errors else "Stored test data partially cleared.",
                "removed_keys": removed_keys,
                "errors": errors,
                "notification": notification,
            }
        finally:
            self._busy_lock.release()

    def storage_info(self) -> dict:
        return {
            "primary_bytes": self.primary.size_bytes(),
            "secondary_bytes": self.kv_store.size_bytes(),
            "secondary_quota_bytes": self.kv_store.quota_bytes,
        }
