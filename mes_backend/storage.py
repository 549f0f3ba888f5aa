"""Persistence backends for imported test data.

Two independent channels hold the data:

* ``SqliteStore`` is the primary store. It owns log entries, pairing links and
  test records, one table each, with the lookups the detail views need.
* ``KeyValueStore`` is a small JSON-file namespace with a size quota. It keeps
  the legacy record list read by older views, best-effort copies of log
  content the primary store refused, and the station/model configuration.

``FanOutWriter`` composes record stores so every channel is attempted on each
write and failures are collected instead of short-circuiting.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import tempfile
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol
from uuid import uuid4

from pydantic import ValidationError

from mes_backend.models import LogEntry, PairingLink, TestItem, TestRecord
from mes_backend.normalizer import legacy_record_payload

logger = logging.getLogger(__name__)

LEGACY_RECORDS_KEY = "mesTestData"
LOG_BACKUP_PREFIX = "log_backup_"


class StorageError(RuntimeError):
    pass


class StorageUnavailableError(StorageError):
    pass


class StorageQuotaExceededError(StorageError):
    pass


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _atomic_write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        json.dump(payload, handle, ensure_ascii=False)
        handle.flush()
        temp_path = Path(handle.name)
    temp_path.replace(path)


class RecordStorage(Protocol):
    name: str

    def append_records(self, records: list[TestRecord]) -> int:
        ...

    def list_records(self) -> list[TestRecord]:
        ...

    def count_records(self) -> int:
        ...

    def clear(self) -> None:
        ...


class SqliteStore:
    """Primary store backed by a single SQLite file."""

    name = "primary"

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path)
        except (OSError, sqlite3.Error) as exc:
            raise StorageUnavailableError(f"Primary store unavailable at {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        if not self._initialized:
            self._init_database(conn)
        return conn

    def _init_database(self, conn: sqlite3.Connection) -> None:
        try:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS log_entries (
                        id TEXT PRIMARY KEY,
                        serial TEXT NOT NULL,
                        file_name TEXT NOT NULL,
                        content TEXT NOT NULL,
                        captured_at TEXT NOT NULL,
                        size_bytes INTEGER NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_log_entries_serial ON log_entries(serial)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_log_entries_captured_at ON log_entries(captured_at)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS pairing_links (
                        record_key TEXT PRIMARY KEY,
                        serial TEXT NOT NULL,
                        log_file_name TEXT NOT NULL,
                        log_entry_id TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_pairing_links_serial ON pairing_links(serial)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS test_records (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        serial_number TEXT NOT NULL,
                        work_order TEXT,
                        station TEXT,
                        model TEXT,
                        result TEXT NOT NULL,
                        test_time TEXT NOT NULL,
                        tester TEXT,
                        fixture_number TEXT,
                        part_number TEXT,
                        items_json TEXT NOT NULL DEFAULT '[]'
                    )
                    """
                )
                for column in ("serial_number", "station", "model", "result", "test_time"):
                    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_test_records_{column} ON test_records({column})")
        except sqlite3.Error as exc:
            conn.close()
            raise StorageUnavailableError(f"Primary store schema setup failed: {exc}") from exc
        self._initialized = True

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with closing(self._get_connection()) as conn:
            try:
                with conn:
                    return conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Primary store operation failed: {exc}") from exc

    def is_available(self) -> bool:
        try:
            self._execute("SELECT 1")
        except StorageError:
            return False
        return True

    # Log entries

    def save_log_entry(self, *, serial: str, file_name: str, content: str) -> LogEntry:
        entry = LogEntry(
            id=f"{serial}_{uuid4().hex[:10]}",
            serial=serial,
            file_name=file_name,
            content=content,
            captured_at=_utc_now(),
            size_bytes=len(content),
        )
        self._execute(
            "INSERT INTO log_entries (id, serial, file_name, content, captured_at, size_bytes) VALUES (?, ?, ?, ?, ?, ?)",
            (entry.id, entry.serial, entry.file_name, entry.content, entry.captured_at, entry.size_bytes),
        )
        return entry

    @staticmethod
    def _row_to_log_entry(row: sqlite3.Row) -> LogEntry:
        return LogEntry(
            id=row["id"],
            serial=row["serial"],
            file_name=row["file_name"],
            content=row["content"],
            captured_at=row["captured_at"],
            size_bytes=row["size_bytes"],
        )

    def get_log_entry(self, log_id: str) -> LogEntry | None:
        rows = self._execute("SELECT * FROM log_entries WHERE id = ?", (log_id,))
        return self._row_to_log_entry(rows[0]) if rows else None

    def get_log_entries_by_serial(self, serial: str) -> list[LogEntry]:
        rows = self._execute(
            "SELECT * FROM log_entries WHERE serial = ? ORDER BY captured_at, rowid",
            (serial,),
        )
        return [self._row_to_log_entry(row) for row in rows]

    def count_log_entries(self) -> int:
        return int(self._execute("SELECT COUNT(*) AS n FROM log_entries")[0]["n"])

    def prune_log_entries(self, days_old: int = 30, *, now: datetime | None = None) -> int:
        """Delete log entries captured more than `days_old` days ago; returns the number removed."""

        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days_old)
        with closing(self._get_connection()) as conn:
            try:
                with conn:
                    cursor = conn.execute("DELETE FROM log_entries WHERE captured_at < ?", (cutoff.isoformat(),))
                    return cursor.rowcount
            except sqlite3.Error as exc:
                raise StorageError(f"Primary store prune failed: {exc}") from exc

    # Pairing links

    def save_pairing(self, link: PairingLink) -> None:
        self._execute(
            "INSERT OR REPLACE INTO pairing_links (record_key, serial, log_file_name, log_entry_id) VALUES (?, ?, ?, ?)",
            (link.record_key, link.serial, link.log_file_name, link.log_entry_id),
        )

    def get_pairing(self, record_key: str) -> PairingLink | None:
        rows = self._execute("SELECT * FROM pairing_links WHERE record_key = ?", (record_key,))
        if not rows:
            return None
        return PairingLink(**{key: rows[0][key] for key in rows[0].keys()})

    def list_pairings(self, serial: str | None = None) -> list[PairingLink]:
        if serial is None:
            rows = self._execute("SELECT * FROM pairing_links ORDER BY rowid")
        else:
            rows = self._execute("SELECT * FROM pairing_links WHERE serial = ? ORDER BY rowid", (serial,))
        return [PairingLink(**{key: row[key] for key in row.keys()}) for row in rows]

    def count_pairings(self) -> int:
        return int(self._execute("SELECT COUNT(*) AS n FROM pairing_links")[0]["n"])

    # Test records

    def append_records(self, records: list[TestRecord]) -> int:
        rows = [
            (
                record.serial_number,
                record.work_order,
                record.station,
                record.model,
                record.result,
                record.test_time,
                record.tester,
                record.fixture_number,
                record.part_number,
                json.dumps([item.to_dict() for item in record.items], ensure_ascii=False),
            )
            for record in records
        ]
        with closing(self._get_connection()) as conn:
            try:
                with conn:
                    conn.executemany(
                        """
                        INSERT INTO test_records (
                            serial_number, work_order, station, model, result, test_time,
                            tester, fixture_number, part_number, items_json
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        rows,
                    )
                    return int(conn.execute("SELECT COUNT(*) FROM test_records").fetchone()[0])
            except sqlite3.Error as exc:
                raise StorageError(f"Primary store record write failed: {exc}") from exc

    def list_records(self) -> list[TestRecord]:
        rows = self._execute("SELECT * FROM test_records ORDER BY id")
        return [
            TestRecord(
                id=row["id"],
                serial_number=row["serial_number"],
                work_order=row["work_order"] or "",
                station=row["station"] or "",
                model=row["model"] or "",
                result=row["result"],
                test_time=row["test_time"],
                tester=row["tester"] or "",
                fixture_number=row["fixture_number"] or "",
                part_number=row["part_number"] or "",
                items=[TestItem.model_validate(item) for item in json.loads(row["items_json"] or "[]")],
            )
            for row in rows
        ]

    def count_records(self) -> int:
        return int(self._execute("SELECT COUNT(*) AS n FROM test_records")[0]["n"])

    def clear(self) -> None:
        with closing(self._get_connection()) as conn:
            try:
                with conn:
                    conn.execute("DELETE FROM test_records")
                    conn.execute("DELETE FROM log_entries")
                    conn.execute("DELETE FROM pairing_links")
            except sqlite3.Error as exc:
                raise StorageError(f"Primary store clear failed: {exc}") from exc

    def size_bytes(self) -> int:
        return self.db_path.stat().st_size if self.db_path.exists() else 0


class KeyValueStore:
    """Flat string-keyed JSON namespace persisted to one file, with a byte quota."""

    def __init__(self, path: Path, quota_bytes: int = 5 * 1024 * 1024):
        self.path = Path(path)
        self.quota_bytes = quota_bytes

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageUnavailableError(f"Key-value store unreadable at {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise StorageUnavailableError(f"Key-value store at {self.path} is not a JSON object.")
        return payload

    def _save(self, payload: dict[str, Any]) -> None:
        encoded_size = len(json.dumps(payload, ensure_ascii=False).encode("utf-8"))
        if encoded_size > self.quota_bytes:
            raise StorageQuotaExceededError(
                f"Key-value store quota exceeded ({encoded_size} > {self.quota_bytes} bytes)."
            )
        try:
            _atomic_write_json(self.path, payload)
        except OSError as exc:
            raise StorageUnavailableError(f"Key-value store not writable at {self.path}: {exc}") from exc

    def is_available(self) -> bool:
        try:
            self._load()
        except StorageError:
            return False
        parent = self.path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return True

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        payload = self._load()
        payload[key] = value
        self._save(payload)

    def remove(self, key: str) -> bool:
        payload = self._load()
        if key not in payload:
            return False
        del payload[key]
        self._save(payload)
        return True

    def keys(self) -> list[str]:
        return list(self._load().keys())

    def clear(self, preserve: Iterable[str] = ()) -> list[str]:
        """Remove every key except the preserved ones; returns the removed keys."""

        preserved = set(preserve)
        try:
            payload = self._load()
        except StorageUnavailableError as exc:
            logger.warning("Key-value store unreadable during clear, rewriting it empty: %s", exc)
            if preserved:
                logger.warning("Preserved keys lost with the unreadable store: %s", ", ".join(sorted(preserved)))
            self._save({})
            return []
        removed = [key for key in payload if key not in preserved]
        if removed:
            self._save({key: value for key, value in payload.items() if key in preserved})
        return removed

    def size_bytes(self) -> int:
        return self.path.stat().st_size if self.path.exists() else 0


class LegacyRecordStore:
    """Record list kept in the key-value namespace for backward-compatible reads."""

    name = "secondary"

    def __init__(self, kv_store: KeyValueStore, key: str = LEGACY_RECORDS_KEY):
        self.kv_store = kv_store
        self.key = key

    def _load_payloads(self) -> list[dict]:
        existing = self.kv_store.get(self.key, [])
        if not isinstance(existing, list):
            logger.warning("Legacy record list under %s is not a list; starting over.", self.key)
            return []
        return existing

    def append_records(self, records: list[TestRecord]) -> int:
        merged = self._load_payloads() + [legacy_record_payload(record) for record in records]
        self.kv_store.set(self.key, merged)
        return len(merged)

    def list_records(self) -> list[TestRecord]:
        records: list[TestRecord] = []
        for index, payload in enumerate(self._load_payloads()):
            try:
                records.append(TestRecord.model_validate(payload))
            except ValidationError as exc:
                logger.warning("Skipping unreadable legacy record #%d: %s", index, exc.errors()[0].get("msg"))
        return records

    def count_records(self) -> int:
        return len(self._load_payloads())

    def clear(self) -> None:
        self.kv_store.remove(self.key)


@dataclass
class FanOutResult:
    written: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {"written": dict(self.written), "errors": dict(self.errors)}


class FanOutWriter:
    """Writes the same records to every store; one store failing never skips another."""

    def __init__(self, *stores: RecordStorage):
        self.stores = stores

    def append_records(self, records: list[TestRecord]) -> FanOutResult:
        result = FanOutResult()
        for store in self.stores:
            try:
                result.written[store.name] = store.append_records(records)
            except StorageError as exc:
                logger.warning("Record write to %s store failed: %s", store.name, exc)
                result.errors[store.name] = str(exc)
        return result
