from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from mes_backend.filename_keys import parse_composite_key
from mes_backend.models import RawFile
from mes_backend.storage import LOG_BACKUP_PREFIX, KeyValueStore, SqliteStore, StorageError

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_MAX_BYTES = 1024 * 1024


@dataclass
class LogWriteReport:
    key_map: dict[str, str] = field(default_factory=dict)
    stored: int = 0
    backed_up: int = 0
    skipped: int = 0
    failed: int = 0
    warnings: list[str] = field(default_factory=list)


def write_log_files(
    log_files: Iterable[RawFile],
    *,
    primary: SqliteStore,
    backup: KeyValueStore | None = None,
    backup_max_bytes: int = DEFAULT_BACKUP_MAX_BYTES,
    on_file_done: Callable[[int], None] | None = None,
) -> LogWriteReport:
    """Persist instrument logs and return the `serial_timestamp -> log entry id` map.

    Only entries the primary store accepted are mapped. When the primary write
    fails, small payloads are copied to the backup namespace under
    `log_backup_<key>`; that copy is never mapped and its failure is only logged.
    """

    report = LogWriteReport()
    for index, log_file in enumerate(log_files, start=1):
        composite = parse_composite_key(log_file.name)
        if composite is None:
            logger.debug("Log filename without serial/timestamp, skipped: %s", log_file.name)
            report.skipped += 1
        else:
            content = log_file.text()
            try:
                entry = primary.save_log_entry(
                    serial=composite.serial,
                    file_name=log_file.name,
                    content=content,
                )
            except StorageError as exc:
                report.failed += 1
                logger.warning("Primary store rejected log %s: %s", log_file.name, exc)
                report.warnings.append(f"{log_file.name}: log not stored in primary store.")
                if backup is not None and log_file.size_bytes < backup_max_bytes:
                    try:
                        backup.set(f"{LOG_BACKUP_PREFIX}{composite.key}", content)
                        report.backed_up += 1
                        logger.info("Backed up log %s to secondary store.", log_file.name)
                    except StorageError as backup_exc:
                        logger.error("Secondary backup also failed for %s: %s", log_file.name, backup_exc)
            else:
                if composite.key in report.key_map:
                    logger.warning(
                        "Duplicate log key %s in batch; %s replaces the earlier entry.",
                        composite.key,
                        log_file.name,
                    )
                report.key_map[composite.key] = entry.id
                report.stored += 1
                logger.debug("Stored log %s (%.1f KB) as %s", log_file.name, entry.size_bytes / 1024, entry.id)

        if on_file_done is not None:
            on_file_done(index)
    return report
