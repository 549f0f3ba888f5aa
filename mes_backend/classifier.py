from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from mes_backend.models import RawFile

logger = logging.getLogger(__name__)

LOG_EXTENSIONS = {".log"}
RECORD_EXTENSIONS = {".json"}
IMPORT_EXTENSIONS = LOG_EXTENSIONS | RECORD_EXTENSIONS


@dataclass
class ClassifiedBatch:
    log_files: list[RawFile] = field(default_factory=list)
    record_files: list[RawFile] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.log_files and not self.record_files


def _normalize_extension(filename: str) -> str:
    return Path(filename).suffix.lower().strip()


def classify_files(files: Iterable[RawFile]) -> ClassifiedBatch:
    """Partition a batch into log and record files by extension; anything else is ignored."""

    batch = ClassifiedBatch()
    for raw_file in files:
        extension = _normalize_extension(raw_file.name)
        if extension in LOG_EXTENSIONS:
            batch.log_files.append(raw_file)
        elif extension in RECORD_EXTENSIONS:
            batch.record_files.append(raw_file)
    return batch


def collect_import_files(paths: Iterable[str | Path]) -> list[Path]:
    """Expand files and directories into the `.json`/`.log` files they contain, sorted per directory."""

    collected: list[Path] = []
    seen: set[Path] = set()
    for raw_path in paths:
        path = Path(raw_path)
        if path.is_dir():
            candidates = sorted(item for item in path.rglob("*") if item.is_file())
        elif path.is_file():
            candidates = [path]
        else:
            logger.warning("Import path does not exist: %s", path)
            continue

        for candidate in candidates:
            if _normalize_extension(candidate.name) not in IMPORT_EXTENSIONS:
                continue
            resolved = candidate.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)
            collected.append(candidate)
    return collected


def _read_raw_file(path: Path) -> RawFile | None:
    try:
        return RawFile(name=path.name, content=path.read_bytes())
    except OSError as exc:
        logger.warning("Skipping unreadable import file %s: %s", path, exc)
        return None


def read_raw_files(paths: Iterable[Path], max_workers: int = 4) -> list[RawFile]:
    """Read files concurrently; the result keeps the input order and drops unreadable files."""

    path_list = list(paths)
    if not path_list:
        return []
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        return [raw_file for raw_file in executor.map(_read_raw_file, path_list) if raw_file is not None]
