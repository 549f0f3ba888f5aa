"""Filename conventions shared by log storage, normalization and pairing.

Test stations name their output `<YYYYMMDD>-<HHMMSS>-<serial>.<ext>`, optionally
with bracketed suffixes such as `[1]` appended by the operating system when a
file is copied twice. The structured record and the instrument log of one run
share that prefix, which is the only correlation between the two streams.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

COMPOSITE_NAME_PATTERN = re.compile(r"(\d{8})-(\d{6})-([^\[\]]+)")
FILENAME_TIMESTAMP_PATTERN = re.compile(r"(\d{8})-(\d{6})")
STATION_HINT_PATTERN = re.compile(r"(FA_FT\d+|ICT_\d+|FINAL_\d+)", re.IGNORECASE)
MODEL_HINT_PATTERN = re.compile(r"(WA\d+|WB\d+|XC\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class CompositeKey:
    date: str
    time: str
    serial: str

    @property
    def timestamp(self) -> str:
        return f"{self.date}-{self.time}"

    @property
    def key(self) -> str:
        return f"{self.serial}_{self.timestamp}"

    @property
    def log_file_name(self) -> str:
        return f"{self.timestamp}-{self.serial}.log"


def filename_stem(filename: str) -> str:
    return Path(filename).stem


def parse_composite_key(filename: str) -> CompositeKey | None:
    """Derive `(date, time, serial)` from a station filename, or None if it does not follow the convention."""

    match = COMPOSITE_NAME_PATTERN.search(filename_stem(filename))
    if not match:
        return None
    date, time, serial = match.groups()
    serial = serial.strip()
    if not serial:
        return None
    return CompositeKey(date=date, time=time, serial=serial)


def time_from_filename(filename: str) -> str | None:
    match = FILENAME_TIMESTAMP_PATTERN.search(filename)
    if not match:
        return None
    date, time = match.groups()
    return f"{date[:4]}-{date[4:6]}-{date[6:8]} {time[:2]}:{time[2:4]}:{time[4:6]}"


def station_from_filename(filename: str) -> str | None:
    match = STATION_HINT_PATTERN.search(filename)
    return match.group(1) if match else None


def model_from_filename(filename: str) -> str | None:
    match = MODEL_HINT_PATTERN.search(filename)
    return match.group(1) if match else None
