from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TEST_TIME_PATTERN = r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class RawFile:
    """A locally selected file, alive for a single import call."""

    name: str
    content: bytes

    @property
    def extension(self) -> str:
        return Path(self.name).suffix.lower().strip()

    @property
    def stem(self) -> str:
        return Path(self.name).stem

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    def text(self) -> str:
        return self.content.decode("utf-8-sig", errors="replace")


class TestItem(_CamelModel):
    __test__ = False

    name: str = "Unknown"
    value: Any = ""
    result: str = "UNKNOWN"


class TestRecord(_CamelModel):
    """Canonical test-result record, independent of station-specific field names."""

    __test__ = False

    id: int | None = None
    serial_number: str = Field(min_length=1)
    work_order: str = ""
    station: str = ""
    model: str = ""
    result: Literal["PASS", "FAIL"]
    test_time: str = Field(pattern=TEST_TIME_PATTERN)
    tester: str = ""
    fixture_number: str = ""
    part_number: str = ""
    items: list[TestItem] = Field(default_factory=list)

    @property
    def test_date(self) -> str:
        return self.test_time[:10]


class LogEntry(_CamelModel):
    id: str
    serial: str
    file_name: str
    content: str
    captured_at: str
    size_bytes: int


class PairingLink(_CamelModel):
    record_key: str
    serial: str
    log_file_name: str
    log_entry_id: str


class ImportSummary(_CamelModel):
    json_count: int = 0
    log_count: int = 0
    paired_count: int = 0
    total_records: int = 0


class ChangeNotification(_CamelModel):
    record_count: int
    total_count: int
    action: Literal["import", "clear"] = "import"

    def to_dict(self) -> dict[str, Any]:
        payload = {"recordCount": self.record_count, "totalCount": self.total_count}
        if self.action == "clear":
            payload["action"] = "clear"
        return payload
