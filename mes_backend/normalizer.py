"""Turn heterogeneous test-station JSON files into canonical test records.

Each station writes its own dialect: different key spellings, single objects
or arrays, sometimes hand-edited files with trailing commas or single quotes.
`normalize_record_file` never raises and always yields at least one record:

1. parse the content as-is,
2. retry after deterministic repairs,
3. otherwise synthesize a FAIL record named after the file.

Canonical fields are resolved through `FIELD_ALIASES`, first non-empty match
wins. Anything still missing afterwards is backfilled from the filename.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mes_backend.filename_keys import (
    filename_stem,
    model_from_filename,
    station_from_filename,
    time_from_filename,
)
from mes_backend.models import RawFile, TestItem, TestRecord

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

PARSE_TIER_DIRECT = "direct"
PARSE_TIER_REPAIRED = "repaired"
PARSE_TIER_FALLBACK = "fallback"

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "serial_number": ("Serial Number", "Serial", "serial", "SerialNumber", "serialNumber"),
    "test_time": ("Test Time", "Test_Time", "datetime", "TestTime", "testTime"),
    "station": ("Station", "station"),
    "model": ("Model", "model", "Product Type"),
    "work_order": ("Work Order", "WorkOrder", "工單", "workOrder"),
    "fixture_number": ("FN:", "FN", "fn", "fixtureNumber"),
    "part_number": ("Part Number", "PartNumber", "part_number", "partNumber"),
    "tester": ("Tester", "tester"),
    "result": ("Test Result", "TestResult", "result"),
    "items": ("Items", "items"),
}

MES_TIME_PATTERN = re.compile(r"(\d{4})[/-](\d{2})[/-](\d{2})[ T-](\d{2}):(\d{2}):(\d{2})")
RESERVED_ITEM_NAME_PATTERN = re.compile(r"^(date\s*time|datetime|test\s*time|date|time)$", re.IGNORECASE)
_TRAILING_COMMA_OBJECT = re.compile(r",\s*}")
_TRAILING_COMMA_ARRAY = re.compile(r",\s*]")

_CANONICAL_LEGACY_KEYS = {
    "id",
    "serialNumber",
    "workOrder",
    "station",
    "model",
    "result",
    "testTime",
    "tester",
    "fixtureNumber",
    "partNumber",
    "items",
    "serial",
    "datetime",
    "date",
    "time",
}


@dataclass
class NormalizationResult:
    filename: str
    records: list[TestRecord]
    parse_tier: str
    recognized: bool
    warnings: list[str] = field(default_factory=list)


def _now_string() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def repair_json_text(text: str) -> str:
    """Strip trailing commas before `}`/`]` and turn single quotes into double quotes."""

    repaired = _TRAILING_COMMA_OBJECT.sub("}", text)
    repaired = _TRAILING_COMMA_ARRAY.sub("]", repaired)
    return repaired.replace("'", '"').strip()


def parse_record_payload(raw_file: RawFile) -> tuple[Any, str]:
    """Run the parse cascade; returns the payload and the tier that produced it."""

    text = raw_file.text()
    try:
        return json.loads(text), PARSE_TIER_DIRECT
    except (ValueError, RecursionError) as exc:
        logger.warning("JSON parse failed for %s, trying repairs: %s", raw_file.name, exc)

    try:
        return json.loads(repair_json_text(text)), PARSE_TIER_REPAIRED
    except (ValueError, RecursionError) as exc:
        logger.warning("JSON repair failed for %s, using fallback record: %s", raw_file.name, exc)

    fallback = {
        "serialNumber": raw_file.stem,
        "result": "FAIL",
        "station": UNKNOWN,
        "model": UNKNOWN,
    }
    return fallback, PARSE_TIER_FALLBACK


def looks_like_mes_payload(payload: Any) -> bool:
    """Heuristic check that a parsed payload is MES test data rather than a tool status file."""

    if not isinstance(payload, dict):
        return False
    if isinstance(payload.get("Result"), list) and not payload.get("Items"):
        return False

    has_serial = any(payload.get(key) for key in ("Serial Number", "Serial", "serial", "SerialNumber"))
    has_time = any(payload.get(key) for key in ("Test Time", "Test_Time", "datetime", "TestTime"))
    has_station = any(payload.get(key) for key in ("Station", "station"))
    has_items = any(payload.get(key) for key in ("Items", "items"))
    has_fixture = any(payload.get(key) for key in ("FN", "fn"))
    return (has_serial and has_time) or (has_items and (has_fixture or has_station))


def _is_blank(value: Any) -> bool:
    return value is None or value is False or (isinstance(value, (str, list, dict)) and len(value) == 0)


def resolve_alias(payload: dict, canonical_field: str) -> Any:
    for alias in FIELD_ALIASES[canonical_field]:
        value = payload.get(alias)
        if not _is_blank(value):
            return value
    return None


def _as_text(value: Any) -> str:
    if _is_blank(value):
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value).strip()


def parse_mes_time(value: str) -> str | None:
    match = MES_TIME_PATTERN.search(value or "")
    if not match:
        return None
    year, month, day, hour, minute, second = match.groups()
    return f"{year}-{month}-{day} {hour}:{minute}:{second}"


def derive_result(explicit_result: Any, items: list[TestItem]) -> str:
    if not _is_blank(explicit_result):
        return "FAIL" if str(explicit_result).upper() == "FAIL" else "PASS"
    if any(str(item.result).upper() == "FAIL" for item in items):
        return "FAIL"
    return "PASS"


def _coerce_items(raw_items: Any) -> list[TestItem]:
    if not isinstance(raw_items, list):
        return []
    items: list[TestItem] = []
    for raw_item in raw_items:
        if not isinstance(raw_item, dict):
            raw_item = {}
        name = raw_item.get("name")
        value = raw_item.get("value")
        result = raw_item.get("result")
        items.append(
            TestItem(
                name=str(name) if not _is_blank(name) else "Unknown",
                value=value if value is not None else "",
                result=str(result) if not _is_blank(result) else "UNKNOWN",
            )
        )
    return items


def flatten_items(items: list[TestItem]) -> dict[str, str]:
    """Legacy `name -> value` view of the items, without time-like names."""

    flattened: dict[str, str] = {}
    for item in items:
        key = (item.name or "").strip()
        if not key or RESERVED_ITEM_NAME_PATTERN.match(key):
            continue
        value = item.value
        if value is None:
            flattened[key] = ""
        elif isinstance(value, (dict, list)):
            flattened[key] = json.dumps(value, ensure_ascii=False)
        else:
            flattened[key] = str(value)
    return flattened


def legacy_record_payload(record: TestRecord) -> dict[str, Any]:
    """Canonical record plus the flattened fields older readers expect."""

    payload = record.to_dict()
    payload.pop("id", None)
    payload["serial"] = record.serial_number
    payload["datetime"] = record.test_time
    payload["date"] = record.test_time[:10]
    payload["time"] = record.test_time[11:]
    for key, value in flatten_items(record.items).items():
        if key not in _CANONICAL_LEGACY_KEYS:
            payload[key] = value
    return payload


def _resolve_test_time(explicit_time: str, filename: str) -> tuple[str, str]:
    parsed = parse_mes_time(explicit_time) if explicit_time else None
    if parsed:
        return parsed, "field"
    from_name = time_from_filename(filename)
    if from_name:
        return from_name, "filename"
    return _now_string(), "now"


def normalize_payload(payload: Any, filename: str) -> list[TestRecord]:
    """Map a parsed payload (object or array) onto canonical records, one per element."""

    if payload is None:
        payload = {}
    elements = payload if isinstance(payload, list) else [payload]
    if not elements:
        elements = [{}]

    records: list[TestRecord] = []
    for element in elements:
        rec = element if isinstance(element, dict) else {}

        serial = _as_text(resolve_alias(rec, "serial_number"))
        explicit_time = _as_text(resolve_alias(rec, "test_time"))
        station = _as_text(resolve_alias(rec, "station"))
        model = _as_text(resolve_alias(rec, "model"))

        if not serial and not explicit_time and not station:
            status_list = rec.get("Result")
            first = status_list[0] if isinstance(status_list, list) and status_list else None
            if isinstance(first, dict) and not _is_blank(first.get("Name")):
                serial = _as_text(first.get("Name"))
            else:
                serial = UNKNOWN
            station = UNKNOWN
            model = UNKNOWN
            explicit_time = _now_string()

        items = _coerce_items(resolve_alias(rec, "items"))
        test_time, time_source = _resolve_test_time(explicit_time, filename)
        if explicit_time and time_source != "field":
            logger.warning("Unparseable test time %r in %s; using %s time.", explicit_time, filename, time_source)

        if not serial:
            serial = filename_stem(filename) or UNKNOWN
            logger.warning("Serial missing in %s; using filename stem %s.", filename, serial)
        if not station:
            station = station_from_filename(filename) or UNKNOWN
            logger.warning("Station missing in %s; resolved to %s.", filename, station)
        if not model:
            model = model_from_filename(filename) or UNKNOWN
            logger.warning("Model missing in %s; resolved to %s.", filename, model)

        record = TestRecord(
            serial_number=serial,
            work_order=_as_text(resolve_alias(rec, "work_order")),
            station=station,
            model=model,
            result=derive_result(resolve_alias(rec, "result"), items),
            test_time=test_time,
            tester=_as_text(resolve_alias(rec, "tester")),
            fixture_number=_as_text(resolve_alias(rec, "fixture_number")),
            part_number=_as_text(resolve_alias(rec, "part_number")),
            items=items,
        )
        logger.debug(
            "Normalized record SN=%s station=%s result=%s items=%d",
            record.serial_number,
            record.station,
            record.result,
            len(record.items),
        )
        records.append(record)
    return records


def normalize_record_file(raw_file: RawFile) -> NormalizationResult:
    payload, tier = parse_record_payload(raw_file)
    warnings: list[str] = []
    if tier == PARSE_TIER_REPAIRED:
        warnings.append(f"{raw_file.name}: JSON repaired before parsing.")
    elif tier == PARSE_TIER_FALLBACK:
        warnings.append(f"{raw_file.name}: unparseable JSON, fallback record created.")

    recognized = tier != PARSE_TIER_FALLBACK and (
        any(looks_like_mes_payload(element) for element in payload)
        if isinstance(payload, list)
        else looks_like_mes_payload(payload)
    )
    logger.debug("Parsed %s via %s tier (MES payload: %s)", raw_file.name, tier, recognized)

    return NormalizationResult(
        filename=raw_file.name,
        records=normalize_payload(payload, raw_file.name),
        parse_tier=tier,
        recognized=recognized,
        warnings=warnings,
    )
