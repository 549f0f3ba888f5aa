from __future__ import annotations

from mes_backend.models import TestRecord


def filter_records(
    records: list[TestRecord],
    *,
    serial: str | None = None,
    station: str | None = None,
    model: str | None = None,
    work_order: str | None = None,
    result: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> list[TestRecord]:
    """Filter records the way the table views do: substring on serial/work order, exact on the rest.

    Dates are `YYYY-MM-DD` strings compared against the date part of `test_time`.
    """

    serial_query = (serial or "").strip().lower()
    work_order_query = (work_order or "").strip().lower()
    result_query = (result or "").strip().upper()

    filtered: list[TestRecord] = []
    for record in records:
        if serial_query and serial_query not in record.serial_number.lower():
            continue
        if work_order_query and work_order_query not in record.work_order.lower():
            continue
        if station and record.station != station:
            continue
        if model and record.model != model:
            continue
        if result_query and record.result != result_query:
            continue
        if start_date and record.test_date < start_date:
            continue
        if end_date and record.test_date > end_date:
            continue
        filtered.append(record)
    return filtered


def _percent(part: int, total: int) -> str:
    return f"{(part / total) * 100:.1f}" if total else "0.0"


def calculate_stats(records: list[TestRecord]) -> dict:
    total = len(records)
    passed = sum(1 for record in records if record.result == "PASS")
    devices = {record.serial_number for record in records}
    passed_devices = {record.serial_number for record in records if record.result == "PASS"}
    return {
        "total": total,
        "pass": passed,
        "fail": total - passed,
        "yieldRate": _percent(passed, total),
        "deviceCount": len(devices),
        "passedDeviceCount": len(passed_devices),
        "failedDeviceCount": len(devices) - len(passed_devices),
        "productionYieldRate": _percent(len(passed_devices), len(devices)),
        "retestCount": total - len(devices),
        "producedDateCount": len({record.test_date for record in records}),
    }
