import json
import re
from datetime import datetime, timedelta

from mes_backend.models import RawFile, TestItem
from mes_backend.normalizer import (
    PARSE_TIER_DIRECT,
    PARSE_TIER_FALLBACK,
    PARSE_TIER_REPAIRED,
    derive_result,
    flatten_items,
    legacy_record_payload,
    looks_like_mes_payload,
    normalize_payload,
    normalize_record_file,
    parse_mes_time,
    repair_json_text,
)

TIME_FORMAT = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")


def _json_file(name: str, payload) -> RawFile:
    return RawFile(name=name, content=json.dumps(payload).encode("utf-8"))


def test_explicit_result_field_wins_over_items():
    payload = {
        "Serial Number": "SN100",
        "Test Time": "2025/09/20 06:39:24",
        "Station": "FA_FT01",
        "Test Result": "Pass",
        "Items": [{"name": "Voltage", "value": "3.1", "result": "FAIL"}],
    }

    records = normalize_payload(payload, "SN100.json")

    assert records[0].result == "PASS"


def test_explicit_result_fail_is_case_insensitive():
    for value in ("FAIL", "fail", "Fail"):
        records = normalize_payload({"Serial": "SN1", "Station": "ICT_01", "TestResult": value}, "x.json")
        assert records[0].result == "FAIL"

    records = normalize_payload({"Serial": "SN1", "Station": "ICT_01", "result": "NG"}, "x.json")
    assert records[0].result == "PASS"


def test_result_derived_from_items_without_explicit_field():
    failing = {
        "Serial": "SN2",
        "Station": "ICT_01",
        "Items": [
            {"name": "Voltage", "value": 3.3, "result": "PASS"},
            {"name": "Current", "value": 0.9, "result": "fail"},
        ],
    }
    passing = {"Serial": "SN3", "Station": "ICT_01", "Items": [{"name": "Voltage", "value": 3.3, "result": "PASS"}]}
    empty = {"Serial": "SN4", "Station": "ICT_01", "Items": []}

    assert normalize_payload(failing, "a.json")[0].result == "FAIL"
    assert normalize_payload(passing, "b.json")[0].result == "PASS"
    assert normalize_payload(empty, "c.json")[0].result == "PASS"


def test_derive_result_defaults_to_pass_for_empty_items():
    assert derive_result(None, []) == "PASS"
    assert derive_result("", [TestItem(name="x", result="FAIL")]) == "FAIL"


def test_filename_time_used_when_body_has_no_test_time():
    raw_file = _json_file("20250920-063924-SN001.json", {"Serial Number": "SN001", "Station": "FA_FT01"})

    result = normalize_record_file(raw_file)

    assert result.parse_tier == PARSE_TIER_DIRECT
    assert result.records[0].test_time == "2025-09-20 06:39:24"


def test_body_time_is_normalized_without_timezone_conversion():
    raw_file = _json_file(
        "20250101-000000-SN001.json",
        {"Serial Number": "SN001", "Station": "FA_FT01", "datetime": "2025-09-20T23:59:01+08:00"},
    )

    record = normalize_record_file(raw_file).records[0]

    assert record.test_time == "2025-09-20 23:59:01"


def test_unparseable_body_time_falls_back_to_filename():
    raw_file = _json_file("20250920-063924-SN001.json", {"Serial": "SN001", "Test Time": "yesterday"})

    record = normalize_record_file(raw_file).records[0]

    assert record.test_time == "2025-09-20 06:39:24"


def test_time_without_any_source_uses_current_local_time():
    record = normalize_record_file(_json_file("plain.json", {"Serial": "SN9", "Station": "ICT_01"})).records[0]

    assert TIME_FORMAT.match(record.test_time)


def test_trailing_comma_is_recovered_by_repair_tier():
    result = normalize_record_file(RawFile(name="comma.json", content=b'{"a": 1,}'))

    assert result.parse_tier == PARSE_TIER_REPAIRED
    assert len(result.records) == 1
    assert result.records[0].serial_number == "Unknown"
    assert result.records[0].station == "Unknown"


def test_single_quotes_are_repaired():
    content = b"{'Serial': 'SN5', 'Station': 'ICT_02', 'Items': [{'name': 'R1', 'value': '10', 'result': 'PASS'},],}"

    result = normalize_record_file(RawFile(name="quotes.json", content=content))

    assert result.parse_tier == PARSE_TIER_REPAIRED
    assert result.records[0].serial_number == "SN5"
    assert result.records[0].items[0].name == "R1"


def test_binary_garbage_yields_single_fallback_record():
    result = normalize_record_file(RawFile(name="garbage.json", content=b"\x00\xff\xfe\x89PNG{{{\x01"))

    assert result.parse_tier == PARSE_TIER_FALLBACK
    assert len(result.records) == 1
    record = result.records[0]
    assert record.result == "FAIL"
    assert record.serial_number == "garbage"
    assert record.station == "Unknown"
    assert record.model == "Unknown"
    assert TIME_FORMAT.match(record.test_time)
    assert not result.recognized


def test_array_payload_yields_one_record_per_element():
    payload = [
        {"Serial Number": "SN10", "Station": "FA_FT01", "Model": "WA3"},
        {"Serial Number": "SN11", "Station": "FA_FT01", "Model": "WA3", "Test Result": "FAIL"},
    ]

    result = normalize_record_file(_json_file("20250920-063924-batch.json", payload))

    assert [record.serial_number for record in result.records] == ["SN10", "SN11"]
    assert [record.result for record in result.records] == ["PASS", "FAIL"]


def test_empty_array_and_null_still_yield_a_record():
    assert len(normalize_record_file(RawFile(name="empty.json", content=b"[]")).records) == 1
    assert len(normalize_record_file(RawFile(name="null.json", content=b"null")).records) == 1


def test_status_result_list_supplies_serial():
    record = normalize_payload({"Result": [{"Name": "Ok", "Code": 0}]}, "status.json")[0]

    assert record.serial_number == "Ok"
    assert record.station == "Unknown"
    assert record.model == "Unknown"


def _is_recent(test_time: str) -> bool:
    stamp = datetime.strptime(test_time, "%Y-%m-%d %H:%M:%S")
    return abs(datetime.now() - stamp) < timedelta(minutes=5)


def test_unrecognized_payload_becomes_unknown_record_stamped_now():
    record = normalize_payload({"foo": "bar"}, "20250920-063924-SN001_FA_FT01.json")[0]

    assert record.serial_number == "Unknown"
    assert record.station == "Unknown"
    assert record.model == "Unknown"
    assert _is_recent(record.test_time)


def test_status_result_list_ignores_filename_time():
    record = normalize_payload({"Result": [{"Name": "Ok", "Code": 0}]}, "20200101-000000-X.json")[0]

    assert record.serial_number == "Ok"
    assert _is_recent(record.test_time)


def test_deeply_nested_json_yields_fallback_record():
    result = normalize_record_file(RawFile(name="deep.json", content=b"[" * 200000))

    assert result.parse_tier == PARSE_TIER_FALLBACK
    assert len(result.records) == 1
    assert result.records[0].serial_number == "deep"
    assert result.records[0].result == "FAIL"


def test_missing_fields_backfilled_from_filename():
    payload = {"Test Time": "2025-09-20 06:39:24", "Items": []}

    record = normalize_payload(payload, "20250920-063924-SN9_FA_FT02_WA3.json")[0]

    assert record.serial_number == "20250920-063924-SN9_FA_FT02_WA3"
    assert record.station == "FA_FT02"
    assert record.model == "WA3"


def test_alias_resolution_first_non_empty_match_wins():
    payload = {
        "Serial Number": "",
        "Serial": "SN-ALIAS",
        "serial": "ignored",
        "Station": "ICT_01",
        "Product Type": "XC9",
        "工單": "6210018420-00012",
        "FN": "2-7",
        "PartNumber": "PN-77",
        "Tester": "20010929A",
    }

    record = normalize_payload(payload, "x.json")[0]

    assert record.serial_number == "SN-ALIAS"
    assert record.model == "XC9"
    assert record.work_order == "6210018420-00012"
    assert record.fixture_number == "2-7"
    assert record.part_number == "PN-77"
    assert record.tester == "20010929A"


def test_items_preserved_verbatim_including_time_like_names():
    payload = {
        "Serial": "SN7",
        "Station": "ICT_01",
        "Items": [
            {"name": "Date Time", "value": "2025-09-20 06:39:24", "result": "PASS"},
            {"name": "Voltage", "value": {"min": 3.0, "max": 3.6}, "result": "PASS"},
            {"value": 5},
        ],
    }

    record = normalize_payload(payload, "x.json")[0]

    assert [item.name for item in record.items] == ["Date Time", "Voltage", "Unknown"]
    assert record.items[1].value == {"min": 3.0, "max": 3.6}
    assert record.items[2].result == "UNKNOWN"


def test_flatten_items_skips_reserved_time_names():
    items = [
        TestItem(name="datetime", value="x", result="PASS"),
        TestItem(name="Test  Time", value="x", result="PASS"),
        TestItem(name="time", value="x", result="PASS"),
        TestItem(name="Voltage", value=3.3, result="PASS"),
        TestItem(name="Limits", value=[1, 2], result="PASS"),
    ]

    assert flatten_items(items) == {"Voltage": "3.3", "Limits": "[1, 2]"}


def test_legacy_payload_keeps_canonical_keys():
    record = normalize_payload(
        {
            "Serial": "SN8",
            "Station": "ICT_01",
            "Test Time": "2025-09-20 06:39:24",
            "Items": [
                {"name": "result", "value": "overwritten?", "result": "FAIL"},
                {"name": "Voltage", "value": 3.3, "result": "PASS"},
            ],
        },
        "x.json",
    )[0]

    payload = legacy_record_payload(record)

    assert payload["result"] == "FAIL"
    assert payload["serial"] == "SN8"
    assert payload["date"] == "2025-09-20"
    assert payload["time"] == "06:39:24"
    assert payload["Voltage"] == "3.3"


def test_looks_like_mes_payload():
    assert looks_like_mes_payload({"Serial Number": "A", "Test Time": "2025-01-01 00:00:00"})
    assert looks_like_mes_payload({"Items": [{"name": "x"}], "FN": "1-1"})
    assert not looks_like_mes_payload({"Result": [{"Name": "Ok", "Code": 0}]})
    assert not looks_like_mes_payload(["not", "a", "dict"])


def test_repair_and_time_helpers():
    assert repair_json_text("{'a': [1, 2,], }") == '{"a": [1, 2]}'
    assert parse_mes_time("2025-09-20-06:39:24") == "2025-09-20 06:39:24"
    assert parse_mes_time("20/09/2025") is None
