import json

import pytest
from fastapi.testclient import TestClient

import mes_backend.app as app_module
from mes_backend.coordinator import ImportCoordinator
from mes_backend.notifications import ChangeNotifier
from mes_backend.storage import KeyValueStore, SqliteStore


@pytest.fixture
def coordinator(tmp_path, monkeypatch):
    coordinator = ImportCoordinator(
        SqliteStore(tmp_path / "store" / "primary.db"),
        KeyValueStore(tmp_path / "store" / "kv.json"),
        ChangeNotifier(),
    )
    monkeypatch.setattr(app_module, "coordinator", coordinator)
    return coordinator


@pytest.fixture
def client(coordinator):
    return TestClient(app_module.app)


@pytest.fixture
def station_folder(tmp_path):
    folder = tmp_path / "station"
    folder.mkdir()
    (folder / "20250920-063924-SN001.log").write_text("SN001 boot ok", encoding="utf-8")
    (folder / "20250920-063924-SN001.json").write_text(
        json.dumps({"Serial Number": "SN001", "Station": "FA_FT01", "Model": "WA3", "Test Result": "PASS"}),
        encoding="utf-8",
    )
    (folder / "20250920-070000-SN002.json").write_text(
        json.dumps({"Serial Number": "SN002", "Station": "ICT_01", "Model": "WA3", "Test Result": "FAIL"}),
        encoding="utf-8",
    )
    return folder


def test_import_folder_and_query_records(client, station_folder):
    response = client.post("/api/import", json={"paths": [str(station_folder)]})

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "success"
    assert payload["summary"] == {"jsonCount": 2, "logCount": 1, "pairedCount": 1, "totalRecords": 2}
    assert payload["notification"] == {"recordCount": 2, "totalCount": 2}

    records = client.get("/records", params={"result": "fail"}).json()
    assert records["total"] == 2
    assert [record["serialNumber"] for record in records["records"]] == ["SN002"]

    stats = client.get("/api/records/stats").json()["stats"]
    assert stats["total"] == 2
    assert stats["yieldRate"] == "50.0"


def test_import_without_matching_files_returns_warning(client, tmp_path):
    (tmp_path / "photo.png").write_bytes(b"\x89PNG")

    response = client.post("/import", json={"paths": [str(tmp_path / "photo.png")]})

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "warning"
    assert payload["summary"]["totalRecords"] == 0
    assert payload["notification"] is None


def test_import_while_busy_returns_conflict(client, coordinator, station_folder):
    coordinator._busy_lock.acquire()
    try:
        response = client.post("/import", json={"paths": [str(station_folder)]})
        reset_response = client.post("/reset")
    finally:
        coordinator._busy_lock.release()

    assert response.status_code == 409
    assert reset_response.status_code == 409
    assert client.get("/import/status").json()["busy"] is False


def test_import_with_no_reachable_storage_returns_error(client, monkeypatch, tmp_path, station_folder):
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{", encoding="utf-8")
    monkeypatch.setattr(
        app_module,
        "coordinator",
        ImportCoordinator(SqliteStore(blocker / "primary.db"), KeyValueStore(corrupt)),
    )

    response = client.post("/import", json={"paths": [str(station_folder)]})

    assert response.status_code == 500
    assert response.json()["status"] == "error"


def test_log_lookups_after_import(client, coordinator, station_folder):
    client.post("/import", json={"paths": [str(station_folder)]})

    by_serial = client.get("/logs/SN001").json()
    assert [entry["fileName"] for entry in by_serial["entries"]] == ["20250920-063924-SN001.log"]
    assert by_serial["pairings"][0]["recordKey"] == "SN001_20250920-063924_FA_FT01"

    entry_id = by_serial["pairings"][0]["logEntryId"]
    entry = client.get(f"/api/logs/entry/{entry_id}").json()["entry"]
    assert entry["content"] == "SN001 boot ok"

    assert client.get("/logs/entry/missing").status_code == 404
    assert client.get("/logs/SN404").json()["entries"] == []
    assert len(client.get("/pairings").json()["pairings"]) == 1


def test_prune_logs_keeps_recent_entries(client, station_folder):
    client.post("/import", json={"paths": [str(station_folder)]})

    response = client.post("/logs/prune", json={"days_old": 30})

    assert response.status_code == 200
    assert response.json()["removed"] == 0


def test_config_lists_round_trip_and_survive_reset(client, station_folder):
    assert client.put("/config/stations", json={"values": ["FA_FT01", " ICT_01 ", "FA_FT01"]}).json()["values"] == [
        "FA_FT01",
        "ICT_01",
    ]
    assert client.post("/config/models", json={"value": "WA3"}).json()["values"] == ["WA3"]
    assert client.delete("/config/stations/ICT_01").json()["values"] == ["FA_FT01"]
    assert client.get("/config/fixtures").status_code == 404

    client.post("/import", json={"paths": [str(station_folder)]})
    reset = client.post("/api/reset").json()

    assert reset["status"] == "success"
    assert reset["notification"] == {"recordCount": 0, "totalCount": 0, "action": "clear"}
    assert client.get("/records").json()["total"] == 0
    assert client.get("/config/stations").json()["values"] == ["FA_FT01"]
    assert client.get("/config/models").json()["values"] == ["WA3"]


def test_storage_info_reports_sizes(client, station_folder):
    client.post("/import", json={"paths": [str(station_folder)]})

    info = client.get("/storage/info").json()

    assert info["primary_bytes"] > 0
    assert info["secondary_bytes"] > 0
    assert info["secondary_quota_bytes"] == 5 * 1024 * 1024
