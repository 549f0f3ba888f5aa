from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mes_backend.classifier import collect_import_files, read_raw_files
from mes_backend.coordinator import ImportCoordinator, ImportFailedError, ImportInProgressError
from mes_backend.notifications import ChangeNotifier
from mes_backend.queries import calculate_stats, filter_records
from mes_backend.settings import load_settings
from mes_backend.storage import StorageError

logger = logging.getLogger(__name__)

SETTINGS = load_settings()
CORS_ALLOWED_ORIGINS = SETTINGS.cors_allowed_origins

notifier = ChangeNotifier()
coordinator = ImportCoordinator.from_settings(SETTINGS, notifier)

app = FastAPI(title="MES Test Record Import API")


@app.middleware("http")
async def api_prefix_alias(request, call_next):
    """Accept both `/path` and `/api/path` for frontend compatibility."""
    if request.scope.get("path", "").startswith("/api/"):
        request.scope["path"] = request.scope["path"][4:]
    return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ImportRequest(BaseModel):
    paths: list[str] = Field(default_factory=list)


class PruneLogsRequest(BaseModel):
    days_old: int = Field(default=SETTINGS.log_retention_days, ge=0)


class ConfigValuesRequest(BaseModel):
    values: list[str]


class ConfigValueRequest(BaseModel):
    value: str


def _storage_error_response(exc: StorageError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"status": "error", "message": f"Storage unavailable: {exc}", "warnings": []},
    )


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/import")
def import_files(request: ImportRequest):
    paths = collect_import_files(request.paths)
    raw_files = read_raw_files(paths, max_workers=SETTINGS.read_workers)
    try:
        result = coordinator.import_batch(raw_files)
    except ImportInProgressError as exc:
        return JSONResponse(status_code=409, content={"status": "warning", "message": str(exc), "warnings": []})
    except ImportFailedError as exc:
        return JSONResponse(status_code=500, content={"status": "error", "message": str(exc), "warnings": []})
    return result.to_dict()


@app.get("/import/status")
def import_status():
    return {"status": "success", **coordinator.status()}


@app.get("/records")
def list_records(
    serial: str | None = None,
    station: str | None = None,
    model: str | None = None,
    work_order: str | None = None,
    result: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
):
    try:
        records = coordinator.legacy_store.list_records()
    except StorageError as exc:
        return _storage_error_response(exc)
    filtered = filter_records(
        records,
        serial=serial,
        station=station,
        model=model,
        work_order=work_order,
        result=result,
        start_date=start_date,
        end_date=end_date,
    )
    return {
        "status": "success",
        "message": "Records loaded.",
        "total": len(records),
        "count": len(filtered),
        "records": [record.to_dict() for record in filtered],
    }


@app.get("/records/stats")
def record_stats():
    try:
        records = coordinator.legacy_store.list_records()
    except StorageError as exc:
        return _storage_error_response(exc)
    return {"status": "success", "message": "Statistics computed.", "stats": calculate_stats(records)}


@app.get("/logs/entry/{log_id}")
def get_log_entry(log_id: str):
    try:
        entry = coordinator.primary.get_log_entry(log_id)
    except StorageError as exc:
        return _storage_error_response(exc)
    if entry is None:
        return JSONResponse(status_code=404, content={"status": "warning", "message": "Log entry not found."})
    return {"status": "success", "message": "Log entry loaded.", "entry": entry.to_dict()}


@app.get("/logs/{serial}")
def get_logs_for_serial(serial: str):
    try:
        entries = coordinator.primary.get_log_entries_by_serial(serial)
        pairings = coordinator.primary.list_pairings(serial=serial)
    except StorageError as exc:
        return _storage_error_response(exc)
    return {
        "status": "success",
        "message": "Logs loaded." if entries else "No logs stored for this serial.",
        "entries": [entry.to_dict() for entry in entries],
        "pairings": [link.to_dict() for link in pairings],
    }


@app.get("/pairings")
def list_pairings(serial: str | None = None):
    try:
        pairings = coordinator.primary.list_pairings(serial=serial)
    except StorageError as exc:
        return _storage_error_response(exc)
    return {"status": "success", "message": "Pairings loaded.", "pairings": [link.to_dict() for link in pairings]}


@app.post("/logs/prune")
def prune_logs(request: PruneLogsRequest):
    try:
        removed = coordinator.primary.prune_log_entries(days_old=request.days_old)
    except StorageError as exc:
        return _storage_error_response(exc)
    return {"status": "success", "message": f"Removed {removed} log entries.", "removed": removed}


@app.get("/storage/info")
def storage_info():
    return {"status": "success", "message": "Storage info loaded.", **coordinator.storage_info()}


@app.get("/config/{kind}")
def get_config_list(kind: str):
    try:
        config = coordinator.config_store.get(kind)
    except ValueError as exc:
        return JSONResponse(status_code=404, content={"status": "warning", "message": str(exc)})
    except StorageError as exc:
        return _storage_error_response(exc)
    return {"status": "success", "message": "Configuration loaded.", **config.to_dict()}


@app.put("/config/{kind}")
def replace_config_list(kind: str, request: ConfigValuesRequest):
    try:
        config = coordinator.config_store.set(kind, request.values)
    except ValueError as exc:
        return JSONResponse(status_code=404, content={"status": "warning", "message": str(exc)})
    except StorageError as exc:
        return _storage_error_response(exc)
    return {"status": "success", "message": "Configuration updated.", **config.to_dict()}


@app.post("/config/{kind}")
def add_config_value(kind: str, request: ConfigValueRequest):
    try:
        config = coordinator.config_store.add(kind, request.value)
    except ValueError as exc:
        return JSONResponse(status_code=404, content={"status": "warning", "message": str(exc)})
    except StorageError as exc:
        return _storage_error_response(exc)
    return {"status": "success", "message": "Configuration updated.", **config.to_dict()}


@app.delete("/config/{kind}/{value}")
def remove_config_value(kind: str, value: str):
    try:
        config = coordinator.config_store.remove(kind, value)
    except ValueError as exc:
        return JSONResponse(status_code=404, content={"status": "warning", "message": str(exc)})
    except StorageError as exc:
        return _storage_error_response(exc)
    return {"status": "success", "message": "Configuration updated.", **config.to_dict()}


@app.post("/reset")
def reset_data():
    try:
        return coordinator.reset()
    except ImportInProgressError as exc:
        return JSONResponse(status_code=409, content={"status": "warning", "message": str(exc)})
