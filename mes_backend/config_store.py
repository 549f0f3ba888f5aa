from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from mes_backend.storage import KeyValueStore

STATIONS_KEY = "mesStations"
MODELS_KEY = "mesModels"
PRESERVED_KEYS = (STATIONS_KEY, MODELS_KEY)

CONFIG_KEYS = {
    "stations": STATIONS_KEY,
    "models": MODELS_KEY,
}


@dataclass
class ConfigList:
    kind: str
    values: list[str]

    def to_dict(self) -> dict:
        return {"kind": self.kind, "values": self.values}


def _normalize_values(values: Iterable[object]) -> list[str]:
    normalized: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        cleaned = value.strip()
        if cleaned and cleaned not in normalized:
            normalized.append(cleaned)
    return normalized


class ConfigStore:
    """Station and model name lists living in the shared key-value namespace.

    The keys in `PRESERVED_KEYS` survive an administrative reset of that namespace.
    """

    preserved_keys = PRESERVED_KEYS

    def __init__(self, kv_store: KeyValueStore):
        self.kv_store = kv_store

    @staticmethod
    def _key_for(kind: str) -> str:
        try:
            return CONFIG_KEYS[kind]
        except KeyError:
            raise ValueError(
                f"Unknown configuration list '{kind}'. Available lists: {', '.join(sorted(CONFIG_KEYS))}."
            ) from None

    def get(self, kind: str) -> ConfigList:
        raw = self.kv_store.get(self._key_for(kind), [])
        values = _normalize_values(raw) if isinstance(raw, list) else []
        return ConfigList(kind=kind, values=values)

    def set(self, kind: str, values: Iterable[object]) -> ConfigList:
        normalized = _normalize_values(values)
        self.kv_store.set(self._key_for(kind), normalized)
        return ConfigList(kind=kind, values=normalized)

    def add(self, kind: str, value: str) -> ConfigList:
        current = self.get(kind)
        cleaned = (value or "").strip()
        if not cleaned or cleaned in current.values:
            return current
        return self.set(kind, [*current.values, cleaned])

    def remove(self, kind: str, value: str) -> ConfigList:
        current = self.get(kind)
        return self.set(kind, [item for item in current.values if item != value])

    def list_all(self) -> dict[str, list[str]]:
        return {kind: self.get(kind).values for kind in CONFIG_KEYS}
