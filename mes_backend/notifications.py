from __future__ import annotations

import logging
import threading
from typing import Callable

from mes_backend.models import ChangeNotification

logger = logging.getLogger(__name__)

Listener = Callable[[dict], None]


class ChangeNotifier:
    """Fan-out of data-change notifications to in-process listeners (dashboards, tables)."""

    def __init__(self):
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self.last_payload: dict | None = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, notification: ChangeNotification) -> dict:
        payload = notification.to_dict()
        with self._lock:
            listeners = list(self._listeners)
            self.last_payload = payload
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.exception("Change listener %r failed for %s", listener, payload)
        return payload
