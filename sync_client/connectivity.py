from __future__ import annotations

import logging
import threading
from typing import Callable, List

from .exceptions import SyncClientError

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class ConnectivitySignal:
    """Reports whether the device can reach the server and notifies listeners on change."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def is_online(self) -> bool:
        return self._online

    def on_change(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _set(self, online: bool) -> None:
        with self._lock:
            changed = online != self._online
            self._online = online
            listeners = list(self._listeners)
        if not changed:
            return
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in listeners:
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener failed")


class ManualConnectivity(ConnectivitySignal):
    """Connectivity driven by the host application (or tests)."""

    def set_online(self, online: bool) -> None:
        self._set(online)


class ProbeConnectivity(ConnectivitySignal):
    """Connectivity inferred from the server's status endpoint."""

    def __init__(self, transport, online: bool = False):
        super().__init__(online=online)
        self.transport = transport

    def refresh(self) -> bool:
        try:
            self.transport.get_status()
        except SyncClientError as exc:
            logger.debug("Status probe failed: %s", exc)
            self._set(False)
        else:
            self._set(True)
        return self._online
