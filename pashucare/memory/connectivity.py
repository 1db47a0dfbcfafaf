"""
Connectivity Monitor

Explicit online/offline value consulted by the orchestrator at the start of
each submission.  A transition from offline to online fires the registered
listeners (the orchestrator registers a queue drain).
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class ConnectivityState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ConnectivityMonitor:
    def __init__(self, initial: ConnectivityState = ConnectivityState.ONLINE) -> None:
        self._state = initial
        self._lock = threading.Lock()
        self._on_restored: list[Callable[[], None]] = []

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state == ConnectivityState.ONLINE

    def on_restored(self, callback: Callable[[], None]) -> None:
        """Register a callback fired on every offline -> online transition."""
        self._on_restored.append(callback)

    def set_state(self, new_state: ConnectivityState) -> bool:
        """Update the state.  Returns True if this call restored connectivity."""
        with self._lock:
            previous = self._state
            self._state = new_state
        if previous == new_state:
            return False

        logger.info("connectivity: %s -> %s", previous.value, new_state.value)
        if new_state != ConnectivityState.ONLINE:
            return False
        for callback in self._on_restored:
            callback()
        return True
