"""
Connectivity signal.

The engine does not detect connectivity itself. Something outside the core
(the device's network stack, the ConnectivityProbe service, or a
POST /api/connectivity call from the UI shell) calls set_online(), and
subscribers are notified only on transitions.

The ReconciliationSyncEngine subscribes to this signal and starts a sweep on
every offline -> online transition.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional

from logging_config import get_logger


logger = get_logger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivitySignal:
    """
    Thread-safe boolean event source.

    Attributes:
        is_online: Last reported connectivity state
        changed_at: When the state last changed (UTC)
    """

    def __init__(self, initially_online: bool = True):
        self._online = initially_online
        self._changed_at: Optional[datetime] = None
        self._listeners: List[ConnectivityListener] = []
        self._lock = threading.Lock()

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def changed_at(self) -> Optional[datetime]:
        return self._changed_at

    def subscribe(self, listener: ConnectivityListener) -> None:
        """Register a callback receiving the new state on each transition."""
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: ConnectivityListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def set_online(self, online: bool) -> bool:
        """
        Report the current connectivity state.

        Listeners run in the calling thread, outside the signal's lock, and
        only when the state actually changes.

        Args:
            online: True if the package API is reachable

        Returns:
            True if this call changed the state
        """
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            self._changed_at = datetime.now(timezone.utc)
            listeners = list(self._listeners)

        logger.info(f"Connectivity changed: {'ONLINE' if online else 'OFFLINE'}")

        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}", exc_info=True)

        return True
