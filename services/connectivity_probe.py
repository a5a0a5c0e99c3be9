"""
Connectivity probe with background ping thread.

Pings the package API every interval and reports the result to the
ConnectivitySignal. The signal only notifies subscribers on transitions, so
a steady stream of identical results is cheap.

Thread Safety:
    - One daemon thread named "Connectivity"
    - The only shared state is the signal, which has its own lock

Usage:
    probe = ConnectivityProbe(api_client, connectivity, interval_seconds=15)
    probe.start()
    ...
    probe.stop()
"""

from __future__ import annotations

import threading
from typing import Optional

from logging_config import get_logger, set_thread_name


logger = get_logger(__name__)


class ConnectivityProbe:
    """
    Background service feeding the connectivity signal.

    Attributes:
        interval_seconds: Time between pings
        is_running: Whether the probe thread is active
    """

    def __init__(self, api_client, connectivity, interval_seconds: float = 15.0):
        """
        Initialize the probe.

        Raises:
            ValueError: If interval_seconds is not positive
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self._api = api_client
        self._connectivity = connectivity
        self._interval = interval_seconds

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._is_running = False

        self._consecutive_failures = 0

        logger.info(f"ConnectivityProbe initialized (interval: {interval_seconds}s)")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def start(self) -> None:
        """Start the probe thread. Safe to call multiple times."""
        if self._is_running:
            logger.warning("ConnectivityProbe already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._probe_loop,
            name="Connectivity",
            daemon=True,
        )
        self._is_running = True
        self._thread.start()

        logger.info("Connectivity probe thread started")

    def stop(self) -> None:
        """Stop the probe thread and wait for it. Safe to call multiple times."""
        if not self._is_running:
            return

        self._stop_event.set()

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("Connectivity thread did not stop cleanly")

        self._is_running = False
        self._thread = None

        logger.info("Connectivity probe thread stopped")

    def probe_once(self) -> bool:
        """
        Ping the package API once and report the result.

        Returns:
            True if the package API answered
        """
        online = self._api.ping()

        if online:
            if self._consecutive_failures > 0:
                logger.info(f"Package API reachable again after {self._consecutive_failures} failed probes")
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1

            # Escalate, then only report every 20th failure
            if self._consecutive_failures == 1:
                logger.warning("Package API unreachable")
            elif self._consecutive_failures <= 3:
                logger.error(f"Package API unreachable ({self._consecutive_failures} consecutive probes)")
            elif self._consecutive_failures % 20 == 0:
                logger.error(f"Package API still unreachable ({self._consecutive_failures} consecutive probes)")

        self._connectivity.set_online(online)
        return online

    def _probe_loop(self) -> None:
        set_thread_name("Connectivity")
        logger.info("Connectivity probe loop starting")

        self.probe_once()

        while not self._stop_event.wait(timeout=self._interval):
            self.probe_once()

        logger.info("Connectivity probe loop exiting")
