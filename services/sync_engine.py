"""
Reconciliation sync engine.

Drains the pending action queue against the package API whenever the
connectivity signal goes from offline to online, or when the operator forces
a sync.

Per run:
    1. Group queued actions by package code (groups ordered by oldest action)
    2. Replay each group's actions strictly in enqueue order
    3. Success          -> remove the action, echo the new state into the cache
    4. ApplicationError -> keep the action, mark it "needs operator attention",
                           hold back every later action for that package
    5. NetworkError     -> abort the whole run; the next transition or the
                           periodic retry tries again

Periodic retry:
    An action can be queued while the device still counts as online (a 5xx
    or a timeout on one request). With retry_interval_seconds > 0 a
    "SyncRetry" thread triggers a sweep every interval while the device is
    online and actions not flagged for attention are waiting.

Replays carry the action's original idempotency token, so running the same
sweep twice never applies an action twice.

Thread Safety:
    - Each triggered run gets its own "Sync" thread
    - A run guard (non-blocking lock) collapses overlapping triggers
    - Queue mutations are serialized by the queue's own lock
    - A run stops between actions if stop() is called or the device goes
      offline; an in-flight call is left to finish or fail on its own

Usage:
    sync_engine = ReconciliationSyncEngine(executor, queue, connectivity)
    sync_engine.start()          # subscribe to connectivity transitions

    report = sync_engine.force_sync()
    status = sync_engine.status()

    sync_engine.stop()
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Any, Optional

from core.exceptions import ApplicationError, NetworkError
from models.outcome import SyncReport
from logging_config import get_logger, get_action_logger, set_thread_name


logger = get_logger(__name__)


class ReconciliationSyncEngine:
    """
    Replays queued scan actions once connectivity returns.

    Attributes:
        is_running: Whether the engine is subscribed to connectivity changes
        sync_in_progress: Whether a reconciliation run is executing
    """

    def __init__(
        self,
        executor,
        queue,
        connectivity,
        join_timeout_seconds: float = 30.0,
        retry_interval_seconds: float = 0.0,
    ):
        """
        Initialize the sync engine.

        Args:
            executor: ActionExecutor providing the remote-call primitive
            queue: PendingActionQueue to drain
            connectivity: ConnectivitySignal to subscribe to
            join_timeout_seconds: How long stop() waits for a running sweep
            retry_interval_seconds: Seconds between periodic retries; 0 disables them
        """
        if retry_interval_seconds < 0:
            raise ValueError("retry_interval_seconds must not be negative")

        self._executor = executor
        self._queue = queue
        self._connectivity = connectivity
        self._join_timeout = join_timeout_seconds
        self._retry_interval = retry_interval_seconds
        self._retry_thread: Optional[threading.Thread] = None

        self._run_guard = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()
        self._is_running = False

        self._last_sync: Optional[datetime] = None
        self._last_report: Optional[SyncReport] = None

        logger.info("ReconciliationSyncEngine initialized")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def sync_in_progress(self) -> bool:
        return self._run_guard.locked()

    @property
    def last_report(self) -> Optional[SyncReport]:
        return self._last_report

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """
        Subscribe to connectivity transitions.

        If the device is already online with actions waiting (left over from
        a previous run of the app), a sweep starts immediately.
        """
        if self._is_running:
            logger.warning("ReconciliationSyncEngine already running")
            return

        self._stop_event.clear()
        self._connectivity.subscribe(self._on_connectivity_change)
        self._is_running = True
        logger.info("Sync engine subscribed to connectivity changes")

        if self._retry_interval > 0:
            self._retry_thread = threading.Thread(
                target=self._retry_loop,
                name="SyncRetry",
                daemon=True,
            )
            self._retry_thread.start()

        if self._connectivity.is_online and self._queue.size > 0:
            logger.info(f"{self._queue.size} actions waiting from a previous session")
            self.trigger()

    def stop(self) -> None:
        """Unsubscribe and wait for any running sweep to stop. Safe to call twice."""
        if not self._is_running:
            return

        logger.info("Stopping sync engine...")
        self._connectivity.unsubscribe(self._on_connectivity_change)
        self._stop_event.set()

        with self._thread_lock:
            thread = self._thread

        if thread and thread.is_alive():
            thread.join(timeout=self._join_timeout)
            if thread.is_alive():
                logger.warning("Sync thread did not stop cleanly")

        if self._retry_thread is not None and self._retry_thread.is_alive():
            self._retry_thread.join(timeout=5.0)
        self._retry_thread = None

        self._is_running = False
        logger.info("Sync engine stopped")

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("Connectivity restored, starting reconciliation")
            self.trigger()

    def _retry_loop(self) -> None:
        set_thread_name("SyncRetry")
        logger.info(f"Periodic sync retry every {self._retry_interval}s")

        while not self._stop_event.wait(timeout=self._retry_interval):
            if not self._connectivity.is_online:
                continue
            if self._queue.size > self._queue.needs_attention_count():
                self.trigger()

    def trigger(self) -> bool:
        """
        Start a sweep in a background "Sync" thread.

        Returns:
            True if a new thread was started, False if one is already running
        """
        with self._thread_lock:
            if self._thread is not None and self._thread.is_alive():
                logger.debug("Sync already in progress, trigger ignored")
                return False

            self._thread = threading.Thread(
                target=self._sync_worker,
                name="Sync",
                daemon=True,
            )
            self._thread.start()
            return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for a background sweep to finish. Returns True if idle."""
        with self._thread_lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def _sync_worker(self) -> None:
        set_thread_name("Sync")
        try:
            report = self.run_once()
        except Exception as e:
            logger.error(f"Reconciliation run crashed: {e}", exc_info=True)
            return

        if report.applied or report.needs_attention or report.aborted:
            logger.info(
                f"Reconciliation finished: {len(report.applied)} synced, "
                f"{len(report.needs_attention)} need attention, {report.remaining} remaining"
                + (f" (aborted: {report.abort_reason})" if report.aborted else "")
            )

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    def force_sync(self, timeout_seconds: Optional[float] = None) -> SyncReport:
        """
        Operator-triggered sweep, run in the calling thread.

        Waits for a background sweep in progress to finish first.
        """
        logger.info("Force sync requested")
        return self.run_once(wait=True, timeout_seconds=timeout_seconds)

    def run_once(self, wait: bool = False, timeout_seconds: Optional[float] = None) -> SyncReport:
        """
        Execute one reconciliation sweep.

        Args:
            wait: Block until a concurrent sweep finishes instead of skipping
            timeout_seconds: Upper bound on that wait (None waits forever)

        Returns:
            SyncReport of what this sweep did
        """
        report = SyncReport()

        if wait:
            acquired = self._run_guard.acquire(timeout=-1 if timeout_seconds is None else timeout_seconds)
        else:
            acquired = self._run_guard.acquire(blocking=False)

        if not acquired:
            report.aborted = True
            report.abort_reason = "Sync already in progress"
            return report.finish(self._queue.size)

        try:
            if not self._connectivity.is_online:
                report.aborted = True
                report.abort_reason = "Device is offline"
                return report.finish(self._queue.size)

            self._drain(report)
            report.finish(self._queue.size)
            self._last_sync = report.finished_at
            self._last_report = report
            return report
        finally:
            self._run_guard.release()

    def _drain(self, report: SyncReport) -> None:
        groups = self._queue.grouped_by_code()
        if not groups:
            logger.debug("Nothing to reconcile")
            return

        logger.info(
            f"Reconciling {sum(len(a) for a in groups.values())} actions "
            f"across {len(groups)} packages"
        )

        for code, actions in groups.items():
            held_back = False

            for action in actions:
                if self._should_stop():
                    report.aborted = True
                    report.abort_reason = "Stopped" if self._stop_event.is_set() else "Device went offline"
                    logger.info(f"Reconciliation interrupted: {report.abort_reason}")
                    return

                action_logger = get_action_logger(action.token)

                if held_back or action.needs_attention:
                    # Later actions for this package depend on the earlier one succeeding
                    held_back = True
                    report.skipped.append(action.token)
                    continue

                try:
                    result = self._executor.submit_pending(action, replay=True)
                except NetworkError as e:
                    self._queue.record_attempt(action.token, e.message)
                    report.aborted = True
                    report.abort_reason = e.message
                    action_logger.warning(f"Replay of {action.action_type} for {code} hit a network error, "
                                          f"aborting run: {e.message}")
                    return
                except ApplicationError as e:
                    self._queue.record_attempt(action.token, e.message)
                    self._queue.mark_needs_attention(action.token, e.message)
                    report.needs_attention.append(action.token)
                    held_back = True
                    continue

                self._queue.remove(action.token)
                report.applied.append(action.token)
                self._executor.apply_confirmation(code, action.action_type, action.operator.role, result)

                if result.get("already_processed"):
                    action_logger.info(f"{action.action_type} for {code} was already applied; removed from queue")
                else:
                    action_logger.info(f"Replayed {action.action_type} for {code}")

    def _should_stop(self) -> bool:
        return self._stop_event.is_set() or not self._connectivity.is_online

    # =========================================================================
    # STATUS
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        """Sync status for the UI (last sync, queue depth, connectivity)."""
        stats = self._queue.stats()
        return {
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "pending_actions": stats["pending_actions"],
            "needs_attention": stats["needs_attention"],
            "is_online": self._connectivity.is_online,
            "sync_in_progress": self.sync_in_progress,
            "last_report": self._last_report.to_dict() if self._last_report else None,
        }
