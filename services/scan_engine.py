"""
Scan engine: explicitly constructed composition root.

Wires the snapshot cache, pending queue, executor, sync engine, bulk
processor and connectivity probe around one persistence store, one package
API client and one connectivity signal, and owns their start/stop lifecycle.
There is no module-level instance: app.py builds one per Flask app, tests
build their own with fakes.

Usage:
    engine = ScanEngine.from_config(app.config)
    engine.start()

    outcome = engine.scan("PKG-AB12-20240101", "collect", operator)

    engine.stop()
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Any, Iterable, List, Mapping, Optional

from core.api_client import PackageAPIClient
from core.connectivity import ConnectivitySignal
from core.exceptions import ConfigurationError
from core.storage import JsonFileStore
from models.outcome import BulkResult, ScanOutcome, SyncReport
from models.package import Operator
from models.scan_action import PendingScanAction, default_device_info
from modules import action_catalog
from services.action_executor import ActionExecutor, ResolvedPackage
from services.bulk_processor import BulkScanProcessor
from services.connectivity_probe import ConnectivityProbe
from services.pending_queue import OVERFLOW_POLICIES, PendingActionQueue
from services.snapshot_cache import PackageSnapshotCache
from services.sync_engine import ReconciliationSyncEngine
from logging_config import get_logger


logger = get_logger(__name__)


# =============================================================================
# CONFIG PARSING
# =============================================================================

def _config_int(config: Mapping[str, Any], key: str, default: int, minimum: int = 0) -> int:
    raw = config.get(key, default)
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        raise ConfigurationError(key, raw, "expected an integer")
    if value < minimum:
        raise ConfigurationError(key, raw, f"must be at least {minimum}")
    return value


def _config_float(config: Mapping[str, Any], key: str, default: float, minimum: float = 0.0) -> float:
    raw = config.get(key, default)
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        raise ConfigurationError(key, raw, "expected a number")
    if value < minimum:
        raise ConfigurationError(key, raw, f"must be at least {minimum}")
    return value


class ScanEngine:
    """
    The scan-action engine and its services.

    Attributes:
        connectivity: ConnectivitySignal shared by every service
        cache: PackageSnapshotCache
        queue: PendingActionQueue
        executor: ActionExecutor
        sync_engine: ReconciliationSyncEngine
        bulk_processor: BulkScanProcessor
        probe: ConnectivityProbe, or None when probing is disabled
    """

    def __init__(
        self,
        api_client,
        store,
        connectivity: Optional[ConnectivitySignal] = None,
        cache_max_entries: int = 500,
        cache_ttl_seconds: float = 24 * 3600,
        queue_max_size: int = 1000,
        overflow_policy: str = "reject",
        probe_interval_seconds: float = 0.0,
        sync_retry_interval_seconds: float = 0.0,
        device_info: Optional[Dict[str, Any]] = None,
    ):
        """
        Build the engine from its collaborators.

        Args:
            api_client: PackageAPIClient (or a fake with the same methods)
            store: Persistence substrate shared by cache and queue
            connectivity: Signal to use (a new one, initially online, if None)
            cache_max_entries: Snapshot cache bound
            cache_ttl_seconds: Snapshot freshness window
            queue_max_size: Pending queue bound
            overflow_policy: "reject" or "evict_oldest"
            probe_interval_seconds: Ping interval; 0 disables the probe
            sync_retry_interval_seconds: Periodic sync retry interval; 0 disables it
            device_info: Device descriptor for scan metadata

        Raises:
            StorageError: If the queue state record cannot be read
        """
        self.api_client = api_client
        self.store = store
        self.connectivity = connectivity or ConnectivitySignal()

        self.cache = PackageSnapshotCache(store, max_entries=cache_max_entries, ttl_seconds=cache_ttl_seconds)
        self.queue = PendingActionQueue(store, max_size=queue_max_size, overflow_policy=overflow_policy)
        self.executor = ActionExecutor(api_client, self.cache, self.queue, self.connectivity, device_info)
        self.sync_engine = ReconciliationSyncEngine(
            self.executor, self.queue, self.connectivity, retry_interval_seconds=sync_retry_interval_seconds
        )
        self.bulk_processor = BulkScanProcessor(api_client, self.executor, self.connectivity)

        self.probe: Optional[ConnectivityProbe] = None
        if probe_interval_seconds > 0:
            self.probe = ConnectivityProbe(api_client, self.connectivity, probe_interval_seconds)

        self._started = False

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ScanEngine":
        """
        Build the engine from a Flask config mapping.

        Raises:
            ConfigurationError: If any setting is malformed
            StorageError: If the data directory cannot be opened
        """
        base_url = str(config.get("PACKAGE_API_BASE_URL") or "").strip()
        if not base_url.startswith(("http://", "https://")):
            raise ConfigurationError("PACKAGE_API_BASE_URL", base_url, "expected an http(s) URL")

        overflow_policy = str(config.get("QUEUE_OVERFLOW_POLICY", "reject")).strip().lower()
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ConfigurationError(
                "QUEUE_OVERFLOW_POLICY", overflow_policy, f"expected one of {', '.join(OVERFLOW_POLICIES)}"
            )

        timeout = _config_float(config, "REQUEST_TIMEOUT_SECONDS", 12.0, minimum=0.1)
        cache_max_entries = _config_int(config, "CACHE_MAX_ENTRIES", 500, minimum=1)
        cache_ttl_hours = _config_float(config, "CACHE_TTL_HOURS", 24.0, minimum=0.01)
        queue_max_size = _config_int(config, "QUEUE_MAX_SIZE", 1000, minimum=1)
        probe_interval = _config_float(config, "CONNECTIVITY_PROBE_INTERVAL", 15.0)
        sync_retry_interval = _config_float(config, "SYNC_RETRY_INTERVAL", 60.0)

        data_dir = str(config.get("DATA_DIR") or "").strip()
        if not data_dir:
            raise ConfigurationError("DATA_DIR", data_dir, "a data directory is required")

        api_client = PackageAPIClient(
            base_url,
            token=config.get("PACKAGE_API_TOKEN") or None,
            timeout_seconds=timeout,
            logger=get_logger("core.api_client"),
        )
        device_info = default_device_info(
            device_name=config.get("DEVICE_NAME") or None,
            app_version=str(config.get("APP_VERSION") or "1.0.0"),
        )

        logger.info(
            f"Building scan engine (api={base_url}, timeout={timeout}s, data={data_dir}, "
            f"queue={queue_max_size}/{overflow_policy}, probe={probe_interval}s, retry={sync_retry_interval}s)"
        )

        return cls(
            api_client,
            JsonFileStore(Path(data_dir)),
            cache_max_entries=cache_max_entries,
            cache_ttl_seconds=cache_ttl_hours * 3600,
            queue_max_size=queue_max_size,
            overflow_policy=overflow_policy,
            probe_interval_seconds=probe_interval,
            sync_retry_interval_seconds=sync_retry_interval,
            device_info=device_info,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def is_started(self) -> bool:
        return self._started

    def start(self) -> None:
        """Start the sync engine and (if enabled) the connectivity probe."""
        if self._started:
            return
        purged = self.cache.purge_expired()
        if purged:
            logger.info(f"Dropped {purged} expired snapshots at startup")
        self.sync_engine.start()
        if self.probe is not None:
            self.probe.start()
        self._started = True
        logger.info("Scan engine started")

    def stop(self) -> None:
        """Stop background threads. Safe to call more than once."""
        if not self._started:
            return
        if self.probe is not None:
            self.probe.stop()
        self.sync_engine.stop()
        self._started = False
        logger.info("Scan engine stopped")

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def lookup(self, code: str, operator: Operator) -> ResolvedPackage:
        return self.executor.resolve_package(code, operator)

    def scan(
        self,
        code: str,
        action_type: str,
        operator: Operator,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ScanOutcome:
        return self.executor.execute(code, action_type, operator, self.executor.build_metadata(metadata))

    def bulk_scan(
        self,
        codes: Iterable[str],
        action_type: str,
        operator: Operator,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BulkResult:
        return self.bulk_processor.process_bulk(codes, action_type, operator, self.executor.build_metadata(metadata))

    def sync_status(self) -> Dict[str, Any]:
        return self.sync_engine.status()

    def force_sync(self) -> SyncReport:
        return self.sync_engine.force_sync()

    def pending_actions(self) -> List[PendingScanAction]:
        return self.queue.list_all()

    def retry_pending(self, token: str) -> Optional[PendingScanAction]:
        """Clear the attention flag so the next sync replays the action."""
        action = self.queue.clear_attention(token)
        if action is not None and self.connectivity.is_online:
            self.sync_engine.trigger()
        return action

    def discard_pending(self, token: str) -> bool:
        return self.queue.discard(token)

    def clear_cache(self) -> int:
        return self.cache.clear()

    def set_online(self, online: bool) -> bool:
        return self.connectivity.set_online(online)

    def role_permissions(self, role: str) -> Dict[str, Any]:
        return action_catalog.role_permissions(role)

    def health(self) -> Dict[str, Any]:
        return {
            "engine_started": self._started,
            "is_online": self.connectivity.is_online,
            "probe_running": self.probe.is_running if self.probe is not None else False,
            "sync_in_progress": self.sync_engine.sync_in_progress,
            "queue": self.queue.stats(),
            "cache": self.cache.stats(),
            "device": self.executor.device_info,
        }
