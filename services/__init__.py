"""
Services layer for the scan station.

This module contains the scan-action engine services:
- PackageSnapshotCache: Last known package records for offline scans
- PendingActionQueue: Persistent FIFO of unconfirmed actions
- ActionExecutor: One scan, from code to outcome
- ReconciliationSyncEngine: Replays the queue when connectivity returns
- BulkScanProcessor: One action over many codes
- ConnectivityProbe: Background ping feeding the connectivity signal
- ScanEngine: Composition root owning their lifecycle

Thread Model:
    Flask request threads
    ├── Sync thread (one per reconciliation run)
    └── Connectivity thread (ping loop, optional)

The queue serializes every mutation through its own lock, so request
threads and the sync thread can share it.
"""

from .snapshot_cache import PackageSnapshotCache
from .pending_queue import PendingActionQueue
from .action_executor import ActionExecutor, ExecutionPhase, ResolvedPackage
from .sync_engine import ReconciliationSyncEngine
from .bulk_processor import BulkScanProcessor
from .connectivity_probe import ConnectivityProbe
from .scan_engine import ScanEngine

__all__ = [
    "PackageSnapshotCache",
    "PendingActionQueue",
    "ActionExecutor",
    "ExecutionPhase",
    "ResolvedPackage",
    "ReconciliationSyncEngine",
    "BulkScanProcessor",
    "ConnectivityProbe",
    "ScanEngine",
]
