"""
Data models for the scan station.

This module contains dataclasses for:
- PackageSnapshot / CachedPackage: Last known package state and its cache record
- Operator: Identity of the person scanning
- PendingScanAction / ScanMetadata: Actions waiting for the package API
- ScanOutcome / BulkResult / SyncReport: What the engine reports back

Snapshots, operators and queued actions are frozen so they can be handed
between request threads and the sync thread without copying.
"""

from .package import (
    PackageSnapshot,
    CachedPackage,
    Operator,
    PackageState,
    DeliveryType,
    OperatorRole,
    normalize_package_code,
)
from .scan_action import (
    ActionType,
    ActionDescriptor,
    GeoLocation,
    ScanMetadata,
    PendingScanAction,
)
from .outcome import (
    OutcomeStatus,
    ErrorKind,
    ScanOutcome,
    BulkItemResult,
    BulkResult,
    SyncReport,
)

__all__ = [
    # Package models
    "PackageSnapshot",
    "CachedPackage",
    "Operator",
    "PackageState",
    "DeliveryType",
    "OperatorRole",
    "normalize_package_code",
    # Scan action models
    "ActionType",
    "ActionDescriptor",
    "GeoLocation",
    "ScanMetadata",
    "PendingScanAction",
    # Outcome models
    "OutcomeStatus",
    "ErrorKind",
    "ScanOutcome",
    "BulkItemResult",
    "BulkResult",
    "SyncReport",
]
