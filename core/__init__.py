"""
Core module for the scan station.

Contains fundamental infrastructure components:
- exceptions: Custom exception hierarchy (the error taxonomy)
- storage: Key-value persistence substrate (memory and JSON files)
- connectivity: Connectivity signal the sync engine subscribes to
- api_client: HTTP client for the package/scan API
"""

from .exceptions import (
    ScanStationError,
    ConfigurationError,
    InvalidPackageCodeError,
    IllegalTransitionError,
    NoCachedDataError,
    RemoteError,
    NetworkError,
    RemoteTimeoutError,
    ApplicationError,
    PackageNotFoundError,
    StorageError,
    QueueFullError,
)
from .storage import MemoryStore, JsonFileStore
from .connectivity import ConnectivitySignal
from .api_client import PackageAPIClient

__all__ = [
    "ScanStationError",
    "ConfigurationError",
    "InvalidPackageCodeError",
    "IllegalTransitionError",
    "NoCachedDataError",
    "RemoteError",
    "NetworkError",
    "RemoteTimeoutError",
    "ApplicationError",
    "PackageNotFoundError",
    "StorageError",
    "QueueFullError",
    "MemoryStore",
    "JsonFileStore",
    "ConnectivitySignal",
    "PackageAPIClient",
]
