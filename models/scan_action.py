"""
Scan action data models.

ActionDescriptor is what the action catalog hands to the UI. ScanMetadata is
the bag stamped onto every action (timestamp, device, optional location).
PendingScanAction is a scan that the package API has not confirmed yet and
that waits in the pending queue.
"""

from __future__ import annotations

import platform
import socket
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional

from .package import Operator


class ActionType(str, Enum):
    """Scan actions understood by the package API."""

    COLLECT_FROM_SENDER = "collect_from_sender"
    COLLECT = "collect"
    DELIVER = "deliver"
    GIVE_TO_RECEIVER = "give_to_receiver"
    CONFIRM_RECEIPT = "confirm_receipt"
    PROCESS = "process"
    PRINT = "print"

    @classmethod
    def parse(cls, value: Any) -> Optional["ActionType"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class ActionDescriptor:
    """A legal next action with its human label."""

    action: str
    """Machine-readable action id (see ActionType)."""

    label: str
    """Button label shown to the operator."""

    description: str
    """One-line explanation, including the transition it performs."""

    allow_bulk: bool = True
    """Whether the action may be applied through a bulk scan."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "label": self.label,
            "description": self.description,
            "allow_bulk": self.allow_bulk,
        }


@dataclass(frozen=True)
class GeoLocation:
    """Optional position of the device at scan time."""

    latitude: float
    longitude: float
    accuracy: float = 0.0
    address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
        }
        if self.address:
            result["address"] = self.address
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeoLocation":
        return cls(
            latitude=float(data.get("latitude", 0.0)),
            longitude=float(data.get("longitude", 0.0)),
            accuracy=float(data.get("accuracy", 0.0) or 0.0),
            address=data.get("address") or "",
        )


def default_device_info(device_name: Optional[str] = None, app_version: str = "1.0.0") -> Dict[str, Any]:
    """Describe this device for the package API's audit trail."""
    return {
        "platform": platform.system().lower() or "unknown",
        "device_name": device_name or socket.gethostname(),
        "app_version": app_version,
        "user_agent": f"ScanStation/{app_version}",
    }


@dataclass(frozen=True)
class ScanMetadata:
    """
    Metadata bag attached to a scan action.

    Created once at scan time; a replayed action keeps its original
    timestamp and gains offline_sync=True.
    """

    timestamp: str
    device_info: Dict[str, Any] = field(default_factory=dict)
    location: Optional[GeoLocation] = None
    notes: str = ""
    offline_sync: bool = False
    bulk_operation: bool = False

    @classmethod
    def create(
        cls,
        device_info: Optional[Dict[str, Any]] = None,
        location: Optional[GeoLocation] = None,
        notes: str = "",
    ) -> "ScanMetadata":
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            device_info=dict(device_info or default_device_info()),
            location=location,
            notes=notes,
        )

    def for_replay(self) -> "ScanMetadata":
        return replace(self, offline_sync=True)

    def for_bulk(self) -> "ScanMetadata":
        return replace(self, bulk_operation=True)

    def to_dict(self) -> Dict[str, Any]:
        """Wire format expected by the package API."""
        result: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "device_info": dict(self.device_info),
        }
        if self.location is not None:
            result["location"] = self.location.to_dict()
        if self.notes:
            result["notes"] = self.notes
        if self.offline_sync:
            result["offline_sync"] = True
            result["original_timestamp"] = self.timestamp
        if self.bulk_operation:
            result["bulk_operation"] = True
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ScanMetadata":
        data = data or {}
        location_data = data.get("location")
        return cls(
            timestamp=data.get("original_timestamp") or data.get("timestamp")
            or datetime.now(timezone.utc).isoformat(),
            device_info=dict(data.get("device_info") or {}),
            location=GeoLocation.from_dict(location_data) if location_data else None,
            notes=data.get("notes") or "",
            offline_sync=bool(data.get("offline_sync", False)),
            bulk_operation=bool(data.get("bulk_operation", False)),
        )


@dataclass(frozen=True)
class PendingScanAction:
    """
    A scan action waiting for confirmation by the package API.

    Identity is the client-generated idempotency token. The server
    short-circuits any token it has already processed, so replaying this
    action is always safe.
    """

    token: str
    """Idempotency token (UUID4)."""

    package_code: str
    action_type: str
    operator: Operator
    metadata: ScanMetadata

    queued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sequence: int = 0
    """Enqueue order; assigned by the pending queue."""

    attempt_count: int = 0
    needs_attention: bool = False
    """Set when the server rejected a replay; it will not succeed on its own."""

    last_error: str = ""

    @classmethod
    def create(
        cls,
        package_code: str,
        action_type: str,
        operator: Operator,
        metadata: ScanMetadata,
        token: Optional[str] = None,
    ) -> "PendingScanAction":
        return cls(
            token=token or str(uuid.uuid4()),
            package_code=package_code,
            action_type=action_type,
            operator=operator,
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "package_code": self.package_code,
            "action_type": self.action_type,
            "operator": self.operator.to_dict(),
            "metadata": self.metadata.to_dict(),
            "queued_at": self.queued_at.isoformat(),
            "sequence": self.sequence,
            "attempt_count": self.attempt_count,
            "needs_attention": self.needs_attention,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingScanAction":
        queued_at_str = data.get("queued_at", "")
        try:
            queued_at = datetime.fromisoformat(queued_at_str)
        except (TypeError, ValueError):
            queued_at = datetime.now(timezone.utc)

        return cls(
            token=data["token"],
            package_code=data.get("package_code", ""),
            action_type=data.get("action_type", ""),
            operator=Operator.from_dict(data.get("operator", {})),
            metadata=ScanMetadata.from_dict(data.get("metadata")),
            queued_at=queued_at,
            sequence=int(data.get("sequence", 0)),
            attempt_count=int(data.get("attempt_count", 0)),
            needs_attention=bool(data.get("needs_attention", False)),
            last_error=data.get("last_error", ""),
        )
