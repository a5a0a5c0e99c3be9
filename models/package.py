"""
Package data models.

These models represent the last known state of a package as reported by the
package API, plus the identity of the operator scanning it.

Thread Safety:
    - PackageSnapshot, Operator and CachedPackage are frozen dataclasses
    - Safe to read from any thread; a fresher fetch replaces the object
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple

from core.exceptions import InvalidPackageCodeError


PACKAGE_CODE_PATTERN = re.compile(r"^PKG-[A-Z0-9]+-\d{8}$")


def normalize_package_code(raw: str) -> str:
    """
    Normalize a scanned value into a package code.

    Scanners often deliver trailing whitespace or lower-case text; codes are
    compared upper-case.

    Raises:
        InvalidPackageCodeError: If the value is not PKG-<ALNUM>-<YYYYMMDD>
    """
    code = (raw or "").strip().upper()
    if not PACKAGE_CODE_PATTERN.match(code):
        raise InvalidPackageCodeError(raw)
    try:
        datetime.strptime(code[-8:], "%Y%m%d")
    except ValueError:
        raise InvalidPackageCodeError(raw)
    return code


class PackageState(str, Enum):
    """
    Package lifecycle state.

    Lifecycle:
        PENDING_UNPAID -> PENDING -> SUBMITTED -> IN_TRANSIT -> (DELIVERED | REJECTED)
        DELIVERED -> COLLECTED, IN_TRANSIT -> COLLECTED (handover)
    """

    PENDING_UNPAID = "pending_unpaid"
    PENDING = "pending"
    SUBMITTED = "submitted"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COLLECTED = "collected"
    REJECTED = "rejected"

    @classmethod
    def parse(cls, value: Any) -> Optional["PackageState"]:
        """Return the matching state, or None for values outside the enum."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class DeliveryType(str, Enum):
    """How the package reaches its receiver."""

    AGENT = "agent"
    DOORSTEP = "doorstep"
    FRAGILE = "fragile"
    COLLECTION = "collection"

    @classmethod
    def parse(cls, value: Any) -> Optional["DeliveryType"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class OperatorRole(str, Enum):
    """Role of the person holding the scanner."""

    CLIENT = "client"
    CUSTOMER = "customer"
    AGENT = "agent"
    RIDER = "rider"
    WAREHOUSE = "warehouse"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> Optional["OperatorRole"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class Operator:
    """
    Identity of the acting operator.

    Supplied by the authentication collaborator; stamped onto every queued
    action and used to parameterize action resolution.
    """

    id: str
    name: str
    role: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "role": self.role}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Operator":
        return cls(
            id=str(data.get("id", "unknown")),
            name=data.get("name", "Unknown User"),
            role=str(data.get("role", OperatorRole.CLIENT.value)).lower(),
        )


@dataclass(frozen=True)
class PackageSnapshot:
    """
    Last known representation of a package.

    Only the package API mutates state; the device applies a new state
    locally only as an echo after a confirmed remote success.
    """

    code: str
    """Package code (PKG-<ALNUM>-<YYYYMMDD>), immutable identity."""

    state: str
    """Lifecycle state as reported by the server (see PackageState)."""

    delivery_type: str = DeliveryType.DOORSTEP.value
    """agent | doorstep | fragile | collection."""

    sender_name: str = ""
    sender_phone: str = ""
    receiver_name: str = ""
    receiver_phone: str = ""

    route_description: str = ""
    """Human-readable origin -> destination summary."""

    cost: float = 0.0
    """Delivery cost in local currency."""

    created_at: str = ""
    """ISO 8601 creation timestamp from the server."""

    @property
    def lifecycle_state(self) -> Optional[PackageState]:
        return PackageState.parse(self.state)

    def with_state(self, new_state: str) -> "PackageSnapshot":
        """Copy of this snapshot with a server-confirmed state applied."""
        return replace(self, state=new_state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "state": self.state,
            "delivery_type": self.delivery_type,
            "sender_name": self.sender_name,
            "sender_phone": self.sender_phone,
            "receiver_name": self.receiver_name,
            "receiver_phone": self.receiver_phone,
            "route_description": self.route_description,
            "cost": self.cost,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackageSnapshot":
        """
        Create from a package API payload or a cached record.

        Accepts the server's field names (sender/receiver phone keys vary
        between endpoints).
        """
        try:
            cost = float(data.get("cost") or 0.0)
        except (TypeError, ValueError):
            cost = 0.0

        return cls(
            code=str(data.get("code") or data.get("package_code") or "").upper(),
            state=str(data.get("state", "")).lower(),
            delivery_type=str(data.get("delivery_type") or DeliveryType.DOORSTEP.value).lower(),
            sender_name=data.get("sender_name") or "",
            sender_phone=data.get("sender_phone") or data.get("sender_phone_number") or "",
            receiver_name=data.get("receiver_name") or "",
            receiver_phone=data.get("receiver_phone") or data.get("receiver_phone_number") or "",
            route_description=data.get("route_description") or "",
            cost=cost,
            created_at=data.get("created_at") or "",
        )


@dataclass(frozen=True)
class CachedPackage:
    """
    A snapshot as held by the local cache, with its freshness stamp.

    The action ids are stored together with the state and role they were
    resolved for, so a state change can never leave a stale action set behind.
    """

    snapshot: PackageSnapshot
    action_ids: Tuple[str, ...]
    resolved_for_state: str
    resolved_for_role: str
    cached_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def age_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.cached_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package": self.snapshot.to_dict(),
            "available_actions": list(self.action_ids),
            "resolved_for_state": self.resolved_for_state,
            "resolved_for_role": self.resolved_for_role,
            "cached_at": self.cached_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedPackage":
        cached_at_str = data.get("cached_at", "")
        try:
            cached_at = datetime.fromisoformat(cached_at_str)
        except (TypeError, ValueError):
            # Unparseable stamp: treat as ancient so TTL expires it
            cached_at = datetime.fromtimestamp(0, tz=timezone.utc)
        if cached_at.tzinfo is None:
            cached_at = cached_at.replace(tzinfo=timezone.utc)

        actions: List[str] = [str(a) for a in data.get("available_actions", [])]
        snapshot = PackageSnapshot.from_dict(data.get("package", {}))
        return cls(
            snapshot=snapshot,
            action_ids=tuple(actions),
            resolved_for_state=data.get("resolved_for_state", snapshot.state),
            resolved_for_role=data.get("resolved_for_role", ""),
            cached_at=cached_at,
        )
