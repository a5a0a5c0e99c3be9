"""
Shared fixtures for the scan station tests.

FakePackageAPI stands in for the package API: it keeps package records in
memory, applies the lifecycle edges from the action catalog, remembers every
idempotency token it has processed, and can be switched to fail with
network errors.
"""

import uuid
from typing import Any, Dict, List, Optional

import pytest

from core.connectivity import ConnectivitySignal
from core.exceptions import ApplicationError, NetworkError, PackageNotFoundError
from core.storage import MemoryStore
from models.package import Operator
from modules import action_catalog
from services.scan_engine import ScanEngine


class FakePackageAPI:
    """In-memory package API honoring idempotency tokens."""

    def __init__(self):
        self.packages: Dict[str, Dict[str, Any]] = {}
        self.processed: Dict[str, Dict[str, Any]] = {}
        self.transitions: List[tuple] = []
        self.rejections: Dict[str, tuple] = {}
        self.submitted: List[Dict[str, Any]] = []
        self.bulk_requests: List[Dict[str, Any]] = []
        self.fetches: List[str] = []
        self.fail_network = False

    def add_package(self, code: str, state: str, delivery_type: str = "doorstep", **extra) -> Dict[str, Any]:
        record = {
            "code": code,
            "state": state,
            "delivery_type": delivery_type,
            "sender_name": "Jane Sender",
            "receiver_name": "John Receiver",
            "route_description": "Nairobi CBD -> Westlands",
            "cost": 250.0,
            "created_at": "2024-01-01T08:00:00+00:00",
        }
        record.update(extra)
        self.packages[code] = record
        return record

    def reject(self, code: str, message: str, error_code: str = "BUSINESS_RULE"):
        """Make every action on this package fail with an application error."""
        self.rejections[code] = (message, error_code)

    def state_of(self, code: str) -> str:
        return self.packages[code]["state"]

    def _network_check(self, operation: str):
        if self.fail_network:
            raise NetworkError("Package API unreachable: simulated outage", operation=operation)

    def fetch_package(self, code: str) -> Dict[str, Any]:
        self._network_check("fetch_package")
        self.fetches.append(code)
        if code not in self.packages:
            raise PackageNotFoundError(code)
        return {"package": dict(self.packages[code]), "available_actions": []}

    def _apply(self, code: str, action_type: str) -> Dict[str, Any]:
        if code in self.rejections:
            message, error_code = self.rejections[code]
            raise ApplicationError(message, error_code=error_code, status_code=422, operation="submit_action")

        record = self.packages.get(code)
        if record is None:
            raise ApplicationError(f"Package {code} not found", error_code="PACKAGE_NOT_FOUND", status_code=404)

        current = record["state"]
        target = action_catalog.target_state(action_type, current)
        if target is None:
            raise ApplicationError(
                f"Cannot {action_type} a package that is {current}",
                error_code="INVALID_TRANSITION",
                status_code=422,
            )
        if target != current:
            self.transitions.append((code, action_type, current, target))
        record["state"] = target
        return {
            "new_state": target,
            "package": dict(record),
            "message": f"{action_type} recorded",
            "already_processed": False,
        }

    def submit_action(
        self,
        code: str,
        action_type: str,
        operator: Dict[str, Any],
        idempotency_token: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        self._network_check("submit_action")
        self.submitted.append({
            "code": code,
            "action_type": action_type,
            "operator": operator,
            "token": idempotency_token,
            "metadata": metadata or {},
        })

        if idempotency_token in self.processed:
            return {**self.processed[idempotency_token], "already_processed": True}

        result = self._apply(code, action_type)
        self.processed[idempotency_token] = result
        return result

    def submit_bulk(
        self,
        codes: List[str],
        action_type: str,
        operator: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_keys: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        self._network_check("submit_bulk")
        self.bulk_requests.append({
            "codes": list(codes),
            "action_type": action_type,
            "metadata": metadata,
            "idempotency_keys": dict(idempotency_keys or {}),
        })

        results = []
        for code in codes:
            token = (idempotency_keys or {}).get(code) or str(uuid.uuid4())
            if token in self.processed:
                previous = self.processed[token]
                results.append({
                    "package_code": code,
                    "success": True,
                    "message": previous["message"],
                    "new_state": previous["new_state"],
                })
                continue
            try:
                applied = self._apply(code, action_type)
            except ApplicationError as e:
                results.append({
                    "package_code": code,
                    "success": False,
                    "message": e.message,
                    "error_code": e.error_code,
                })
            else:
                self.processed[token] = applied
                results.append({
                    "package_code": code,
                    "success": True,
                    "message": applied["message"],
                    "new_state": applied["new_state"],
                })

        successful = sum(1 for r in results if r["success"])
        return {
            "results": results,
            "summary": {"total": len(results), "successful": successful, "failed": len(results) - successful},
        }

    def ping(self, timeout_seconds: float = 5.0) -> bool:
        return not self.fail_network


# Fixtures

@pytest.fixture
def fake_api():
    return FakePackageAPI()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def connectivity():
    return ConnectivitySignal(initially_online=True)


@pytest.fixture
def device_info():
    return {"platform": "test", "device_name": "scanner-01", "app_version": "1.0.0", "user_agent": "ScanStation/1.0.0"}


@pytest.fixture
def engine(fake_api, store, connectivity, device_info):
    """Engine wired to the fake API; background threads are not started."""
    return ScanEngine(
        fake_api,
        store,
        connectivity=connectivity,
        queue_max_size=50,
        probe_interval_seconds=0,
        device_info=device_info,
    )


@pytest.fixture
def rider():
    return Operator(id="u-rider", name="Rita Rider", role="rider")


@pytest.fixture
def agent():
    return Operator(id="u-agent", name="Alex Agent", role="agent")


@pytest.fixture
def warehouse():
    return Operator(id="u-wh", name="Wanda Warehouse", role="warehouse")


@pytest.fixture
def client_operator():
    return Operator(id="u-client", name="Carl Client", role="client")
