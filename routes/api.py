"""
API routes (JSON endpoints for the scanning UI).

Handles:
- GET    /api/packages/<code>          - Package snapshot and legal actions
- POST   /api/scan                     - Execute one scan action
- POST   /api/bulk_scan                - Apply one action to many codes
- GET    /api/sync_status              - Queue depth, connectivity, last sync
- POST   /api/sync                     - Force a reconciliation run
- GET    /api/pending                  - Queued actions for operator review
- POST   /api/pending/<token>/retry    - Re-arm a flagged action
- DELETE /api/pending/<token>          - Discard a queued action
- POST   /api/cache/clear              - Drop every cached snapshot
- POST   /api/connectivity             - Device shell reports connectivity
- GET    /api/permissions              - What the operator's role may do

Operator identity comes from the caller: an "operator" object in JSON
bodies, or X-Operator-Id / X-Operator-Name / X-Operator-Role headers.
"""

from typing import Any, Dict, Optional, Tuple

from flask import Blueprint, current_app, request

from core.exceptions import (
    ApplicationError,
    InvalidPackageCodeError,
    NoCachedDataError,
    PackageNotFoundError,
    StorageError,
)
from models.outcome import ErrorKind, OutcomeStatus, ScanOutcome
from models.package import Operator
from logging_config import get_logger


# Module logger
logger = get_logger(__name__)

api_bp = Blueprint("api", __name__)

OUTCOME_STATUS_CODES = {
    OutcomeStatus.APPLIED: 200,
    OutcomeStatus.QUEUED: 202,
    OutcomeStatus.REJECTED: 409,
}

FAILED_STATUS_CODES = {
    ErrorKind.APPLICATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NO_CACHED_DATA: 503,
    ErrorKind.NETWORK: 502,
    ErrorKind.STORAGE: 503,
}


def _engine():
    return current_app.config["SCAN_ENGINE"]


def _error(message: str, status: int, **extra: Any) -> Tuple[Dict[str, Any], int]:
    body: Dict[str, Any] = {"success": False, "message": message}
    body.update(extra)
    return body, status


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _operator_from_request(data: Optional[Dict[str, Any]] = None) -> Optional[Operator]:
    """
    Identity of the acting operator, or None if the caller did not supply one.
    """
    supplied = (data or {}).get("operator")
    if isinstance(supplied, dict) and supplied.get("id") and supplied.get("role"):
        return Operator.from_dict(supplied)

    operator_id = request.headers.get("X-Operator-Id")
    role = request.headers.get("X-Operator-Role")
    if operator_id and role:
        return Operator(
            id=operator_id,
            name=request.headers.get("X-Operator-Name", "Unknown User"),
            role=role.strip().lower(),
        )
    return None


def _missing_operator():
    return _error("Operator identity is required (operator {id, name, role})", 400)


def _outcome_response(outcome: ScanOutcome):
    if outcome.status == OutcomeStatus.FAILED:
        status = FAILED_STATUS_CODES.get(outcome.error_kind, 422)
    else:
        status = OUTCOME_STATUS_CODES[outcome.status]
    return outcome.to_dict(), status


# =============================================================================
# PACKAGES AND SCANS
# =============================================================================

@api_bp.route("/api/packages/<code>", methods=["GET"])
def package_details(code: str):
    """
    Current package record and the actions this operator may take.

    Cached data is always flagged offline so the UI never shows it as live.
    """
    operator = _operator_from_request()
    if operator is None:
        return _missing_operator()

    try:
        resolved = _engine().lookup(code, operator)
    except InvalidPackageCodeError as e:
        return _error(e.message, 400, error_kind=ErrorKind.INVALID_CODE.value)
    except PackageNotFoundError as e:
        return _error(e.message, 404, error_kind=ErrorKind.NOT_FOUND.value, error_code=e.error_code)
    except NoCachedDataError as e:
        return _error(e.message, 503, error_kind=ErrorKind.NO_CACHED_DATA.value, offline=True)
    except ApplicationError as e:
        return _error(e.message, 422, error_kind=ErrorKind.APPLICATION.value, error_code=e.error_code)
    except StorageError as e:
        logger.error(f"Storage failure looking up {code}: {e}")
        return _error(e.message, 503, error_kind=ErrorKind.STORAGE.value)

    body = resolved.to_dict()
    body["success"] = True
    return body, 200


@api_bp.route("/api/scan", methods=["POST"])
def scan():
    """Execute one scan action; the HTTP status mirrors the outcome."""
    data = _json_body()
    operator = _operator_from_request(data)
    if operator is None:
        return _missing_operator()

    code = data.get("package_code")
    action_type = data.get("action_type")
    if not code or not action_type:
        return _error("package_code and action_type are required", 400)

    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else None
    outcome = _engine().scan(str(code), str(action_type), operator, metadata)
    return _outcome_response(outcome)


@api_bp.route("/api/bulk_scan", methods=["POST"])
def bulk_scan():
    """
    Apply one action to a list of codes.

    Always 200 when the batch was processed; per-code outcomes and the
    summary carry the partial failures.
    """
    data = _json_body()
    operator = _operator_from_request(data)
    if operator is None:
        return _missing_operator()

    codes = data.get("package_codes")
    action_type = data.get("action_type")
    if not isinstance(codes, list) or not codes or not action_type:
        return _error("package_codes (non-empty list) and action_type are required", 400)

    if not _engine().role_permissions(operator.role)["can_bulk_scan"]:
        return _error(f"Role '{operator.role}' may not bulk scan", 403)

    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else None
    result = _engine().bulk_scan([str(c) for c in codes], str(action_type), operator, metadata)

    body = result.to_dict()
    body["success"] = result.failed == 0
    return body, 200


@api_bp.route("/api/permissions", methods=["GET"])
def permissions():
    operator = _operator_from_request()
    if operator is None:
        return _missing_operator()
    return _engine().role_permissions(operator.role), 200


# =============================================================================
# SYNC AND QUEUE REVIEW
# =============================================================================

@api_bp.route("/api/sync_status", methods=["GET"])
def sync_status():
    return _engine().sync_status(), 200


@api_bp.route("/api/sync", methods=["POST"])
def force_sync():
    """Run reconciliation now and report {synced, failed, remaining}."""
    report = _engine().force_sync()
    body = report.to_dict()
    body["success"] = not report.aborted
    return body, 200


@api_bp.route("/api/pending", methods=["GET"])
def pending_actions():
    actions = _engine().pending_actions()
    return {
        "count": len(actions),
        "actions": [a.to_dict() for a in actions],
    }, 200


@api_bp.route("/api/pending/<token>/retry", methods=["POST"])
def retry_pending(token: str):
    action = _engine().retry_pending(token)
    if action is None:
        return _error(f"No queued action {token}", 404)
    return {"success": True, "action": action.to_dict()}, 200


@api_bp.route("/api/pending/<token>", methods=["DELETE"])
def discard_pending(token: str):
    if not _engine().discard_pending(token):
        return _error(f"No queued action {token}", 404)
    return {"success": True, "token": token}, 200


# =============================================================================
# MAINTENANCE
# =============================================================================

@api_bp.route("/api/cache/clear", methods=["POST"])
def clear_cache():
    removed = _engine().clear_cache()
    return {"success": True, "removed": removed}, 200


@api_bp.route("/api/connectivity", methods=["POST"])
def report_connectivity():
    """Connectivity change pushed by the device shell."""
    data = _json_body()
    online = data.get("online")
    if not isinstance(online, bool):
        return _error("'online' must be true or false", 400)

    changed = _engine().set_online(online)
    return {"success": True, "is_online": online, "changed": changed}, 200
