"""
Outcome data models.

Every scan ends in exactly one ScanOutcome:

    APPLIED  - the package API confirmed the transition
    QUEUED   - connectivity failure; the action waits in the pending queue
    REJECTED - local precondition failed; no network call was made
    FAILED   - server rejected the business rule, no offline data, or storage failure

These are what the UI layer receives. The core never renders or prints; a
caller that wants "print after collect" chains it on an APPLIED outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional

from .package import PackageSnapshot
from .scan_action import ActionDescriptor


class OutcomeStatus(Enum):
    """Terminal status of a scan action."""

    APPLIED = "applied"
    QUEUED = "queued"
    REJECTED = "rejected"
    FAILED = "failed"


class ErrorKind(Enum):
    """Why a scan was rejected or failed (maps the exception taxonomy)."""

    INVALID_CODE = "invalid_code"
    ILLEGAL_TRANSITION = "illegal_transition"
    APPLICATION = "application_error"
    NOT_FOUND = "not_found"
    NO_CACHED_DATA = "no_cached_data"
    NETWORK = "network_error"
    STORAGE = "storage_error"


@dataclass
class ScanOutcome:
    """Result of one scan action, as reported to the UI layer."""

    status: OutcomeStatus
    package_code: str
    action_type: str

    new_state: Optional[str] = None
    """Server-confirmed state (APPLIED only)."""

    token: Optional[str] = None
    """Idempotency token of the queued or submitted action."""

    reason: str = ""
    """Operator-facing message (server message verbatim for application errors)."""

    error_kind: Optional[ErrorKind] = None
    error_code: str = ""

    package: Optional[PackageSnapshot] = None
    available_actions: List[ActionDescriptor] = field(default_factory=list)
    """Next legal actions after this outcome."""

    offline: bool = False
    """True when cached (possibly stale) data was used to service the scan."""

    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_success(self) -> bool:
        """Applied or safely queued; nothing for the operator to fix."""
        return self.status in (OutcomeStatus.APPLIED, OutcomeStatus.QUEUED)

    @classmethod
    def applied(
        cls,
        code: str,
        action_type: str,
        new_state: str,
        token: str,
        package: Optional[PackageSnapshot] = None,
        available_actions: Optional[List[ActionDescriptor]] = None,
        message: str = "",
    ) -> "ScanOutcome":
        return cls(
            status=OutcomeStatus.APPLIED,
            package_code=code,
            action_type=action_type,
            new_state=new_state,
            token=token,
            reason=message or f"{action_type} applied",
            package=package,
            available_actions=list(available_actions or []),
        )

    @classmethod
    def queued(
        cls,
        code: str,
        action_type: str,
        token: str,
        package: Optional[PackageSnapshot] = None,
        reason: str = "",
    ) -> "ScanOutcome":
        return cls(
            status=OutcomeStatus.QUEUED,
            package_code=code,
            action_type=action_type,
            token=token,
            reason=reason or "Action stored offline and will sync when connection is restored",
            package=package,
            offline=True,
        )

    @classmethod
    def rejected(
        cls,
        code: str,
        action_type: str,
        reason: str,
        error_kind: ErrorKind = ErrorKind.ILLEGAL_TRANSITION,
        package: Optional[PackageSnapshot] = None,
        available_actions: Optional[List[ActionDescriptor]] = None,
        offline: bool = False,
    ) -> "ScanOutcome":
        return cls(
            status=OutcomeStatus.REJECTED,
            package_code=code,
            action_type=action_type,
            reason=reason,
            error_kind=error_kind,
            package=package,
            available_actions=list(available_actions or []),
            offline=offline,
        )

    @classmethod
    def failed(
        cls,
        code: str,
        action_type: str,
        reason: str,
        error_kind: ErrorKind,
        error_code: str = "",
        token: Optional[str] = None,
        package: Optional[PackageSnapshot] = None,
        offline: bool = False,
    ) -> "ScanOutcome":
        return cls(
            status=OutcomeStatus.FAILED,
            package_code=code,
            action_type=action_type,
            reason=reason,
            error_kind=error_kind,
            error_code=error_code,
            token=token,
            package=package,
            offline=offline,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "success": self.is_success,
            "package_code": self.package_code,
            "action_type": self.action_type,
            "new_state": self.new_state,
            "token": self.token,
            "message": self.reason,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_code": self.error_code,
            "package": self.package.to_dict() if self.package else None,
            "available_actions": [a.to_dict() for a in self.available_actions],
            "offline": self.offline,
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass(frozen=True)
class BulkItemResult:
    """Outcome for one code inside a bulk scan."""

    package_code: str
    status: OutcomeStatus
    message: str = ""
    new_state: Optional[str] = None
    error_code: str = ""
    token: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (OutcomeStatus.APPLIED, OutcomeStatus.QUEUED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package_code": self.package_code,
            "status": self.status.value,
            "success": self.success,
            "message": self.message,
            "new_state": self.new_state,
            "error_code": self.error_code,
            "token": self.token,
        }

    @classmethod
    def from_outcome(cls, outcome: ScanOutcome) -> "BulkItemResult":
        return cls(
            package_code=outcome.package_code,
            status=outcome.status,
            message=outcome.reason,
            new_state=outcome.new_state,
            error_code=outcome.error_code or (
                outcome.error_kind.value if outcome.error_kind else ""
            ),
            token=outcome.token,
        )


@dataclass
class BulkResult:
    """
    Per-code results of a bulk scan plus the aggregate summary.

    The summary is always computed from the items, never copied from the
    server, so total == successful + failed holds by construction. total
    counts distinct codes: a code scanned twice in one batch has one item,
    and each repeat is listed in duplicate_codes.
    """

    action_type: str
    items: List[BulkItemResult] = field(default_factory=list)
    duplicate_codes: List[str] = field(default_factory=list)
    offline: bool = False
    server_summary_mismatch: bool = False
    """Set when the server's own summary disagreed with its per-code list."""

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def successful(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def queued(self) -> int:
        return sum(1 for item in self.items if item.status == OutcomeStatus.QUEUED)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if not item.success)

    @property
    def failed_codes(self) -> List[str]:
        """Codes the caller may choose to retry."""
        return [item.package_code for item in self.items if not item.success]

    def summary(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "queued": self.queued,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type,
            "offline": self.offline,
            "results": [item.to_dict() for item in self.items],
            "summary": self.summary(),
            "duplicates": list(self.duplicate_codes),
            "server_summary_mismatch": self.server_summary_mismatch,
        }


@dataclass
class SyncReport:
    """What one reconciliation run did."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    applied: List[str] = field(default_factory=list)
    """Tokens confirmed by the server and removed from the queue."""

    needs_attention: List[str] = field(default_factory=list)
    """Tokens the server rejected during this run."""

    skipped: List[str] = field(default_factory=list)
    """Tokens held back behind an earlier action for the same package."""

    aborted: bool = False
    abort_reason: str = ""
    remaining: int = 0

    def finish(self, remaining: int) -> "SyncReport":
        self.finished_at = datetime.now(timezone.utc)
        self.remaining = remaining
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "synced": len(self.applied),
            "failed": len(self.needs_attention),
            "skipped": len(self.skipped),
            "remaining": self.remaining,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "applied_tokens": list(self.applied),
            "needs_attention_tokens": list(self.needs_attention),
        }
