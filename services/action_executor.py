"""
Action executor: runs one scan action from scanned code to outcome.

Every execution walks an explicit phase machine instead of nested
try/except fallbacks:

    IDLE -> RESOLVING -> ATTEMPTING -> APPLIED
                 |            |------> QUEUED    (connectivity failure)
                 |            '------> FAILED    (server rejected, storage)
                 |------> QUEUED    (offline, cached snapshot)
                 |------> REJECTED  (illegal transition, checked locally)
                 '------> FAILED    (not found, no cached data)
    IDLE -> REJECTED (malformed package code)

The split that matters most is in ATTEMPTING: a NetworkError is retryable,
so the action is queued and replayed later; an ApplicationError is a
business-rule rejection, so the server's message goes straight back to the
operator and nothing is queued.

The executor never blocks waiting for connectivity and never raises to the
UI layer. Every path ends in a ScanOutcome.

Usage:
    executor = ActionExecutor(api_client, cache, queue, connectivity)

    outcome = executor.execute("PKG-AB12-20240101", "collect", operator)
    if outcome.status == OutcomeStatus.APPLIED:
        # caller may chain "print after collect"
        pass
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple

from core.exceptions import (
    ApplicationError,
    IllegalTransitionError,
    InvalidPackageCodeError,
    NetworkError,
    NoCachedDataError,
    PackageNotFoundError,
    QueueFullError,
    StorageError,
)
from models.outcome import ErrorKind, ScanOutcome
from models.package import CachedPackage, Operator, PackageSnapshot, normalize_package_code
from models.scan_action import (
    ActionDescriptor,
    ActionType,
    PendingScanAction,
    ScanMetadata,
    default_device_info,
)
from modules import action_catalog
from logging_config import get_logger, get_action_logger


logger = get_logger(__name__)


class ExecutionPhase(Enum):
    """Phase of one scan execution."""

    IDLE = "idle"
    RESOLVING = "resolving"
    ATTEMPTING = "attempting"
    APPLIED = "applied"
    QUEUED = "queued"
    REJECTED = "rejected"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({
    ExecutionPhase.APPLIED,
    ExecutionPhase.QUEUED,
    ExecutionPhase.REJECTED,
    ExecutionPhase.FAILED,
})

ALLOWED_PHASE_TRANSITIONS = {
    ExecutionPhase.IDLE: {ExecutionPhase.RESOLVING, ExecutionPhase.REJECTED},
    ExecutionPhase.RESOLVING: {
        ExecutionPhase.ATTEMPTING,
        ExecutionPhase.QUEUED,
        ExecutionPhase.REJECTED,
        ExecutionPhase.FAILED,
    },
    ExecutionPhase.ATTEMPTING: {
        ExecutionPhase.APPLIED,
        ExecutionPhase.QUEUED,
        ExecutionPhase.FAILED,
    },
}


class ScanExecution:
    """
    Phase tracker for a single execute() call.

    Guards the phase machine: moving along an edge that is not in
    ALLOWED_PHASE_TRANSITIONS is a programming error and raises.
    """

    def __init__(self, token: str, package_code: str, action_type: str):
        self.token = token
        self.package_code = package_code
        self.action_type = action_type
        self.phase = ExecutionPhase.IDLE
        self.history: List[ExecutionPhase] = [ExecutionPhase.IDLE]
        self._logger = get_action_logger(token)

    def advance(self, phase: ExecutionPhase) -> None:
        allowed = ALLOWED_PHASE_TRANSITIONS.get(self.phase, set())
        if phase not in allowed:
            raise RuntimeError(f"Illegal execution phase change {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.history.append(phase)
        self._logger.debug(f"{self.action_type} {self.package_code}: {phase.value}")

    def finish(self, phase: ExecutionPhase, outcome: ScanOutcome) -> ScanOutcome:
        """Enter a terminal phase and return its outcome."""
        self.advance(phase)
        message = f"{self.action_type} {self.package_code} -> {outcome.status.value}"
        if outcome.reason and phase != ExecutionPhase.APPLIED:
            message += f": {outcome.reason}"
        if phase in (ExecutionPhase.FAILED, ExecutionPhase.REJECTED):
            self._logger.warning(message)
        else:
            self._logger.info(message)
        return outcome

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


@dataclass
class ResolvedPackage:
    """A package and its legal next actions, as seen by one operator."""

    snapshot: PackageSnapshot
    available_actions: List[ActionDescriptor] = field(default_factory=list)

    offline: bool = False
    """True when the snapshot came from the cache, not the package API."""

    cached_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package": self.snapshot.to_dict(),
            "available_actions": [a.to_dict() for a in self.available_actions],
            "offline": self.offline,
            "cached_at": self.cached_at.isoformat() if self.cached_at else None,
        }


class ActionExecutor:
    """
    Orchestrates single scan actions against the package API.

    Also owns the remote-call primitive (submit_pending) that the sync engine
    uses to replay queued actions, so live scans and replays go through
    exactly the same request.
    """

    def __init__(
        self,
        api_client,
        cache,
        queue,
        connectivity,
        device_info: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize the executor.

        Args:
            api_client: PackageAPIClient (remote authority)
            cache: PackageSnapshotCache
            queue: PendingActionQueue
            connectivity: ConnectivitySignal
            device_info: Device descriptor stamped onto new metadata
        """
        self._api = api_client
        self._cache = cache
        self._queue = queue
        self._connectivity = connectivity
        self._device_info = dict(device_info or default_device_info())

    @property
    def device_info(self) -> Dict[str, Any]:
        return dict(self._device_info)

    def build_metadata(self, data: Optional[Dict[str, Any]] = None) -> ScanMetadata:
        """
        Metadata for a new scan, stamped with this device's descriptor.

        Location and notes from the caller are kept; a caller-supplied
        timestamp is ignored for live scans.
        """
        supplied = ScanMetadata.from_dict(data) if data else None
        return ScanMetadata.create(
            device_info={**self._device_info, **(supplied.device_info if supplied else {})},
            location=supplied.location if supplied else None,
            notes=supplied.notes if supplied else "",
        )

    # =========================================================================
    # PACKAGE RESOLUTION
    # =========================================================================

    def resolve_package(self, code: str, operator: Operator) -> ResolvedPackage:
        """
        Current snapshot of a package and the operator's legal actions.

        Online: fetch from the package API and refresh the cache. If the
        fetch fails on connectivity, fall back to the cache and flag the
        result offline.

        Raises:
            InvalidPackageCodeError: Code is malformed
            PackageNotFoundError: Server has no such package
            ApplicationError: Server refused the lookup
            NoCachedDataError: Offline and nothing cached
            StorageError: Cache substrate failed
        """
        code = normalize_package_code(code)
        snapshot, offline, cached = self._resolve_snapshot(code, operator)

        if cached is not None:
            actions = self._cache.actions_for(cached, operator.role)
        else:
            actions = action_catalog.resolve_actions(snapshot.state, operator.role, snapshot.delivery_type)

        return ResolvedPackage(
            snapshot=snapshot,
            available_actions=actions,
            offline=offline,
            cached_at=cached.cached_at if cached is not None else None,
        )

    def _resolve_snapshot(
        self, code: str, operator: Operator
    ) -> Tuple[PackageSnapshot, bool, Optional[CachedPackage]]:
        """Returns (snapshot, offline, cached record if served from cache)."""
        if self._connectivity.is_online:
            try:
                details = self._api.fetch_package(code)
            except NetworkError as e:
                logger.warning(f"Fetch of {code} failed, falling back to cache: {e.message}")
            else:
                snapshot = PackageSnapshot.from_dict(details["package"])
                if snapshot.code != code:
                    snapshot = PackageSnapshot.from_dict({**details["package"], "code": code})
                self._cache.put(code, snapshot, operator.role)
                return snapshot, False, None

        cached = self._cache.get(code)
        if cached is None:
            raise NoCachedDataError(code)

        logger.info(f"Serving cached snapshot of {code} ({int(cached.age_seconds)}s old)")
        return cached.snapshot, True, cached

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def execute(
        self,
        code: str,
        action_type: str,
        operator: Operator,
        metadata: Optional[ScanMetadata] = None,
    ) -> ScanOutcome:
        """
        Execute one scan action.

        Args:
            code: Scanned package code (normalized here)
            action_type: Requested action id
            operator: Acting operator
            metadata: Scan metadata (created if not supplied)

        Returns:
            ScanOutcome: APPLIED, QUEUED, REJECTED or FAILED
        """
        token = str(uuid.uuid4())
        execution = ScanExecution(token, (code or "").strip(), str(action_type))

        try:
            code = normalize_package_code(code)
        except InvalidPackageCodeError as e:
            return execution.finish(
                ExecutionPhase.REJECTED,
                ScanOutcome.rejected(execution.package_code, str(action_type), e.message,
                                     error_kind=ErrorKind.INVALID_CODE),
            )
        execution.package_code = code
        execution.advance(ExecutionPhase.RESOLVING)

        try:
            resolved = self.resolve_package(code, operator)
        except PackageNotFoundError as e:
            return execution.finish(
                ExecutionPhase.FAILED,
                ScanOutcome.failed(code, str(action_type), e.message, ErrorKind.NOT_FOUND,
                                   error_code=e.error_code),
            )
        except NoCachedDataError as e:
            return execution.finish(
                ExecutionPhase.FAILED,
                ScanOutcome.failed(code, str(action_type), e.message, ErrorKind.NO_CACHED_DATA,
                                   offline=True),
            )
        except ApplicationError as e:
            return execution.finish(
                ExecutionPhase.FAILED,
                ScanOutcome.failed(code, str(action_type), e.message, ErrorKind.APPLICATION,
                                   error_code=e.error_code),
            )
        except StorageError as e:
            logger.error(f"Storage failure resolving {code}: {e}")
            return execution.finish(
                ExecutionPhase.FAILED,
                ScanOutcome.failed(code, str(action_type), e.message, ErrorKind.STORAGE),
            )

        snapshot = resolved.snapshot
        parsed_action = ActionType.parse(action_type)
        allowed_ids = [a.action for a in resolved.available_actions]

        if parsed_action is None or parsed_action.value not in allowed_ids:
            error = IllegalTransitionError(code, str(action_type), snapshot.state, operator.role)
            return execution.finish(
                ExecutionPhase.REJECTED,
                ScanOutcome.rejected(
                    code,
                    str(action_type),
                    error.message,
                    package=snapshot,
                    available_actions=resolved.available_actions,
                    offline=resolved.offline,
                ),
            )

        action = PendingScanAction.create(
            code,
            parsed_action.value,
            operator,
            metadata or self.build_metadata(),
            token=token,
        )

        if resolved.offline:
            return self._enqueue(execution, action, snapshot, "Offline: action saved and will sync when connection is restored")

        execution.advance(ExecutionPhase.ATTEMPTING)
        try:
            result = self.submit_pending(action)
        except NetworkError as e:
            return self._enqueue(execution, action, snapshot, f"Connection problem ({e.message}); action queued for sync")
        except ApplicationError as e:
            return execution.finish(
                ExecutionPhase.FAILED,
                ScanOutcome.failed(code, action.action_type, e.message, ErrorKind.APPLICATION,
                                   error_code=e.error_code, token=token, package=snapshot),
            )

        cached = self.apply_confirmation(code, action.action_type, operator.role, result, base=snapshot)
        confirmed = cached.snapshot if cached is not None else snapshot
        new_state = result.get("new_state") or confirmed.state
        next_actions = action_catalog.resolve_actions(new_state, operator.role, confirmed.delivery_type)

        return execution.finish(
            ExecutionPhase.APPLIED,
            ScanOutcome.applied(
                code,
                action.action_type,
                new_state,
                token,
                package=confirmed,
                available_actions=next_actions,
                message=result.get("message", ""),
            ),
        )

    def _enqueue(
        self,
        execution: ScanExecution,
        action: PendingScanAction,
        snapshot: Optional[PackageSnapshot],
        reason: str,
    ) -> ScanOutcome:
        try:
            self._queue.enqueue(action)
        except QueueFullError as e:
            return execution.finish(
                ExecutionPhase.FAILED,
                ScanOutcome.failed(action.package_code, action.action_type, e.message, ErrorKind.STORAGE,
                                   error_code="QUEUE_FULL", package=snapshot, offline=True),
            )
        except StorageError as e:
            logger.error(f"Could not persist queued action {action.token[:8]}: {e}")
            return execution.finish(
                ExecutionPhase.FAILED,
                ScanOutcome.failed(action.package_code, action.action_type, e.message, ErrorKind.STORAGE,
                                   package=snapshot, offline=True),
            )

        return execution.finish(
            ExecutionPhase.QUEUED,
            ScanOutcome.queued(action.package_code, action.action_type, action.token,
                               package=snapshot, reason=reason),
        )

    def queue_action(
        self,
        code: str,
        action_type: str,
        operator: Operator,
        metadata: Optional[ScanMetadata] = None,
        token: Optional[str] = None,
    ) -> ScanOutcome:
        """
        Queue an action without contacting the package API.

        Used by the bulk processor when offline. A cached snapshot, if any,
        is still checked against the catalog; without one the action is
        queued and the server judges it on replay.

        Args:
            token: Idempotency token already sent with a bulk request that
                failed on connectivity; a new one is created if None
        """
        token = token or str(uuid.uuid4())
        execution = ScanExecution(token, code, action_type)

        try:
            code = normalize_package_code(code)
        except InvalidPackageCodeError as e:
            return execution.finish(
                ExecutionPhase.REJECTED,
                ScanOutcome.rejected(code, action_type, e.message, error_kind=ErrorKind.INVALID_CODE),
            )
        execution.package_code = code
        execution.advance(ExecutionPhase.RESOLVING)

        try:
            cached = self._cache.get(code)
        except StorageError as e:
            return execution.finish(
                ExecutionPhase.FAILED,
                ScanOutcome.failed(code, action_type, e.message, ErrorKind.STORAGE, offline=True),
            )

        snapshot = cached.snapshot if cached is not None else None
        if cached is not None:
            allowed = [a.action for a in self._cache.actions_for(cached, operator.role)]
            if action_type not in allowed:
                error = IllegalTransitionError(code, action_type, cached.snapshot.state, operator.role)
                return execution.finish(
                    ExecutionPhase.REJECTED,
                    ScanOutcome.rejected(code, action_type, error.message, package=snapshot, offline=True),
                )

        action = PendingScanAction.create(code, action_type, operator, metadata or self.build_metadata(), token=token)
        return self._enqueue(execution, action, snapshot, "Offline: action saved and will sync when connection is restored")

    # =========================================================================
    # REMOTE PRIMITIVE
    # =========================================================================

    def submit_pending(self, action: PendingScanAction, replay: bool = False) -> Dict[str, Any]:
        """
        Send one action to the package API under its idempotency token.

        Args:
            action: The action to submit
            replay: True when draining the queue; marks metadata offline_sync

        Returns:
            Client result dict (new_state, package, message, already_processed)

        Raises:
            NetworkError: Retryable transport failure
            ApplicationError: Server rejected the business rule
        """
        metadata = action.metadata.for_replay() if replay else action.metadata
        return self._api.submit_action(
            action.package_code,
            action.action_type,
            action.operator.to_dict(),
            action.token,
            metadata.to_dict(),
        )

    def apply_confirmation(
        self,
        code: str,
        action_type: str,
        role: str,
        result: Dict[str, Any],
        base: Optional[PackageSnapshot] = None,
    ) -> Optional[CachedPackage]:
        """
        Echo a server-confirmed action into the snapshot cache.

        Prefers the package record the server returned; otherwise applies the
        confirmed (or, failing that, the catalog's target) state to the base
        snapshot. With no base and no server record there is nothing to cache.

        Returns:
            The refreshed cache record, or None
        """
        package = result.get("package")
        snapshot: Optional[PackageSnapshot] = None

        if isinstance(package, dict) and package.get("state"):
            snapshot = PackageSnapshot.from_dict({**package, "code": code})
        else:
            if base is None:
                try:
                    existing = self._cache.get(code)
                except StorageError as e:
                    logger.error(f"Could not read cache for {code} after confirmation: {e}")
                    return None
                base = existing.snapshot if existing is not None else None
            if base is not None:
                new_state = result.get("new_state") or action_catalog.target_state(action_type, base.state)
                snapshot = base.with_state(new_state) if new_state else base

        if snapshot is None:
            return None

        try:
            return self._cache.put(code, snapshot, role)
        except StorageError as e:
            # The action is confirmed server-side; a cache write failure does not undo it
            logger.error(f"Could not cache confirmed state of {code}: {e}")
            return None
