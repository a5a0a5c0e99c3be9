"""
Pending action queue.

The only place a scan action can wait. When the package API cannot be
reached, the executor enqueues the action and returns immediately; the sync
engine later replays it.

Ordering:
    FIFO overall. Each action gets a monotonically increasing sequence number
    that is part of its storage key, so listing the store by prefix yields
    enqueue order even after a restart.

Concurrency:
    Every mutation goes through one re-entrant lock. Request threads
    (scan, bulk scan, discard) and the sync thread never interleave writes.

Recovery:
    A persisted record that cannot be read at startup is logged at ERROR,
    left in storage and counted in stats()["unreadable_records"]; the rest
    of the queue loads normally.

Bound:
    At most max_size actions. When full, the overflow policy decides:
        "reject"        - raise QueueFullError, keep every queued action (default)
        "evict_oldest"  - drop the oldest action with a WARNING and accept the new one

Usage:
    queue = PendingActionQueue(store, max_size=1000)

    token = queue.enqueue(PendingScanAction.create(code, "collect", operator, metadata))
    for code, actions in queue.grouped_by_code().items():
        ...
    queue.remove(token)
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import replace
from typing import Dict, Any, List, Optional

from core.exceptions import QueueFullError, StorageError
from models.scan_action import PendingScanAction
from logging_config import get_logger


logger = get_logger(__name__)

KEY_PREFIX = "pending/"
STATE_KEY = "pending_meta/state"

OVERFLOW_REJECT = "reject"
OVERFLOW_EVICT_OLDEST = "evict_oldest"
OVERFLOW_POLICIES = (OVERFLOW_REJECT, OVERFLOW_EVICT_OLDEST)


def _sequence_from_key(key: str) -> int:
    """Sequence number encoded in a record key, or 0 if the key is malformed."""
    prefix = key[len(KEY_PREFIX):].split("-", 1)[0]
    return int(prefix) if prefix.isdigit() else 0


class PendingActionQueue:
    """
    Persistent, bounded FIFO of unconfirmed scan actions.

    Attributes:
        max_size: Maximum number of queued actions
        overflow_policy: "reject" or "evict_oldest"
    """

    def __init__(self, store, max_size: int = 1000, overflow_policy: str = OVERFLOW_REJECT):
        """
        Initialize the queue and load any actions persisted by a previous run.

        Args:
            store: Key-value persistence substrate
            max_size: Maximum number of queued actions
            overflow_policy: What to do when the queue is full

        Raises:
            ValueError: If max_size < 1 or the policy is unknown
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"overflow_policy must be one of {OVERFLOW_POLICIES}")

        self._store = store
        self.max_size = max_size
        self.overflow_policy = overflow_policy
        self._lock = threading.RLock()

        # token -> storage key, in enqueue order
        self._keys: "OrderedDict[str, str]" = OrderedDict()
        self._next_sequence = 1
        self._unreadable: List[str] = []

        self._load()

    # =========================================================================
    # MUTATIONS (serialized)
    # =========================================================================

    def enqueue(self, action: PendingScanAction) -> str:
        """
        Append an action to the queue.

        Enqueueing a token that is already queued is a no-op.

        Returns:
            The action's idempotency token

        Raises:
            QueueFullError: Queue is full under the "reject" policy
            StorageError: Persistence failed
        """
        with self._lock:
            if action.token in self._keys:
                logger.debug(f"Action {action.token[:8]} already queued")
                return action.token

            if len(self._keys) >= self.max_size:
                if self.overflow_policy == OVERFLOW_REJECT:
                    logger.error(f"Pending queue full ({self.max_size}); rejecting {action.action_type} "
                                 f"for {action.package_code}")
                    raise QueueFullError(self.max_size)

                oldest = self.peek()
                if oldest is not None:
                    logger.warning(
                        f"Pending queue full; evicting oldest action {oldest.token[:8]} "
                        f"({oldest.action_type} for {oldest.package_code})"
                    )
                    self.remove(oldest.token)

            sequence = self._next_sequence
            queued = replace(action, sequence=sequence)
            key = f"{KEY_PREFIX}{sequence:012d}-{queued.token}"

            self._store.put(key, queued.to_dict())
            self._next_sequence = sequence + 1
            self._store.put(STATE_KEY, {"next_sequence": self._next_sequence})
            self._keys[queued.token] = key

        logger.info(
            f"Queued {queued.action_type} for {queued.package_code} "
            f"(token={queued.token[:8]}, queue size={len(self._keys)})"
        )
        return queued.token

    def remove(self, token: str) -> bool:
        """
        Delete an action (acknowledged by the server, or discarded).

        Returns:
            True if the action was queued
        """
        with self._lock:
            key = self._keys.pop(token, None)
            if key is None:
                return False
            self._store.delete(key)
        logger.debug(f"Removed action {token[:8]} from queue")
        return True

    def discard(self, token: str) -> bool:
        """Explicit operator discard of a queued action."""
        action = self.get(token)
        removed = self.remove(token)
        if removed and action is not None:
            logger.warning(
                f"Operator discarded {action.action_type} for {action.package_code} "
                f"(token={token[:8]})"
            )
        return removed

    def record_attempt(self, token: str, error: str = "") -> Optional[PendingScanAction]:
        """Increment an action's attempt count and remember the last error."""
        with self._lock:
            action = self.get(token)
            if action is None:
                return None
            updated = replace(action, attempt_count=action.attempt_count + 1, last_error=error)
            self._store.put(self._keys[token], updated.to_dict())
            return updated

    def mark_needs_attention(self, token: str, reason: str) -> Optional[PendingScanAction]:
        """
        Flag an action the server rejected; it stays queued for operator review.
        """
        with self._lock:
            action = self.get(token)
            if action is None:
                return None
            updated = replace(action, needs_attention=True, last_error=reason)
            self._store.put(self._keys[token], updated.to_dict())

        logger.warning(
            f"Action {token[:8]} ({action.action_type} for {action.package_code}) "
            f"needs operator attention: {reason}"
        )
        return updated

    def clear_attention(self, token: str) -> Optional[PendingScanAction]:
        """Operator asked to retry a flagged action on the next sync."""
        with self._lock:
            action = self.get(token)
            if action is None:
                return None
            updated = replace(action, needs_attention=False)
            self._store.put(self._keys[token], updated.to_dict())
        logger.info(f"Action {token[:8]} cleared for retry")
        return updated

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, token: str) -> Optional[PendingScanAction]:
        with self._lock:
            key = self._keys.get(token)
            if key is None:
                return None
            return self._read(key)

    def peek(self) -> Optional[PendingScanAction]:
        """Oldest queued action, without removing it."""
        with self._lock:
            for key in self._keys.values():
                return self._read(key)
            return None

    def list_all(self) -> List[PendingScanAction]:
        """All queued actions in enqueue order."""
        with self._lock:
            return [self._read(key) for key in self._keys.values()]

    def list_by_code(self, code: str) -> List[PendingScanAction]:
        """Queued actions for one package, in enqueue order."""
        return [a for a in self.list_all() if a.package_code == code]

    def grouped_by_code(self) -> "OrderedDict[str, List[PendingScanAction]]":
        """
        Queued actions grouped by package code.

        Groups are ordered by their oldest action; actions inside a group
        keep enqueue order.
        """
        groups: "OrderedDict[str, List[PendingScanAction]]" = OrderedDict()
        for action in self.list_all():
            groups.setdefault(action.package_code, []).append(action)
        return groups

    @property
    def size(self) -> int:
        return len(self._keys)

    def needs_attention_count(self) -> int:
        return sum(1 for a in self.list_all() if a.needs_attention)

    def stats(self) -> Dict[str, Any]:
        actions = self.list_all()
        return {
            "pending_actions": len(actions),
            "needs_attention": sum(1 for a in actions if a.needs_attention),
            "max_size": self.max_size,
            "overflow_policy": self.overflow_policy,
            "unreadable_records": len(self._unreadable),
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _read(self, key: str) -> PendingScanAction:
        data = self._store.get(key)
        if data is None:
            raise StorageError(f"Queued action record disappeared: {key}", key=key)
        try:
            return PendingScanAction.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StorageError(f"Queued action record is unreadable: {e}", key=key)

    def _load(self) -> None:
        with self._lock:
            state = self._store.get(STATE_KEY) or {}
            next_sequence = int(state.get("next_sequence", 1))

            for key in self._store.list_prefix(KEY_PREFIX):
                # Sequence is part of the key, so new keys never reuse it
                next_sequence = max(next_sequence, _sequence_from_key(key) + 1)
                try:
                    action = self._read(key)
                except StorageError as e:
                    # Record stays in storage for manual recovery
                    logger.error(f"Skipping unreadable queued action {key}: {e}")
                    self._unreadable.append(key)
                    continue
                self._keys[action.token] = key
                next_sequence = max(next_sequence, action.sequence + 1)

            self._next_sequence = next_sequence

        if self._keys:
            logger.info(f"Loaded {len(self._keys)} queued actions from storage")
        if self._unreadable:
            logger.error(f"{len(self._unreadable)} queued action records could not be read and were left in place")
