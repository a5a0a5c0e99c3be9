"""
Package snapshot cache.

Keeps the last known record of every package this device has seen, so a
scan can still be validated when the package API is unreachable.

Policy:
    - TTL: a snapshot older than ttl_seconds is treated as missing and deleted
      on read (the original app used 24 hours).
    - Size bound: at most max_entries snapshots; the least recently
      refreshed one is evicted first.
    - The action set is stored together with the state and role it was
      resolved for, and is always re-derived from the catalog on write.

Reads take no cache-wide lock; only writes touching the eviction index are
serialized.

Usage:
    cache = PackageSnapshotCache(store, max_entries=500, ttl_seconds=24 * 3600)

    cache.put(snapshot.code, snapshot, role="rider")
    cached = cache.get("PKG-AB12-20240101")
    if cached:
        actions = cache.actions_for(cached, role="rider")
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Sequence, Union

from models.package import CachedPackage, PackageSnapshot
from models.scan_action import ActionDescriptor
from modules import action_catalog
from logging_config import get_logger


logger = get_logger(__name__)

KEY_PREFIX = "package/"
INDEX_KEY = "cache_index/lru"


class PackageSnapshotCache:
    """
    Persistent, bounded cache of package snapshots keyed by package code.

    Attributes:
        max_entries: Upper bound on cached snapshots
        ttl_seconds: Age after which a snapshot is no longer served
    """

    def __init__(self, store, max_entries: int = 500, ttl_seconds: float = 24 * 3600):
        """
        Initialize the cache.

        Args:
            store: Key-value persistence substrate
            max_entries: Upper bound on cached snapshots
            ttl_seconds: Freshness window

        Raises:
            ValueError: If max_entries < 1 or ttl_seconds <= 0
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        self._store = store
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._index_lock = threading.Lock()

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, code: str) -> Optional[CachedPackage]:
        """
        Return the cached record for a package, or None.

        Expired and unreadable records are deleted and reported as a miss.

        Raises:
            StorageError: If the substrate itself fails
        """
        data = self._store.get(self._key(code))
        if data is None:
            return None

        try:
            cached = CachedPackage.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Discarding unreadable cache record for {code}: {e}")
            self.invalidate(code)
            return None

        if cached.age_seconds > self.ttl_seconds:
            logger.info(f"Cache expired for package {code} ({int(cached.age_seconds)}s old)")
            self.invalidate(code)
            return None

        logger.debug(f"Cache hit for package {code}")
        return cached

    def actions_for(self, cached: CachedPackage, role: str) -> List[ActionDescriptor]:
        """
        Action set for a cached snapshot as seen by the given role.

        The stored ids are only reused when they were resolved for exactly
        this state and role; otherwise the catalog is consulted.
        """
        snapshot = cached.snapshot
        if cached.resolved_for_state == snapshot.state and cached.resolved_for_role == role:
            descriptors = [action_catalog.get_descriptor(a) for a in cached.action_ids]
            return [d for d in descriptors if d is not None]
        return action_catalog.resolve_actions(snapshot.state, role, snapshot.delivery_type)

    def codes(self) -> List[str]:
        return [key[len(KEY_PREFIX):] for key in self._store.list_prefix(KEY_PREFIX)]

    @property
    def size(self) -> int:
        return len(self._store.list_prefix(KEY_PREFIX))

    # =========================================================================
    # WRITES
    # =========================================================================

    def put(
        self,
        code: str,
        snapshot: PackageSnapshot,
        role: str,
        actions: Optional[Sequence[Union[ActionDescriptor, str]]] = None,
    ) -> CachedPackage:
        """
        Store a freshly fetched (or server-confirmed) snapshot.

        Args:
            code: Package code
            snapshot: Snapshot to store
            role: Role the action set is resolved for
            actions: Action set the caller resolved; ignored if it disagrees
                with the catalog for this state and role

        Returns:
            The stored CachedPackage
        """
        resolved = action_catalog.resolve_action_ids(snapshot.state, role, snapshot.delivery_type)

        if actions is not None:
            supplied = [a.action if isinstance(a, ActionDescriptor) else str(a) for a in actions]
            if supplied != resolved:
                logger.warning(
                    f"Ignoring action set for {code} that does not match state "
                    f"{snapshot.state} as {role}: {supplied}"
                )

        cached = CachedPackage(
            snapshot=snapshot,
            action_ids=tuple(resolved),
            resolved_for_state=snapshot.state,
            resolved_for_role=role,
            cached_at=datetime.now(timezone.utc),
        )

        self._store.put(self._key(code), cached.to_dict())
        self._touch(code)

        logger.debug(f"Cached package {code} in state {snapshot.state}")
        return cached

    def update_state(self, code: str, new_state: str) -> Optional[CachedPackage]:
        """
        Apply a server-confirmed state to a cached snapshot.

        Returns:
            The refreshed record, or None if the package was not cached
        """
        cached = self.get(code)
        if cached is None:
            return None
        return self.put(code, cached.snapshot.with_state(new_state), cached.resolved_for_role)

    def invalidate(self, code: str) -> bool:
        removed = self._store.delete(self._key(code))
        with self._index_lock:
            index = self._load_index()
            if code in index:
                index.remove(code)
                self._save_index(index)
        return removed

    def purge_expired(self) -> int:
        """Delete every snapshot older than the TTL. Returns the count removed."""
        removed = 0
        for code in self.codes():
            data = self._store.get(self._key(code))
            if data is None:
                continue
            try:
                cached = CachedPackage.from_dict(data)
                expired = cached.age_seconds > self.ttl_seconds
            except (KeyError, TypeError, ValueError, AttributeError):
                expired = True
            if expired:
                self.invalidate(code)
                removed += 1

        if removed:
            logger.info(f"Purged {removed} expired cached packages")
        return removed

    def clear(self) -> int:
        """Remove all cached packages. Returns the count removed."""
        codes = self.codes()
        for code in codes:
            self._store.delete(self._key(code))
        with self._index_lock:
            self._save_index([])
        logger.info(f"Cleared {len(codes)} cached packages")
        return len(codes)

    def stats(self) -> Dict[str, Any]:
        return {
            "cached_packages": self.size,
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @staticmethod
    def _key(code: str) -> str:
        return f"{KEY_PREFIX}{code}"

    def _load_index(self) -> List[str]:
        data = self._store.get(INDEX_KEY) or {}
        return [str(c) for c in data.get("codes", [])]

    def _save_index(self, index: List[str]) -> None:
        self._store.put(INDEX_KEY, {"codes": index})

    def _touch(self, code: str) -> None:
        """Move code to the most-recent end of the index and evict overflow."""
        with self._index_lock:
            index = self._load_index()
            if code in index:
                index.remove(code)
            index.append(code)

            evicted = []
            while len(index) > self.max_entries:
                oldest = index.pop(0)
                self._store.delete(self._key(oldest))
                evicted.append(oldest)

            self._save_index(index)

        if evicted:
            logger.info(f"Evicted {len(evicted)} cached packages (limit {self.max_entries})")
