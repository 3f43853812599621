"""
Per-session authority set cache for the spin relayer.

An authority set never changes for the lifetime of its set id, so snapshots
are cached by set id for the whole session. The cache is rebuilt from chain
state after every reconnect and never persisted.
"""

from ..models import AuthoritySetSnapshot


class RelayerCache:
    """
    Authority set snapshots by set id, plus the current fastchain snapshot.

    Only touched from the event loop thread, so no locking is needed.
    """

    def __init__(self):
        self._by_set_id: dict[int, AuthoritySetSnapshot] = {}
        self._current: AuthoritySetSnapshot | None = None
        self._hits = 0
        self._misses = 0

    def get(self, set_id: int) -> AuthoritySetSnapshot | None:
        """
        Look up a cached snapshot.

        Args:
            set_id: Authority set id

        Returns:
            Cached snapshot if present, None otherwise
        """
        snapshot = self._by_set_id.get(set_id)
        if snapshot is None:
            self._misses += 1
        else:
            self._hits += 1
        return snapshot

    def put(self, snapshot: AuthoritySetSnapshot) -> None:
        """
        Cache a snapshot under its set id, replacing any previous entry.

        A replacement only happens when a fresh fetch bypassed the cache,
        in which case the fresh snapshot wins.
        """
        self._by_set_id[snapshot.set_id] = snapshot

    @property
    def current(self) -> AuthoritySetSnapshot | None:
        """Most recent fastchain authority set known to be synchronized."""
        return self._current

    @current.setter
    def current(self, snapshot: AuthoritySetSnapshot) -> None:
        self.put(snapshot)
        self._current = snapshot

    def __len__(self) -> int:
        return len(self._by_set_id)

    def get_stats(self) -> dict:
        """
        Get current cache statistics.

        Returns:
            Dictionary with cache metrics
        """
        return {
            'cached_sets': len(self._by_set_id),
            'current_set_id': self._current.set_id if self._current else None,
            'hits': self._hits,
            'misses': self._misses,
        }
