"""
Run-scoped memoization of fee profile lookups.

Every package identity is fetched at most once per run. Concurrent requests
for the same identity share the single outstanding fetch, and results,
including "no profile" and failures, are kept until the run ends.
"""

import asyncio
import functools
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Optional

from .error_handling import ProfileFetchError
from .package import FeeProfile, PackageIdentity
from .profile_client import ProfileClient


@dataclass(frozen=True)
class ProfileResolution:
    """Settled outcome of one lookup: a profile, no profile, or an error."""

    profile: Optional[FeeProfile] = None
    error: Optional[ProfileFetchError] = None


class CacheStats:
    """Cache performance statistics."""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.coalesced = 0
        self.abandoned = 0
        self.errors = 0
        self._lock = Lock()

    def record_hit(self) -> None:
        with self._lock:
            self.hits += 1

    def record_miss(self) -> None:
        with self._lock:
            self.misses += 1

    def record_coalesced(self) -> None:
        """Record a request that joined an in-flight fetch."""
        with self._lock:
            self.coalesced += 1

    def record_error(self) -> None:
        with self._lock:
            self.errors += 1

    def record_abandoned(self) -> None:
        with self._lock:
            self.abandoned += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses + self.coalesced
            return {
                "hits": self.hits,
                "misses": self.misses,
                "coalesced": self.coalesced,
                "abandoned": self.abandoned,
                "errors": self.errors,
                "total_requests": total,
                "hit_rate_percent": (
                    (self.hits + self.coalesced) / total * 100.0 if total else 0.0
                ),
            }


class ProfileCache:
    """
    Per-run profile cache backed by a ``ProfileClient``.

    Entries are asyncio futures settled by a fetch task. An entry is stored
    before the first await, so the event loop guarantees at most one fetch
    per identity.
    """

    def __init__(self, client: ProfileClient):
        self._client = client
        self._entries: Dict[PackageIdentity, "asyncio.Future[Optional[FeeProfile]]"] = {}
        self._fetches: Dict[PackageIdentity, "asyncio.Task[Optional[FeeProfile]]"] = {}
        self._stats = CacheStats()

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_fetch(self, identity: PackageIdentity) -> Optional[FeeProfile]:
        """
        Return the cached profile of ``identity``, fetching it on first use.

        Raises:
            ProfileFetchError: If the (possibly cached) lookup failed
        """
        entry = self._entries.get(identity)
        if entry is None:
            self._stats.record_miss()
            entry = asyncio.get_running_loop().create_future()
            self._entries[identity] = entry
            fetch = asyncio.ensure_future(self._client.fetch(identity))
            fetch.add_done_callback(functools.partial(self._settle, identity, entry))
            self._fetches[identity] = fetch
        elif entry.done():
            self._stats.record_hit()
        else:
            self._stats.record_coalesced()

        # A cancelled waiter must not cancel an entry other callers share.
        return await asyncio.shield(entry)

    def _settle(
        self,
        identity: PackageIdentity,
        entry: "asyncio.Future[Optional[FeeProfile]]",
        fetch: "asyncio.Task[Optional[FeeProfile]]",
    ) -> None:
        self._fetches.pop(identity, None)
        if entry.done():
            return
        if fetch.cancelled():
            entry.set_exception(ProfileFetchError(identity, "lookup cancelled"))
        elif fetch.exception() is not None:
            self._stats.record_error()
            entry.set_exception(fetch.exception())
        else:
            entry.set_result(fetch.result())

    def peek(self, identity: PackageIdentity) -> Optional[ProfileResolution]:
        """Return the settled result for ``identity`` without fetching."""
        entry = self._entries.get(identity)
        if entry is None or not entry.done():
            return None

        self._stats.record_hit()
        error = entry.exception()
        if error is None:
            return ProfileResolution(profile=entry.result())
        if isinstance(error, ProfileFetchError):
            return ProfileResolution(error=error)
        raise error

    def abandon_pending(self, reason: str) -> int:
        """
        Fail every lookup still in flight and cancel its fetch.

        Waiters on an abandoned entry receive a ``ProfileFetchError``.

        Returns:
            Number of abandoned lookups
        """
        abandoned = 0
        for identity, entry in self._entries.items():
            if entry.done():
                continue
            entry.set_exception(ProfileFetchError(identity, reason))
            fetch = self._fetches.pop(identity, None)
            if fetch is not None:
                fetch.cancel()
            self._stats.record_abandoned()
            abandoned += 1
        return abandoned

    def get_stats(self) -> Dict[str, Any]:
        stats = self._stats.get_stats()
        stats["entries"] = len(self._entries)
        return stats
