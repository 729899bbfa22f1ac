"""
HTTP client for remote OpenFare fee profiles.

Fetches one profile per package identity with a bounded per-request timeout
and exponential backoff on transient failures.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Optional

import httpx

from .error_handling import ProfileFetchError, log_fetch_failure
from .package import FeeProfile, PackageIdentity, SourceKind
from .profile_sources import ProfileSource
from .structured_logging import log_profile_fetch

NOT_FOUND_STATUSES = {404, 410}
TRANSIENT_STATUSES = {429}


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry state for one lookup.

    ``attempt`` is the zero-based index of the attempt being made. The
    policy is never mutated; ``advance`` returns the state for the next try.
    """

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    attempt: int = 0

    @classmethod
    def from_retries(
        cls, retries: int, base_delay: float = 0.5, max_delay: float = 8.0
    ) -> "RetryPolicy":
        return cls(max_attempts=retries + 1, base_delay=base_delay, max_delay=max_delay)

    @property
    def delay(self) -> float:
        """Seconds to wait before the next attempt."""
        return min(self.base_delay * (2**self.attempt), self.max_delay)

    @property
    def exhausted(self) -> bool:
        return self.attempt + 1 >= self.max_attempts

    def advance(self) -> "RetryPolicy":
        return replace(self, attempt=self.attempt + 1)


class _TransientFailure(Exception):
    """A failure worth retrying."""


class ProfileClient:
    """
    Fetches fee profiles over HTTP.

    Uses the async context manager pattern: the ``httpx.AsyncClient`` is
    created on entry and closed on exit.
    """

    def __init__(
        self,
        sources: Dict[SourceKind, ProfileSource],
        timeout: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        user_agent: str = "openfare-rs",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.sources = sources
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.transport = transport
        self._sleep = sleep
        self._headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "ProfileClient":
        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            headers=self._headers,
            transport=self.transport,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    def lookup_url(self, identity: PackageIdentity) -> Optional[str]:
        return self.sources[identity.source_kind].resolve_lookup_url(identity)

    async def fetch(self, identity: PackageIdentity) -> Optional[FeeProfile]:
        """
        Fetch the fee profile of one package.

        Returns:
            The profile, or None when the package declares no fee

        Raises:
            ProfileFetchError: On a malformed body, an unexpected status or
                when retries are exhausted
        """
        url = self.lookup_url(identity)
        if url is None:
            return None

        if self.client is None:
            raise RuntimeError("HTTP client not initialized - use within async context manager")

        start_time = time.monotonic()
        policy = self.retry_policy

        while True:
            try:
                profile = await self._attempt(identity, url)
            except _TransientFailure as failure:
                if policy.exhausted:
                    error = ProfileFetchError(
                        identity, f"{failure} (after {policy.attempt + 1} attempts)"
                    )
                    log_fetch_failure(error, url)
                    raise error
                await self._sleep(policy.delay)
                policy = policy.advance()
                continue
            except ProfileFetchError as error:
                log_fetch_failure(error, url)
                raise

            log_profile_fetch(
                identity.name,
                identity.version,
                found=profile is not None,
                attempts=policy.attempt + 1,
                response_time_ms=round((time.monotonic() - start_time) * 1000, 1),
            )
            return profile

    async def _attempt(self, identity: PackageIdentity, url: str) -> Optional[FeeProfile]:
        try:
            response = await self.client.get(url)
        except httpx.TimeoutException as e:
            raise _TransientFailure(f"request timed out ({type(e).__name__})") from e
        except httpx.TransportError as e:
            raise _TransientFailure(f"network error: {type(e).__name__}: {e}") from e

        status = response.status_code
        if status in NOT_FOUND_STATUSES:
            return None
        if status >= 500 or status in TRANSIENT_STATUSES:
            raise _TransientFailure(f"HTTP {status}")
        if not response.is_success:
            raise ProfileFetchError(identity, f"unexpected HTTP status {status}")

        try:
            return FeeProfile.from_dict(response.json())
        except ValueError as e:
            # json.JSONDecodeError is a ValueError as well
            raise ProfileFetchError(identity, f"malformed profile: {e}") from e
