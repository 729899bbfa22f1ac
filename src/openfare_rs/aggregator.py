"""
Fee aggregation over a dependency graph.

Profiles of every package reachable from a root are fetched concurrently,
then combined in a single synchronous pass. Each distinct package
contributes its fee once, however many paths reach it, and the output order
is the graph traversal order rather than the order in which fetches finish.
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .error_handling import (
    ErrorCategory,
    MixedCurrencyError,
    ProfileFetchError,
    RootNotFoundError,
    get_error_handler,
)
from .graph import DependencyGraph
from .package import DependencyKind, FeeProfile, PackageIdentity, Recipient
from .profile_cache import ProfileCache, ProfileResolution
from .structured_logging import get_aggregator_logger, log_aggregation_complete

DEADLINE_EXCEEDED = "deadline exceeded"


@dataclass(frozen=True)
class FeeRow:
    """A fee-bearing package and its contribution to the total."""

    identity: PackageIdentity
    profile: FeeProfile
    amount: Decimal

    def recipient_amounts(self) -> List[Tuple[Recipient, Decimal]]:
        """Split the row amount by recipient share."""
        return [(recipient, self.amount * recipient.share) for recipient in self.profile.recipients]


@dataclass(frozen=True)
class FeeWarning:
    """A non-fatal problem recorded against one package."""

    identity: PackageIdentity
    message: str
    detail: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.identity.name}: {self.message}"


@dataclass(frozen=True)
class AggregatedFee:
    """Combined, deduplicated fee result for one root package."""

    root: PackageIdentity
    currency: Optional[str]
    total: Decimal
    rows: Tuple[FeeRow, ...] = field(default_factory=tuple)
    no_fee: Tuple[PackageIdentity, ...] = field(default_factory=tuple)
    warnings: Tuple[FeeWarning, ...] = field(default_factory=tuple)

    def __post_init__(self):
        row_sum = sum((row.amount for row in self.rows), Decimal("0"))
        if row_sum != self.total:
            raise ValueError(f"Row amounts sum to {row_sum}, not the total {self.total}")


class FeeAggregator:
    """
    Aggregates fee profiles across a dependency graph.

    The deadline covers the aggregator's whole lifetime: it starts with the
    first lookup, so several roots aggregated with one instance share it.
    """

    def __init__(
        self,
        cache: ProfileCache,
        target_currency: Optional[str] = None,
        max_concurrent: int = 16,
        deadline_seconds: float = 120.0,
        dependency_kinds: Optional[Iterable[DependencyKind]] = None,
    ):
        """
        Initialize the aggregator.

        Args:
            cache: Run-scoped profile cache
            target_currency: Only count fees in this currency; other currencies
                are excluded with a warning instead of failing the run
            max_concurrent: Maximum number of outstanding profile fetches
            deadline_seconds: Overall time budget for profile lookups
            dependency_kinds: Edge kinds to follow (default: all)
        """
        self.cache = cache
        self.target_currency = target_currency.strip().upper() if target_currency else None
        self.max_concurrent = max_concurrent
        self.deadline_seconds = deadline_seconds
        self.dependency_kinds = list(dependency_kinds) if dependency_kinds is not None else None
        self._deadline_at: Optional[float] = None

    async def aggregate(
        self, graph: DependencyGraph, root: PackageIdentity
    ) -> Tuple[AggregatedFee, List[FeeWarning]]:
        """
        Aggregate the fees of every package reachable from ``root``.

        Raises:
            RootNotFoundError: If ``root`` is not in the graph
            MixedCurrencyError: If profiles use several currencies and no
                target currency is configured
        """
        if root not in graph:
            raise RootNotFoundError(f"Root package {root} is not in the dependency graph")

        start_time = time.monotonic()
        order = graph.walk(root, self.dependency_kinds)
        resolutions = await self.resolve_profiles(order)
        aggregated = self.combine(root, order, resolutions)

        log_aggregation_complete(
            str(root),
            visited=len(order),
            fee_rows=len(aggregated.rows),
            warnings=len(aggregated.warnings),
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )
        return aggregated, list(aggregated.warnings)

    def _remaining_time(self) -> float:
        loop = asyncio.get_running_loop()
        if self._deadline_at is None:
            self._deadline_at = loop.time() + self.deadline_seconds
        return max(0.0, self._deadline_at - loop.time())

    async def resolve_profiles(
        self, identities: Sequence[PackageIdentity]
    ) -> Dict[PackageIdentity, ProfileResolution]:
        """
        Resolve the profiles of ``identities`` concurrently.

        Lookups still outstanding at the deadline are abandoned and reported
        as fetch failures; everything already resolved is kept.
        """
        semaphore = asyncio.Semaphore(self.max_concurrent)
        resolutions: Dict[PackageIdentity, ProfileResolution] = {}

        async def fetch(identity: PackageIdentity) -> Optional[FeeProfile]:
            async with semaphore:
                return await self.cache.get_or_fetch(identity)

        tasks: Dict[PackageIdentity, "asyncio.Task[Optional[FeeProfile]]"] = {}
        for identity in identities:
            cached = self.cache.peek(identity)
            if cached is not None:
                resolutions[identity] = cached
            elif identity not in tasks:
                tasks[identity] = asyncio.ensure_future(fetch(identity))

        if tasks:
            _, pending = await asyncio.wait(tasks.values(), timeout=self._remaining_time())
            if pending:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                abandoned = self.cache.abandon_pending(DEADLINE_EXCEEDED)
                get_aggregator_logger().warning(
                    "deadline_exceeded",
                    unresolved=len(pending),
                    abandoned_fetches=abandoned,
                    deadline_seconds=self.deadline_seconds,
                )

        for identity, task in tasks.items():
            if task.cancelled():
                resolutions[identity] = self.cache.peek(identity) or ProfileResolution(
                    error=ProfileFetchError(identity, DEADLINE_EXCEEDED)
                )
                continue
            error = task.exception()
            if error is None:
                resolutions[identity] = ProfileResolution(profile=task.result())
            elif isinstance(error, ProfileFetchError):
                resolutions[identity] = ProfileResolution(error=error)
            else:
                raise error

        return resolutions

    def combine(
        self,
        root: PackageIdentity,
        order: Sequence[PackageIdentity],
        resolutions: Dict[PackageIdentity, ProfileResolution],
    ) -> AggregatedFee:
        """
        Combine resolved profiles into an aggregated fee.

        Pure: the same order and resolutions always give an equal result.
        """
        warnings: List[FeeWarning] = []
        no_fee: List[PackageIdentity] = []
        candidates: List[FeeRow] = []

        for identity in order:
            resolution = resolutions[identity]
            if resolution.error is not None:
                warnings.append(FeeWarning(identity, "fetch failed", resolution.error.reason))
            elif resolution.profile is None or resolution.profile.fee == 0:
                no_fee.append(identity)
            else:
                candidates.append(
                    FeeRow(identity, resolution.profile, resolution.profile.fee)
                )

        currencies = list(dict.fromkeys(row.profile.currency for row in candidates))

        if self.target_currency is None:
            if len(currencies) > 1:
                raise MixedCurrencyError(currencies)
            rows = candidates
            currency = currencies[0] if currencies else None
        else:
            rows = []
            for row in candidates:
                if row.profile.currency == self.target_currency:
                    rows.append(row)
                    continue
                warning = FeeWarning(
                    row.identity,
                    f"currency {row.profile.currency} excluded "
                    f"(target {self.target_currency})",
                )
                warnings.append(warning)
                get_error_handler().warning(
                    ErrorCategory.CURRENCY,
                    str(warning),
                    "aggregator",
                    "combine",
                    details={"package": row.identity.name, "amount": str(row.amount)},
                )
            currency = self.target_currency

        # Keep warnings in traversal order regardless of when they were found
        position = {identity: index for index, identity in enumerate(order)}
        warnings.sort(key=lambda warning: position[warning.identity])

        return AggregatedFee(
            root=root,
            currency=currency,
            total=sum((row.amount for row in rows), Decimal("0")),
            rows=tuple(rows),
            no_fee=tuple(no_fee),
            warnings=tuple(warnings),
        )
