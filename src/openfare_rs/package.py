"""
Package identities and fee profiles.

Defines the immutable value types shared by the graph, the profile client
and the aggregator.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple

LOCAL_SOURCE = "local"

CRATES_IO_INDEX_URLS = {
    "registry+https://github.com/rust-lang/crates.io-index",
    "sparse+https://index.crates.io/",
}


class SourceKind(Enum):
    """Where a package was resolved from."""

    CRATES_IO = "crates.io"
    REGISTRY = "registry"
    GIT = "git"
    LOCAL = "local"


class DependencyKind(Enum):
    """Kind of a dependency edge."""

    NORMAL = "normal"
    BUILD = "build"
    DEV = "dev"

    @classmethod
    def parse(cls, value: Optional[str]) -> "DependencyKind":
        """Parse a cargo dependency kind; ``None`` means a normal dependency."""
        if value is None:
            return cls.NORMAL
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown dependency kind: {value}")


@dataclass(frozen=True)
class PackageIdentity:
    """A unique (name, version, source) key for a resolved package."""

    name: str
    version: str
    source: str = LOCAL_SOURCE

    def __post_init__(self):
        if not self.name or not isinstance(self.name, str):
            raise ValueError("Package name must be a non-empty string")
        if not self.version or not isinstance(self.version, str):
            raise ValueError(f"Package {self.name} has no version")
        if not self.source:
            object.__setattr__(self, "source", LOCAL_SOURCE)

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def source_kind(self) -> SourceKind:
        if self.source == LOCAL_SOURCE or self.source.startswith("path+"):
            return SourceKind.LOCAL
        if self.source in CRATES_IO_INDEX_URLS:
            return SourceKind.CRATES_IO
        if self.source.startswith("git+"):
            return SourceKind.GIT
        return SourceKind.REGISTRY

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "version": self.version, "source": self.source}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackageIdentity":
        return cls(
            name=str(data.get("name", "")).strip(),
            version=str(data.get("version", "")).strip(),
            source=data.get("source") or LOCAL_SOURCE,
        )


def _parse_amount(value: Any, field_name: str) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a decimal amount")
    try:
        # str() keeps JSON floats such as 0.1 from picking up binary noise
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"{field_name} must be a decimal amount, got {value!r}")
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"{field_name} must be a non-negative amount")
    return amount


@dataclass(frozen=True)
class Recipient:
    """A named payee and its share of a package's fee."""

    name: str
    share: Decimal

    def __post_init__(self):
        if not self.name:
            raise ValueError("Recipient name must be a non-empty string")
        if not (Decimal("0") < self.share <= Decimal("1")):
            raise ValueError(f"Recipient {self.name} share must be in (0, 1]")


@dataclass(frozen=True)
class FeeProfile:
    """Advertised fee metadata for one package."""

    currency: str
    per_use_fee: Decimal = Decimal("0")
    one_time_fee: Decimal = Decimal("0")
    recipients: Tuple[Recipient, ...] = field(default_factory=tuple)

    def __post_init__(self):
        currency = (self.currency or "").strip().upper()
        if not currency or not currency.isalpha():
            raise ValueError(f"Invalid currency code: {self.currency!r}")
        object.__setattr__(self, "currency", currency)
        object.__setattr__(self, "recipients", tuple(self.recipients))

        if sum((r.share for r in self.recipients), Decimal("0")) > Decimal("1"):
            raise ValueError("Recipient shares must not sum to more than 1")

    @property
    def fee(self) -> Decimal:
        """Contribution of the package to an aggregated total."""
        return self.per_use_fee + self.one_time_fee

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeeProfile":
        """
        Build a profile from a decoded profile document.

        Raises:
            ValueError: If the document does not describe a valid profile
        """
        if not isinstance(data, dict):
            raise ValueError("Profile document must be a JSON object")

        raw_recipients = data.get("recipients") or []
        if not isinstance(raw_recipients, list):
            raise ValueError("recipients must be a list")

        recipients = []
        for entry in raw_recipients:
            if not isinstance(entry, dict):
                raise ValueError("Each recipient must be an object")
            recipients.append(
                Recipient(
                    name=str(entry.get("name", "")).strip(),
                    share=_parse_amount(entry.get("share"), "share"),
                )
            )

        return cls(
            currency=str(data.get("currency") or ""),
            per_use_fee=_parse_amount(data.get("per_use_fee"), "per_use_fee"),
            one_time_fee=_parse_amount(data.get("one_time_fee"), "one_time_fee"),
            recipients=tuple(recipients),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currency": self.currency,
            "per_use_fee": str(self.per_use_fee),
            "one_time_fee": str(self.one_time_fee),
            "recipients": [
                {"name": r.name, "share": str(r.share)} for r in self.recipients
            ],
        }
