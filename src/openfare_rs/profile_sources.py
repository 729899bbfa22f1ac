"""
Lookup URL strategies for fee profiles.

Each registry kind publishes profiles at a location derived from the
package name and version. The strategy is picked from the identity's
``source`` field.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional
from urllib.parse import quote

from .package import PackageIdentity, SourceKind


class ProfileSource(ABC):
    """Derives the profile lookup URL for a package identity."""

    @abstractmethod
    def resolve_lookup_url(self, identity: PackageIdentity) -> Optional[str]:
        """Return the lookup URL, or None when the package is never published."""
        pass


class CratesIoProfileSource(ProfileSource):
    """Profiles of packages published on crates.io."""

    def __init__(self, url_template: str):
        self.url_template = url_template

    def resolve_lookup_url(self, identity: PackageIdentity) -> Optional[str]:
        return self.url_template.format(
            name=quote(identity.name, safe=""),
            version=quote(identity.version, safe=""),
        )


class RegistryProfileSource(ProfileSource):
    """Profiles of packages from alternative registries."""

    def __init__(self, url_template: str):
        self.url_template = url_template

    def resolve_lookup_url(self, identity: PackageIdentity) -> Optional[str]:
        index = identity.source
        for prefix in ("registry+", "sparse+"):
            if index.startswith(prefix):
                index = index[len(prefix):]
                break
        return self.url_template.format(
            index=index.rstrip("/"),
            name=quote(identity.name, safe=""),
            version=quote(identity.version, safe=""),
        )


class UnpublishedProfileSource(ProfileSource):
    """Git and path packages have no registry to publish a profile to."""

    def resolve_lookup_url(self, identity: PackageIdentity) -> Optional[str]:
        return None


def get_profile_sources(url_templates: Dict[str, str]) -> Dict[SourceKind, ProfileSource]:
    """
    Build the profile source table keyed by source kind.

    Args:
        url_templates: Mapping of ``"crates.io"`` and ``"registry"`` to URL
            templates with ``{name}``, ``{version}`` (and ``{index}``) fields
    """
    unpublished = UnpublishedProfileSource()
    return {
        SourceKind.CRATES_IO: CratesIoProfileSource(url_templates["crates.io"]),
        SourceKind.REGISTRY: RegistryProfileSource(url_templates["registry"]),
        SourceKind.GIT: unpublished,
        SourceKind.LOCAL: unpublished,
    }
