"""
Loaders for resolved Cargo dependency descriptions.

Supports ``Cargo.lock`` files and the JSON emitted by
``cargo metadata --format-version 1``. Both produce a ``LockDescription``
that the graph builder consumes.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import toml

from .error_handling import ErrorCategory, LockfileError, get_error_handler
from .graph import ResolvedDependency, ResolvedPackage
from .package import LOCAL_SOURCE, DependencyKind, PackageIdentity

MAX_LOCKFILE_BYTES = 50 * 1024 * 1024

# "name", "name version" or "name version (source)"
_DEPENDENCY_REFERENCE = re.compile(r"^(?P<name>\S+)(?: (?P<version>\S+))?(?: \((?P<source>.+)\))?$")


@dataclass(frozen=True)
class LockDescription:
    """Resolved packages plus the identities reports are produced for."""

    packages: Tuple[ResolvedPackage, ...]
    roots: Tuple[PackageIdentity, ...] = field(default_factory=tuple)


def _read_text(path: Path) -> str:
    try:
        size = path.stat().st_size
    except OSError as e:
        raise LockfileError(f"Cannot access {path}: {e}") from e
    if size > MAX_LOCKFILE_BYTES:
        raise LockfileError(f"{path.name} is too large: {size} bytes")
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise LockfileError(f"Cannot read {path}: {e}") from e


def _report_parse_error(message: str, function: str, exception: Exception) -> None:
    get_error_handler().error(
        ErrorCategory.LOCKFILE, message, "lockfile", function, exception=exception
    )


class _PackageIndex:
    """Resolves Cargo.lock dependency references to identities."""

    def __init__(self, identities: List[PackageIdentity]):
        self._by_name: Dict[str, List[PackageIdentity]] = {}
        for identity in identities:
            self._by_name.setdefault(identity.name, []).append(identity)

    def resolve(self, reference: str, parent: PackageIdentity) -> PackageIdentity:
        match = _DEPENDENCY_REFERENCE.match(reference.strip())
        if not match:
            raise LockfileError(f"{parent}: malformed dependency reference {reference!r}")

        candidates = [
            identity
            for identity in self._by_name.get(match.group("name"), [])
            if match.group("version") in (None, identity.version)
            and match.group("source") in (None, identity.source)
        ]
        if not candidates:
            raise LockfileError(
                f"{parent} depends on {reference!r}, which is not in the lockfile"
            )
        if len(candidates) > 1:
            raise LockfileError(f"{parent}: dependency reference {reference!r} is ambiguous")
        return candidates[0]


def load_cargo_lock(lockfile: Union[str, Path]) -> LockDescription:
    """
    Parse a Cargo.lock file (or its text) into a lock description.

    Cargo.lock records no dependency kinds, so every edge is ``normal``.
    Roots are the local packages no other package depends on.

    Raises:
        LockfileError: If the lockfile is unreadable or inconsistent
    """
    if isinstance(lockfile, Path):
        content = _read_text(lockfile)
    else:
        content = lockfile

    try:
        data = toml.loads(content)
    except toml.TomlDecodeError as e:
        _report_parse_error(f"Invalid TOML format in Cargo.lock: {e}", "load_cargo_lock", e)
        raise LockfileError(f"Invalid TOML format: {e}") from e

    raw_packages = data.get("package", [])
    if not isinstance(raw_packages, list):
        raise LockfileError("Cargo.lock 'package' entries must be an array of tables")

    entries: List[Tuple[PackageIdentity, List[str]]] = []
    for raw in raw_packages:
        if not isinstance(raw, dict):
            continue
        try:
            identity = PackageIdentity(
                name=str(raw.get("name", "")).strip(),
                version=str(raw.get("version", "")).strip(),
                source=raw.get("source") or LOCAL_SOURCE,
            )
        except ValueError as e:
            raise LockfileError(f"Invalid package entry in Cargo.lock: {e}") from e
        entries.append((identity, [str(dep) for dep in raw.get("dependencies", [])]))

    index = _PackageIndex([identity for identity, _ in entries])
    packages = []
    depended_on = set()
    for identity, references in entries:
        dependencies = []
        for reference in references:
            target = index.resolve(reference, identity)
            depended_on.add(target)
            dependencies.append(ResolvedDependency(target, DependencyKind.NORMAL))
        packages.append(ResolvedPackage(identity, tuple(dependencies)))

    roots = tuple(
        package.identity
        for package in packages
        if package.identity.source == LOCAL_SOURCE
        and package.identity not in depended_on
    )
    return LockDescription(packages=tuple(packages), roots=roots)


def load_cargo_metadata(metadata: Union[Path, Dict[str, Any]]) -> LockDescription:
    """
    Convert ``cargo metadata --format-version 1`` output to a lock description.

    Raises:
        LockfileError: If the document has no resolve graph or is inconsistent
    """
    if isinstance(metadata, Path):
        try:
            metadata = json.loads(_read_text(metadata))
        except json.JSONDecodeError as e:
            _report_parse_error(f"Invalid cargo metadata JSON: {e}", "load_cargo_metadata", e)
            raise LockfileError(f"Invalid JSON: {e}") from e

    if not isinstance(metadata, dict):
        raise LockfileError("cargo metadata document must be a JSON object")

    identities: Dict[str, PackageIdentity] = {}
    for raw in metadata.get("packages") or []:
        try:
            identities[raw["id"]] = PackageIdentity(
                name=str(raw.get("name", "")).strip(),
                version=str(raw.get("version", "")).strip(),
                source=raw.get("source") or LOCAL_SOURCE,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LockfileError(f"Invalid package entry in cargo metadata: {e}") from e

    resolve = metadata.get("resolve")
    if not isinstance(resolve, dict):
        raise LockfileError(
            "cargo metadata has no resolve graph; run it without --no-deps"
        )

    def lookup(package_id: Optional[str]) -> PackageIdentity:
        if package_id not in identities:
            raise LockfileError(f"cargo metadata references unknown package id {package_id!r}")
        return identities[package_id]

    packages = []
    for node in resolve.get("nodes") or []:
        identity = lookup(node.get("id"))
        dependencies = []
        for dep in node.get("deps") or []:
            target = lookup(dep.get("pkg"))
            try:
                kinds = [
                    DependencyKind.parse(entry.get("kind"))
                    for entry in dep.get("dep_kinds") or [{"kind": None}]
                ]
            except ValueError as e:
                raise LockfileError(f"{identity}: {e}") from e
            for kind in dict.fromkeys(kinds):
                dependencies.append(ResolvedDependency(target, kind))
        packages.append(ResolvedPackage(identity, tuple(dependencies)))

    if resolve.get("root"):
        roots: Tuple[PackageIdentity, ...] = (lookup(resolve["root"]),)
    else:
        roots = tuple(lookup(member) for member in metadata.get("workspace_members") or [])

    return LockDescription(packages=tuple(packages), roots=roots)


def load_lock_description(file_path: Union[str, Path]) -> LockDescription:
    """
    Load a lock description, choosing the loader from the file name.

    Raises:
        LockfileError: If the file type is unsupported or cannot be parsed
    """
    path = Path(file_path)
    if not path.is_file():
        raise LockfileError(f"File does not exist: {path}")

    if path.name.lower() == "cargo.lock" or path.suffix.lower() == ".lock":
        return load_cargo_lock(path)
    if path.suffix.lower() == ".json":
        return load_cargo_metadata(path)

    raise LockfileError(f"Unsupported file type: {path.name}")
