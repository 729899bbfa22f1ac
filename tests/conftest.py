"""
Shared fixtures for openfare-rs tests.
"""

import inspect
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

from openfare_rs.cli_config import NetworkConfig, reset_config
from openfare_rs.error_handling import setup_error_handling
from openfare_rs.graph import ResolvedDependency, ResolvedPackage, build
from openfare_rs.package import DependencyKind, PackageIdentity
from openfare_rs.profile_client import ProfileClient, RetryPolicy
from openfare_rs.profile_sources import get_profile_sources

CRATES_IO = "registry+https://github.com/rust-lang/crates.io-index"

SAMPLE_CARGO_LOCK = """\
# This file is automatically @generated by Cargo.
# It is not intended for manual editing.
version = 3

[[package]]
name = "app"
version = "0.1.0"
dependencies = [
 "log",
 "serde 1.0.0",
 "serde_json",
]

[[package]]
name = "log"
version = "0.4.20"
source = "registry+https://github.com/rust-lang/crates.io-index"

[[package]]
name = "serde"
version = "1.0.0"
source = "registry+https://github.com/rust-lang/crates.io-index"
dependencies = [
 "serde_derive",
]

[[package]]
name = "serde"
version = "0.9.15"
source = "registry+https://github.com/rust-lang/crates.io-index"

[[package]]
name = "serde_derive"
version = "1.0.0"
source = "registry+https://github.com/rust-lang/crates.io-index"

[[package]]
name = "serde_json"
version = "1.0.100"
source = "registry+https://github.com/rust-lang/crates.io-index"
dependencies = [
 "serde 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)",
 "serde 0.9.15",
]
"""


def crate(name: str, version: str = "1.0.0", source: str = CRATES_IO) -> PackageIdentity:
    return PackageIdentity(name=name, version=version, source=source)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep user config files and OPENFARE_RS_* variables out of tests."""
    for key in list(os.environ):
        if key.startswith("OPENFARE_RS_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    reset_config()
    setup_error_handling()
    yield
    reset_config()


@pytest.fixture
def temp_dir(tmp_path) -> Path:
    return tmp_path


@pytest.fixture
def diamond():
    """A -> {B, C}; B -> D; C -> D, with A a local package."""
    a = PackageIdentity("A", "0.1.0")
    b, c, d = crate("B"), crate("C"), crate("D")
    graph = build(
        [
            ResolvedPackage(a, (ResolvedDependency(b), ResolvedDependency(c))),
            ResolvedPackage(b, (ResolvedDependency(d),)),
            ResolvedPackage(c, (ResolvedDependency(d),)),
            ResolvedPackage(d),
        ]
    )
    return graph, {"A": a, "B": b, "C": c, "D": d}


@pytest.fixture
def chain():
    """A -> B, with A a local package."""
    a = PackageIdentity("A", "0.1.0")
    b = crate("B")
    graph = build([ResolvedPackage(a, (ResolvedDependency(b),)), ResolvedPackage(b)])
    return graph, {"A": a, "B": b}


@pytest.fixture
def mixed_kinds():
    """Root with a normal, a build and a dev dependency."""
    root = PackageIdentity("root", "0.1.0")
    normal, build_dep, dev = crate("normal-dep"), crate("build-dep"), crate("dev-dep")
    graph = build(
        [
            ResolvedPackage(
                root,
                (
                    ResolvedDependency(normal, DependencyKind.NORMAL),
                    ResolvedDependency(build_dep, DependencyKind.BUILD),
                    ResolvedDependency(dev, DependencyKind.DEV),
                ),
            ),
            ResolvedPackage(normal),
            ResolvedPackage(build_dep),
            ResolvedPackage(dev),
        ]
    )
    return graph, root


@pytest.fixture
def sample_cargo_lock(temp_dir) -> Path:
    lockfile = temp_dir / "Cargo.lock"
    lockfile.write_text(SAMPLE_CARGO_LOCK)
    return lockfile


@pytest.fixture
def sample_metadata() -> Dict[str, Any]:
    """Trimmed ``cargo metadata --format-version 1`` output."""
    return {
        "packages": [
            {"id": "app 0.1.0 (path+file:///work/app)", "name": "app", "version": "0.1.0", "source": None},
            {"id": "serde 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)", "name": "serde", "version": "1.0.0", "source": CRATES_IO},
            {"id": "cc 1.0.83 (registry+https://github.com/rust-lang/crates.io-index)", "name": "cc", "version": "1.0.83", "source": CRATES_IO},
            {"id": "tempfile 3.8.0 (registry+https://github.com/rust-lang/crates.io-index)", "name": "tempfile", "version": "3.8.0", "source": CRATES_IO},
        ],
        "workspace_members": ["app 0.1.0 (path+file:///work/app)"],
        "resolve": {
            "root": "app 0.1.0 (path+file:///work/app)",
            "nodes": [
                {
                    "id": "app 0.1.0 (path+file:///work/app)",
                    "deps": [
                        {
                            "name": "serde",
                            "pkg": "serde 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)",
                            "dep_kinds": [{"kind": None, "target": None}],
                        },
                        {
                            "name": "cc",
                            "pkg": "cc 1.0.83 (registry+https://github.com/rust-lang/crates.io-index)",
                            "dep_kinds": [{"kind": "build", "target": None}],
                        },
                        {
                            "name": "tempfile",
                            "pkg": "tempfile 3.8.0 (registry+https://github.com/rust-lang/crates.io-index)",
                            "dep_kinds": [{"kind": "dev", "target": None}],
                        },
                    ],
                },
                {"id": "serde 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)", "deps": []},
                {"id": "cc 1.0.83 (registry+https://github.com/rust-lang/crates.io-index)", "deps": []},
                {"id": "tempfile 3.8.0 (registry+https://github.com/rust-lang/crates.io-index)", "deps": []},
            ],
        },
    }


@pytest.fixture
def profile_handler():
    """
    Build an httpx handler serving profiles by package name.

    Values may be a profile dict, an HTTP status code, an httpx exception
    class, or a coroutine function returning one of those.
    """

    def factory(profiles: Dict[str, Any], calls: Optional[List[str]] = None):
        async def handler(request: httpx.Request) -> httpx.Response:
            name = request.url.path.rstrip("/").split("/")[-2]
            if calls is not None:
                calls.append(name)
            entry = profiles.get(name)
            if inspect.iscoroutinefunction(entry):
                entry = await entry()
            if entry is None:
                return httpx.Response(404)
            if isinstance(entry, int):
                return httpx.Response(entry)
            if isinstance(entry, type) and issubclass(entry, httpx.HTTPError):
                raise entry("simulated failure", request=request)
            if isinstance(entry, str):
                return httpx.Response(200, text=entry)
            return httpx.Response(200, json=entry)

        return handler

    return factory


@pytest.fixture
def recorded_sleeps() -> List[float]:
    return []


@pytest.fixture
def make_profile_client(recorded_sleeps):
    """Build a ProfileClient on a mock transport that never really sleeps."""

    async def fake_sleep(delay: float) -> None:
        recorded_sleeps.append(delay)

    def factory(handler, retries: int = 0, retry_policy: Optional[RetryPolicy] = None):
        return ProfileClient(
            get_profile_sources(NetworkConfig().profile_url_templates),
            timeout=1.0,
            retry_policy=retry_policy or RetryPolicy.from_retries(retries),
            transport=httpx.MockTransport(handler),
            sleep=fake_sleep,
        )

    return factory
