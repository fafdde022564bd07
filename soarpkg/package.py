"""Package metadata, resolved packages and package queries."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional


def _data_home() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    return Path(xdg) if xdg else Path.home() / ".local" / "share"


@dataclass(frozen=True)
class SoarPaths:
    """Filesystem locations used by the package manager."""

    root: Path = field(default_factory=lambda: _data_home() / "soar")
    data_path: Path = field(default_factory=_data_home)

    @property
    def bin_path(self) -> Path:
        return self.root / "bin"

    @property
    def packages_path(self) -> Path:
        return self.root / "packages"

    @property
    def install_track_path(self) -> Path:
        return self.root / "installs"

    @property
    def registry_path(self) -> Path:
        return self.root / "registry"

    @property
    def cache_path(self) -> Path:
        return self.root / "cache"


@dataclass
class Package:
    """Metadata of a single package as published by a repository."""

    name: str = ""
    bin_name: str = ""
    description: str = ""
    note: str = ""
    version: str = ""
    download_url: str = ""
    size: str = ""
    bsum: str = ""
    build_date: str = ""
    src_url: str = ""
    web_url: str = ""
    build_script: str = ""
    build_log: str = ""
    category: str = ""
    extra_bins: str = ""
    icon: str = ""
    bin_id: Optional[str] = None
    variant: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Package":
        """Build a package from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def full_name(self, join_char: str) -> str:
        prefix = f"{self.variant}{join_char}" if self.variant is not None else ""
        return f"{prefix}{self.name}"

    def get_install_dir(self, packages_path: Path, checksum: str) -> Path:
        if len(checksum) < 8:
            raise ValueError(f"checksum too short: {checksum!r}")
        return Path(packages_path) / f"{checksum[:8]}-{self.full_name('-')}"

    def get_install_path(self, packages_path: Path, checksum: str) -> Path:
        return self.get_install_dir(packages_path, checksum) / self.bin_name


@dataclass
class ResolvedPackage:
    """A package together with the repository and collection it came from."""

    repo_name: str = ""
    collection: str = ""
    package: Package = field(default_factory=Package)


@dataclass
class PackageQuery:
    """A parsed `[variant/]name[#collection]` query."""

    name: str
    variant: Optional[str] = None
    collection: Optional[str] = None


def parse_package_query(query: str) -> PackageQuery:
    """Parse a query of the form `[variant/]name[#collection]`."""
    collection: Optional[str] = None
    base = query
    if "#" in query:
        base, rest = query.rsplit("#", 1)
        collection = rest.lower() if rest else None

    variant: Optional[str] = None
    name = base
    if "/" in base:
        variant, name = base.split("/", 1)

    return PackageQuery(name=name, variant=variant, collection=collection)