"""Tracking of installed packages."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

import msgpack

from soarpkg.package import ResolvedPackage, SoarPaths, parse_package_query

logger = logging.getLogger(__name__)

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_UNITS = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
_UNIT_EXPONENTS = {
    "": 0, "b": 0,
    "k": 1, "kb": 1, "kib": 1,
    "m": 2, "mb": 2, "mib": 2,
    "g": 3, "gb": 3, "gib": 3,
    "t": 4, "tb": 4, "tib": 4,
    "p": 5, "pb": 5, "pib": 5,
}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")


class NotInstalledError(Exception):
    """Raised when an operation needs a package that is not installed."""


def format_bytes(size: int) -> str:
    """Format a byte count with binary units."""
    value = float(size)
    for unit in _UNITS:
        if value < 1024 or unit == _UNITS[-1]:
            break
        value /= 1024
    if unit == "B":
        return f"{int(size)} B"
    return f"{value:.2f} {unit}"


def parse_size(text: str) -> Optional[int]:
    """Parse a human-readable size such as `1.5 MiB`; None if invalid."""
    match = _SIZE_RE.match(text or "")
    if not match:
        return None
    exponent = _UNIT_EXPONENTS.get(match.group(2).lower())
    if exponent is None:
        return None
    return int(round(float(match.group(1)) * 1024**exponent))


def _is_managed_by_soar(path: Path) -> bool:
    getxattr = getattr(os, "getxattr", None)
    if getxattr is None:
        return False
    try:
        return getxattr(path, "user.managed_by") == b"soar"
    except OSError:
        return False


class _Storage(Protocol):
    def get_packages(self, query: Any) -> Optional[list[ResolvedPackage]]: ...


@dataclass
class InstalledPackage:
    """A record of one installed package."""

    repo_name: str
    collection: str
    name: str
    family: Optional[str]
    bin_name: str
    version: str
    checksum: str
    size: int
    timestamp: datetime

    def full_name(self, join_char: str) -> str:
        prefix = f"{self.family}{join_char}" if self.family is not None else ""
        return f"{prefix}{self.name}"

    def get_install_dir(self, packages_path: Path) -> Path:
        return Path(packages_path) / f"{self.checksum[:8]}-{self.full_name('-')}"

    def get_install_path(self, packages_path: Path) -> Path:
        return self.get_install_dir(packages_path) / self.bin_name

    def _to_record(self) -> dict[str, Any]:
        return {
            "repo_name": self.repo_name,
            "collection": self.collection,
            "name": self.name,
            "family": self.family,
            "bin_name": self.bin_name,
            "version": self.version,
            "checksum": self.checksum,
            "size": self.size,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def _from_record(cls, record: dict[str, Any]) -> "InstalledPackage":
        data = dict(record)
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)


@dataclass
class InstalledPackages:
    """The persistent list of installed packages."""

    track_path: Path
    packages: list[InstalledPackage] = field(default_factory=list)

    @property
    def _file(self) -> Path:
        return Path(self.track_path) / "latest"

    @classmethod
    def load(cls, track_path: Path) -> "InstalledPackages":
        """Load the installation record, creating its directory if needed."""
        instance = cls(Path(track_path))
        instance._file.parent.mkdir(parents=True, exist_ok=True)
        if instance._file.exists():
            data = msgpack.unpackb(instance._file.read_bytes(), raw=False)
            instance.packages = [
                InstalledPackage._from_record(r) for r in data.get("packages", [])
            ]
        return instance

    def is_installed(self, package: ResolvedPackage) -> bool:
        name = package.package.full_name("-")
        return any(installed.full_name("-") == name for installed in self.packages)

    def find_package(self, package: ResolvedPackage) -> Optional[InstalledPackage]:
        name = package.package.full_name("-")
        return next(
            (
                installed
                for installed in self.packages
                if installed.repo_name == package.repo_name
                and installed.collection == package.collection
                and installed.full_name("-") == name
            ),
            None,
        )

    def register_package(self, resolved_package: ResolvedPackage, checksum: str) -> None:
        package = resolved_package.package
        record = InstalledPackage(
            repo_name=resolved_package.repo_name,
            collection=resolved_package.collection,
            name=package.name,
            family=package.variant,
            bin_name=package.bin_name,
            version=package.version,
            checksum=checksum,
            size=parse_size(package.size) or 0,
            timestamp=datetime.now(timezone.utc),
        )
        name = package.full_name("-")
        for index, installed in enumerate(self.packages):
            if installed.full_name("-") == name:
                self.packages[index] = record
                break
        else:
            self.packages.append(record)
        self.save()

    def unregister_package(self, installed_package: Any) -> None:
        """Forget every record sharing the given package's full name."""
        name = installed_package.full_name("-")
        self.packages = [p for p in self.packages if p.full_name("-") != name]
        self.save()

    def save(self) -> None:
        payload = {"packages": [p._to_record() for p in self.packages]}
        try:
            self._file.write_bytes(msgpack.packb(payload, use_bin_type=True))
        except OSError as exc:
            raise OSError(f"Failed to write to {self._file}: {exc}") from exc

    def summary(
        self, packages: Optional[Iterable[str]], storage: _Storage
    ) -> list[str]:
        """Describe installed packages and per-collection totals as lines."""
        if packages is None:
            selected = list(self.packages)
        else:
            selected = []
            for query_text in packages:
                query = parse_package_query(query_text)
                for resolved in storage.get_packages(query) or []:
                    found = self.find_package(resolved)
                    if found is not None:
                        selected.append(found)

        if not selected:
            raise LookupError("No installed packages")

        totals: dict[str, tuple[int, int]] = {}
        lines = []
        for pkg in selected:
            lines.append(
                f"- [{pkg.collection}] {pkg.name}:{pkg.name}-{pkg.version} "
                f"({pkg.timestamp.strftime(_TIME_FORMAT)}) ({format_bytes(pkg.size)})"
            )
            count, size = totals.get(pkg.collection, (0, 0))
            totals[pkg.collection] = (count + 1, size + pkg.size)

        lines.append(f"{'':<2} Installed:")
        for collection, (count, size) in totals.items():
            lines.append(f"{'':<4} {collection}: {count} ({format_bytes(size)})")

        total_count = sum(count for count, _ in totals.values())
        total_size = sum(size for _, size in totals.values())
        lines.append(f"{'':<2} Total: {total_count} ({format_bytes(total_size)})")

        for line in lines:
            logger.info(line)
        return lines

    def use_package(self, resolved_package: ResolvedPackage, paths: SoarPaths) -> Path:
        """Point the binary link at the installed package; return the link path."""
        installed = self.find_package(resolved_package)
        if installed is None:
            raise NotInstalledError(resolved_package.package.full_name("/"))

        install_path = resolved_package.package.get_install_path(
            paths.packages_path, installed.checksum
        )
        symlink_path = Path(paths.bin_path) / installed.bin_name

        if symlink_path.exists():
            if not _is_managed_by_soar(symlink_path):
                raise FileExistsError(f"{symlink_path} is not managed by soar")
            symlink_path.unlink()

        try:
            symlink_path.symlink_to(install_path)
        except OSError as exc:
            raise OSError(
                f"Failed to link {install_path} to {symlink_path}: {exc}"
            ) from exc
        return symlink_path