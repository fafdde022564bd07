"""The package registry: loaded repositories plus installed packages."""

from __future__ import annotations

import logging
import shutil
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

import msgpack

from soarpkg.fetcher import MetadataFetcher, Repository
from soarpkg.image import get_package_image_string
from soarpkg.installed import InstalledPackages, NotInstalledError
from soarpkg.loader import MetadataLoader
from soarpkg.package import SoarPaths, parse_package_query
from soarpkg.storage import PackageStorage
from soarpkg.update import Updater

logger = logging.getLogger(__name__)

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_INDENT = 32


def _decode_packages(content: bytes) -> dict[str, dict[str, list[dict[str, Any]]]]:
    """Decode cached metadata, checking its collection/name/package structure."""
    data = msgpack.unpackb(content, raw=False)
    valid = isinstance(data, dict) and all(
        isinstance(by_name, dict)
        and all(
            isinstance(pkgs, list) and all(isinstance(p, dict) for p in pkgs)
            for pkgs in by_name.values()
        )
        for by_name in data.values()
    )
    if not valid:
        raise ValueError("Metadata has an unexpected structure")
    return data


def load_or_fetch_packages(
    repositories: Sequence[Repository],
    loader: Any,
    fetcher: Any,
    storage: PackageStorage,
) -> None:
    """Load every repository's metadata into storage, fetching it when missing."""
    for repo in repositories:
        path = Path(repo.path)
        if path.exists():
            content = loader.execute(repo, fetcher)
        else:
            checksum = fetcher.checksum(repo)
            checksum_path = path.with_name(f"{repo.name}.remote.bsum")
            checksum_path.parent.mkdir(parents=True, exist_ok=True)
            checksum_path.write_bytes(checksum)
            content = fetcher.execute(repo)

        try:
            packages = _decode_packages(content)
        except (ValueError, msgpack.exceptions.UnpackException):
            logger.error("Metadata is invalid. Refetching...")
            packages = _decode_packages(fetcher.execute(repo))
        storage.add_repository(repo.name, packages)


def _wrap(text: str, width: int, indent: int) -> str:
    lines = textwrap.wrap(text, max(width, 20)) or [text]
    return ("\n" + " " * indent).join(lines)


@dataclass
class PackageRegistry:
    """Repository packages together with the record of installed ones."""

    storage: PackageStorage
    installed_packages: InstalledPackages
    paths: SoarPaths = field(default_factory=SoarPaths)
    search_limit: int = 20
    show_images: bool = True
    font_width: int = 8
    font_height: int = 16

    @classmethod
    def create(cls, repositories: Sequence[Repository], paths: SoarPaths) -> "PackageRegistry":
        """Load installed packages and all repository metadata."""
        storage = PackageStorage(paths=paths, repositories=list(repositories))
        installed = InstalledPackages.load(paths.install_track_path)
        load_or_fetch_packages(
            repositories, MetadataLoader(), MetadataFetcher(paths.registry_path), storage
        )
        return cls(storage=storage, installed_packages=installed, paths=paths)

    def install_packages(
        self,
        package_names: Sequence[str],
        force: bool,
        portable: Optional[str],
        portable_home: Optional[str],
        portable_config: Optional[str],
        yes: bool,
        quiet: bool,
    ) -> int:
        return self.storage.install_packages(
            package_names,
            force,
            self.installed_packages,
            portable,
            portable_home,
            portable_config,
            yes,
            quiet,
        )

    def remove_packages(self, package_names: Sequence[str], exact: bool):
        return self.storage.remove_packages(
            package_names, self.installed_packages, exact
        )

    def search(
        self, package_name: str, case_sensitive: bool, limit: Optional[int]
    ) -> list[str]:
        """Describe the best matches, at most `limit` of them."""
        limit = self.search_limit if limit is None else limit
        result = self.storage.search(package_name, case_sensitive)
        if not result:
            raise LookupError("No packages found")

        lines = []
        for pkg in result[:limit]:
            mark = "+" if self.installed_packages.is_installed(pkg) else "-"
            line = (
                f"[{mark}] [{pkg.collection}] {pkg.package.full_name('/')}: "
                f"{pkg.package.description} ({pkg.package.size})"
            )
            logger.info(line)
            lines.append(line)

        if len(result) > limit:
            logger.info("\x1b[5mShowing %d of %d results\x1b[0m", limit, len(result))
        return lines

    def query(self, package_name: str) -> list[list[tuple[str, str]]]:
        """Show detailed information; return the displayed fields per package."""
        result = self.storage.get_packages(parse_package_query(package_name))
        if not result:
            raise LookupError("No packages found")

        shown_all = []
        for pkg in result:
            package = pkg.package
            installed = self.installed_packages.find_package(pkg)
            data = [
                (
                    "Name",
                    f"{package.bin_name} ({package.full_name('/')}#{pkg.collection})",
                ),
                ("Description", package.description),
                ("Homepage", package.web_url),
                ("Source", package.src_url),
                ("Version", package.version),
                ("Checksum", package.bsum),
                ("Size", package.size),
                ("Download URL", package.download_url),
                ("Build Date", package.build_date),
                ("Build Log", package.build_log),
                ("Build Script", package.build_script),
                ("Note", package.note),
                ("Category", package.category),
                ("Extra Bins", package.extra_bins),
            ]
            if installed is not None:
                install_path = package.get_install_path(
                    self.paths.packages_path, installed.checksum
                )
                data.append(("Install Path", str(install_path)))
                data.append(("Install Date", installed.timestamp.strftime(_TIME_FORMAT)))

            if self.show_images:
                try:
                    image = get_package_image_string(
                        pkg, self.paths.registry_path, self.font_width, self.font_height
                    )
                except (OSError, ValueError):
                    image = ""
                logger.info("%s\x1b[15A\x1b[%dC", image, _INDENT)

            shown = [(key, value) for key, value in data if value and value != "null"]
            width = shutil.get_terminal_size().columns - _INDENT
            for key, value in shown:
                logger.info("\x1b[%dC%s", _INDENT, _wrap(f"{key}: {value}", width, _INDENT))
            logger.info("\x1b[1B")
            shown_all.append(shown)
        return shown_all

    def update(self, package_names: Optional[Sequence[str]]) -> int:
        updater = Updater(package_names, checksum_func=self.storage.checksum_func)
        return updater.execute(self)

    def info(self, package_names: Optional[Sequence[str]]):
        """Query a single package, or summarise installed packages."""
        if package_names is not None and len(package_names) == 1:
            return self.query(package_names[0])
        return self.installed_packages.summary(package_names, self.storage)

    def inspect(self, package_name: str, inspect_type: str) -> str:
        return self.storage.inspect(package_name, inspect_type)

    def run(self, command: Sequence[str], yes: bool) -> int:
        return self.storage.run(command, yes)

    def use_package(self, package_name: str) -> Optional[Path]:
        """Link an installed package into the binary path, installing it if needed."""
        resolved = self.storage.resolve_package(package_name, False)
        try:
            link = self.installed_packages.use_package(resolved, self.paths)
        except NotInstalledError:
            logger.error("Package is not yet installed.")
            self.storage.install_packages(
                [resolved.package.full_name("/")],
                True,
                self.installed_packages,
                None,
                None,
                None,
                False,
                False,
            )
            return None
        logger.info("%s is linked to binary path", package_name)
        return link

    def list(self, collection: Optional[str]) -> list[str]:
        """Describe every package, optionally of one collection."""
        packages = self.storage.list_packages(collection)
        if not packages:
            raise LookupError("No packages found")
        lines = []
        for resolved in packages:
            package = resolved.package
            mark = "+" if self.installed_packages.is_installed(resolved) else "-"
            line = (
                f"[{mark}] [{resolved.collection}] {package.full_name('/')}:"
                f"{package.name}-{package.version} ({package.size})"
            )
            logger.info(line)
            lines.append(line)
        return lines