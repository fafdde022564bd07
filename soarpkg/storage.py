"""In-memory index of repository packages and the operations built on it."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

import requests

from soarpkg.fetcher import Repository
from soarpkg.install import Installer
from soarpkg.installed import InstalledPackage, InstalledPackages, format_bytes
from soarpkg.package import (
    Package,
    PackageQuery,
    ResolvedPackage,
    SoarPaths,
    parse_package_query,
)
from soarpkg.remove import Remover
from soarpkg.run import Runner
from soarpkg.selection import select_single_package

logger = logging.getLogger(__name__)

_LARGE_FILE = 1_048_576
_TIMEOUT = 60
_CHUNK_SIZE = 64 * 1024

PackageEntry = Union[Package, Mapping[str, Any]]
Collections = dict[str, dict[str, list[Package]]]


def _as_package(entry: PackageEntry) -> Package:
    return entry if isinstance(entry, Package) else Package.from_dict(entry)


def _variant_key(resolved: ResolvedPackage) -> tuple[bool, str]:
    variant = resolved.package.variant
    return (variant is not None, variant or "")


def _to_resolved(installed: InstalledPackage) -> ResolvedPackage:
    return ResolvedPackage(
        repo_name=installed.repo_name,
        collection=installed.collection,
        package=Package(
            name=installed.name,
            bin_name=installed.bin_name,
            version=installed.version,
            variant=installed.family,
        ),
    )


@dataclass
class PackageStorage:
    """Packages of all loaded repositories, grouped by collection and name."""

    paths: SoarPaths = field(default_factory=SoarPaths)
    repositories: Sequence[Repository] = ()
    ask: Callable[[str], str] = input
    parallel: bool = False
    parallel_limit: int = 2
    checksum_func: Optional[Callable[[Path], str]] = None
    file_type: Optional[Callable[[Path], Optional[str]]] = None
    repository: dict[str, Collections] = field(default_factory=dict, init=False)

    def add_repository(
        self,
        repo_name: str,
        packages: Mapping[str, Mapping[str, Iterable[PackageEntry]]],
    ) -> None:
        """Register (or replace) the packages of one repository."""
        self.repository[repo_name] = {
            collection: {name: [_as_package(p) for p in pkgs] for name, pkgs in by_name.items()}
            for collection, by_name in packages.items()
        }

    def resolve_package(self, package_name: str, yes: bool) -> ResolvedPackage:
        """Find one package for a query, asking the user when several match."""
        packages = self.get_packages(parse_package_query(package_name))
        if not packages:
            raise LookupError(f"Package {package_name} not found")
        packages.sort(key=_variant_key)
        if yes or len(packages) == 1:
            return packages[0]
        return select_single_package(packages, self.ask)

    def _installer(self, package: ResolvedPackage) -> Installer:
        options: dict[str, Any] = {"ask": self.ask, "file_type": self.file_type}
        if self.checksum_func is not None:
            options["checksum_func"] = self.checksum_func
        return Installer(package, self.paths, **options)

    def install_packages(
        self,
        package_names: Sequence[str],
        force: bool,
        installed_packages: InstalledPackages,
        portable: Optional[str],
        portable_home: Optional[str],
        portable_config: Optional[str],
        yes: bool,
        quiet: bool,
    ) -> int:
        """Install the named packages; return how many were installed."""
        resolved: list[ResolvedPackage] = []
        for name in package_names:
            try:
                resolved.append(self.resolve_package(name, yes))
            except LookupError as exc:
                logger.error("%s", exc)

        to_install: list[ResolvedPackage] = []
        for package in resolved:
            if installed_packages.is_installed(package):
                logger.warning(
                    "%s is already installed - %s",
                    package.package.full_name("/"),
                    "reinstalling" if force else "skipping",
                )
                if not force:
                    continue
            to_install.append(package)

        total = len(to_install)

        def install_one(item: tuple[int, ResolvedPackage]) -> bool:
            idx, package = item
            try:
                self._installer(package).execute(
                    idx,
                    total,
                    installed_packages,
                    force,
                    portable,
                    portable_home,
                    portable_config,
                    yes,
                )
            except Exception as exc:  # every failure is reported and skipped
                logger.error("%s", exc)
                return False
            if not quiet:
                logger.info("Installing %d/%d", idx + 1, total)
            return True

        items = list(enumerate(to_install))
        if self.parallel:
            with ThreadPoolExecutor(max_workers=max(1, self.parallel_limit)) as pool:
                outcomes = list(pool.map(install_one, items))
        else:
            outcomes = [install_one(item) for item in items]

        installed_count = sum(outcomes)
        logger.info("Installed %d/%d packages", installed_count, total)
        return installed_count

    def remove_packages(
        self,
        package_names: Sequence[str],
        installed_packages: InstalledPackages,
        exact: bool,
    ) -> list[InstalledPackage]:
        """Remove installed packages matching the names; return the removed records."""
        to_remove: list[InstalledPackage] = []
        for package_name in package_names:
            query = parse_package_query(package_name)
            matching = [
                pkg
                for pkg in installed_packages.packages
                if pkg.name == query.name
                and (query.collection is None or pkg.collection == query.collection)
                and self._family_matches(query.variant, pkg.family, exact)
            ]
            if matching:
                to_remove.extend(matching)
            else:
                logger.error("%s is not installed.", package_name)

        for installed in to_remove:
            Remover(_to_resolved(installed), self.paths).execute(installed_packages)
        return to_remove

    @staticmethod
    def _family_matches(
        query_family: Optional[str], package_family: Optional[str], exact: bool
    ) -> bool:
        if query_family is None:
            return package_family is None or not exact
        return package_family is not None and query_family == package_family

    def _iter_all(self) -> Iterable[tuple[str, str, Package]]:
        for repo_name, collections in self.repository.items():
            for collection, by_name in collections.items():
                for packages in by_name.values():
                    for package in packages:
                        yield repo_name, collection, package

    def list_packages(self, collection: Optional[str]) -> list[ResolvedPackage]:
        """All packages, optionally of one collection, sorted by collection and name."""
        packages = [
            ResolvedPackage(repo_name=repo, collection=key, package=package)
            for repo, key, package in self._iter_all()
            if collection is None or key == collection
        ]
        packages.sort(key=lambda r: (r.collection, r.package.full_name("-")))
        return packages

    def get_packages(self, query: PackageQuery) -> Optional[list[ResolvedPackage]]:
        """Packages exactly matching the query, or None if there are none."""
        pkg_name = query.name.strip()
        found = [
            ResolvedPackage(repo_name=repo_name, collection=key, package=pkg)
            for repo_name, collections in self.repository.items()
            for key, by_name in collections.items()
            if query.collection is None or key == query.collection
            for pkg in by_name.get(pkg_name, [])
            if pkg.name.lower() == pkg_name
            and (query.variant is None or pkg.variant == query.variant)
        ]
        return found or None

    def search(self, query: str, case_sensitive: bool) -> list[ResolvedPackage]:
        """Packages whose name or description contains the query, best first."""
        parsed = parse_package_query(query)
        needle = parsed.name.strip()
        if not case_sensitive:
            needle = needle.lower()

        scored: list[tuple[int, ResolvedPackage]] = []
        for repo_name, collection, pkg in self._iter_all():
            name, description = pkg.name, pkg.description
            if not case_sensitive:
                name, description = name.lower(), description.lower()

            if name == needle:
                score = 5
            elif needle in name:
                score = 3
            elif needle in description:
                score = 1
            else:
                continue
            if parsed.variant is not None and pkg.variant != parsed.variant:
                continue
            scored.append(
                (score, ResolvedPackage(repo_name=repo_name, collection=collection, package=pkg))
            )

        scored.sort(key=lambda item: item[0], reverse=True)
        return [resolved for score, resolved in scored if score > 0]

    def inspect(self, package_name: str, inspect_type: str) -> str:
        """Fetch and return the build log or build script of a package."""
        package = self.resolve_package(package_name, False).package
        if inspect_type == "log":
            url = package.build_log
        elif package.build_script.startswith("https://github.com"):
            url = package.build_script.replace("/tree/", "/raw/refs/heads/", 1).replace(
                "/blob/", "/raw/refs/heads/", 1
            )
        else:
            url = package.build_script

        with requests.get(url, stream=True, timeout=_TIMEOUT) as response:
            if not 200 <= response.status_code < 300:
                raise RuntimeError(
                    f"Error fetching build {inspect_type} from {url} [{response.status_code}]"
                )

            content_length = int(response.headers.get("Content-Length") or 0)
            if content_length > _LARGE_FILE:
                answer = self.ask(
                    f"The build {inspect_type} file is too large "
                    f"({format_bytes(content_length)}). "
                    "Do you really want to download and view it (y/N)? "
                )
                if answer.strip().lower() != "y":
                    raise RuntimeError("")

            logger.info(
                "Fetching %s from %s [%s]", inspect_type, url, format_bytes(content_length)
            )
            try:
                content = b"".join(response.iter_content(_CHUNK_SIZE))
            except requests.RequestException as exc:
                raise RuntimeError(f"Failed to read chunk: {exc}") from exc

        output = content.decode("utf-8", errors="replace").replace("\r", "\n")
        logger.info("\n%s", output)
        return output

    def _checksum_validator(self) -> Optional[Callable[[str, Path], bool]]:
        func = self.checksum_func
        if func is None:
            return None
        return lambda bsum, path: func(path) == bsum

    def run(self, command: Sequence[str], yes: bool) -> int:
        """Download a package into the cache and run it; return its exit code."""
        if not command:
            raise ValueError("no command given")
        cache_path = Path(self.paths.cache_path)
        cache_path.mkdir(parents=True, exist_ok=True)

        package_name, args = command[0], list(command[1:])
        try:
            resolved = self.resolve_package(package_name, yes)
        except LookupError:
            resolved = self._remote_package(package_name)
            install_path = cache_path / parse_package_query(package_name).name
        else:
            install_path = cache_path / resolved.package.bin_name

        runner = Runner(
            resolved, install_path, args, checksum_validator=self._checksum_validator()
        )
        return runner.execute()

    def _remote_package(self, package_name: str) -> ResolvedPackage:
        query = parse_package_query(package_name)
        package = Package(name=query.name, variant=query.variant)

        base_url = next(
            (
                url
                for repo in self.repositories
                for url in (
                    [repo.sources[query.collection]]
                    if query.collection is not None and query.collection in repo.sources
                    else []
                    if query.collection is not None
                    else list(repo.sources.values())[:1]
                )
            ),
            None,
        )
        if base_url is None:
            raise LookupError("No repository found for the package")

        collection = query.collection
        if collection is None:
            collection = next(
                (key for repo in self.repositories for key in list(repo.sources)[:1]), ""
            )

        package.download_url = f"{base_url}/{package.full_name('/')}"
        return ResolvedPackage(repo_name="", collection=collection, package=package)