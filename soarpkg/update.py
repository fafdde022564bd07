"""Updating installed packages whose published checksum changed."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from soarpkg.install import Installer
from soarpkg.package import ResolvedPackage, parse_package_query

logger = logging.getLogger(__name__)


@dataclass
class Updater:
    """Reinstalls packages whose installed checksum differs from the repository."""

    package_names: Optional[Sequence[str]] = None
    checksum_func: Optional[Callable[[Path], str]] = None

    def execute(self, registry: Any) -> int:
        """Update the selected packages; return how many were updated.

        `registry` provides `storage`, `installed_packages` and `paths`.
        """
        installed = registry.installed_packages
        candidates = self._candidates(registry)

        to_update: list[ResolvedPackage] = []
        for package in candidates:
            name = package.package.full_name("-")
            record = next(
                (r for r in installed.packages if r.full_name("-") == name), None
            )
            if record is None:
                logger.error(
                    "Package %s is not installed.", package.package.full_name("/")
                )
            elif record.checksum != package.package.bsum:
                to_update.append(package)

        if not to_update:
            logger.error("No updates available")
            return 0

        options = {}
        if self.checksum_func is not None:
            options["checksum_func"] = self.checksum_func
        for idx, package in enumerate(to_update):
            installer = Installer(package, registry.paths, **options)
            installer.execute(idx, len(to_update), installed, True, None, None, None, True)

        logger.info("%d packages updated.", len(to_update))
        return len(to_update)

    def _candidates(self, registry: Any) -> list[ResolvedPackage]:
        storage = registry.storage
        if self.package_names is not None:
            return [storage.resolve_package(name, True) for name in self.package_names]

        found_packages = []
        for record in registry.installed_packages.packages:
            query = dataclasses.replace(
                parse_package_query(record.name), collection=record.collection
            )
            found = storage.get_packages(query)
            if found:
                found_packages.append(found[0])
        return found_packages