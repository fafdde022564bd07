"""Removal of installed packages."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from soarpkg.appimage import remove_applinks
from soarpkg.installed import InstalledPackages, NotInstalledError
from soarpkg.package import ResolvedPackage, SoarPaths

logger = logging.getLogger(__name__)


@dataclass
class Remover:
    """Removes one package's files, links and installation record."""

    resolved_package: ResolvedPackage
    paths: SoarPaths

    def execute(self, installed_packages: InstalledPackages) -> None:
        package = self.resolved_package.package
        installed = installed_packages.find_package(self.resolved_package)
        if installed is None:
            raise NotInstalledError(
                f"Package {package.full_name('/')}-{package.version} is not installed."
            )

        packages_path = self.paths.packages_path
        install_dir = package.get_install_dir(packages_path, installed.checksum)
        install_path = package.get_install_path(packages_path, installed.checksum)

        self.remove_symlink(install_path)
        remove_applinks(package.name, package.bin_name, install_path, self.paths)
        self.remove_package_path(install_dir)
        installed_packages.unregister_package(package)

        logger.info("Package %s removed successfully.", package.full_name("/"))

    def remove_symlink(self, install_path: Path) -> None:
        """Remove the binary link if it points at this installation."""
        symlink_path = Path(self.paths.bin_path) / self.resolved_package.package.bin_name
        if symlink_path.exists():
            target = Path(os.readlink(symlink_path))
            if target == Path(install_path):
                symlink_path.unlink()

    def remove_package_path(self, install_dir: Path) -> None:
        install_dir = Path(install_dir)
        if install_dir.exists():
            try:
                shutil.rmtree(install_dir)
            except OSError as exc:
                raise OSError(
                    f"Failed to remove package file: {install_dir}: {exc}"
                ) from exc