"""Download, verify and install a package binary."""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import requests

from soarpkg.appimage import integrate_using_remote_files, setup_portable_dir
from soarpkg.installed import InstalledPackages
from soarpkg.package import ResolvedPackage, SoarPaths

logger = logging.getLogger(__name__)

APPIMAGE = "appimage"
FLATIMAGE = "flatimage"

_MANAGED_ATTR = "user.managed_by"
_MANAGED_VALUE = b"soar"
_UNSUPPORTED = {errno.ENOTSUP, errno.EOPNOTSUPP}
_CHUNK_SIZE = 64 * 1024
_TIMEOUT = 60

# Guards the shared installation record when installers run concurrently.
_RECORD_LOCK = threading.RLock()


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for block in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def _mark_managed(path: Path) -> None:
    setxattr = getattr(os, "setxattr", None)
    if setxattr is None:
        return
    try:
        setxattr(path, _MANAGED_ATTR, _MANAGED_VALUE)
    except OSError as exc:
        if exc.errno not in _UNSUPPORTED:
            raise
        logger.debug("Extended attributes unsupported for %s", path)


@dataclass
class Installer:
    """Installs one resolved package into the packages directory.

    `file_type` may classify the installed file as APPIMAGE or FLATIMAGE to
    enable desktop integration; without it no integration is attempted.
    """

    resolved_package: ResolvedPackage
    paths: SoarPaths
    checksum_func: Callable[[Path], str] = _sha256_file
    ask: Callable[[str], str] = input
    file_type: Optional[Callable[[Path], Optional[str]]] = None
    temp_path: Path = field(init=False)
    install_path: Optional[Path] = field(init=False, default=None)

    def __post_init__(self) -> None:
        name = self.resolved_package.package.full_name("-")
        self.temp_path = (Path(self.paths.packages_path) / "tmp" / name).with_suffix(
            ".part"
        )

    def execute(
        self,
        idx: int,
        total: int,
        installed_packages: InstalledPackages,
        force: bool,
        portable: Optional[str],
        portable_home: Optional[str],
        portable_config: Optional[str],
        yes: bool,
    ) -> Path:
        """Download, verify, install and register the package; return its path."""
        package = self.resolved_package.package
        with _RECORD_LOCK:
            is_installed = installed_packages.is_installed(self.resolved_package)

        prefix = f"[{idx + 1}/{total}] {package.full_name('/')}"
        if not force and is_installed:
            raise FileExistsError(f"{prefix}: Package is already installed")

        try:
            self.temp_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OSError(
                f"{prefix}: Failed to create temp directory {self.temp_path}: {exc}"
            ) from exc

        self._download(prefix)

        if package.bsum == "null":
            logger.warning(
                "Missing checksum for %s. Installing anyway.", package.full_name("/")
            )
        elif self.checksum_func(self.temp_path) != package.bsum:
            if yes:
                logger.warning("Checksum verification failed. Installing anyway.")
            else:
                response = self.ask(
                    f"\n{prefix}: Checksum verification failed. "
                    "Do you want to remove the package? (y/n): "
                )
                if response.strip().lower() == "y":
                    self.temp_path.unlink()
                    raise ValueError("Checksum verification failed.")

        checksum = self.checksum_func(self.temp_path)
        install_path = package.get_install_path(self.paths.packages_path, checksum)
        self.install_path = install_path
        try:
            install_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OSError(
                f"{prefix}: Failed to create install directory {install_path}: {exc}"
            ) from exc

        self._save_file(install_path)
        self._symlink_bin(install_path)
        self._integrate(install_path, prefix, portable, portable_home, portable_config)

        with _RECORD_LOCK:
            installed_packages.register_package(self.resolved_package, checksum)

        logger.info("[%d/%d] Installed %s", idx + 1, total, package.full_name("/"))
        if package.note:
            note = package.note.replace("<br>", "\n     ")
            print(f"{prefix}: [Note] {note}")
        return install_path

    def _download(self, prefix: str) -> None:
        downloaded = self.temp_path.stat().st_size if self.temp_path.exists() else 0
        try:
            response = requests.get(
                self.resolved_package.package.download_url,
                headers={"Range": f"bytes={downloaded}-"},
                stream=True,
                timeout=_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise RuntimeError(f"{prefix}: Failed to download package: {exc}") from exc

        with response:
            if not 200 <= response.status_code < 300:
                raise RuntimeError(f"{prefix} Download failed {response.status_code}")
            try:
                with self.temp_path.open("ab") as handle:
                    for chunk in response.iter_content(_CHUNK_SIZE):
                        handle.write(chunk)
            except requests.RequestException as exc:
                raise RuntimeError(f"{prefix}: Failed to read chunk: {exc}") from exc

    def _save_file(self, install_path: Path) -> None:
        if install_path.exists():
            install_path.unlink()
        self.temp_path.rename(install_path)
        install_path.chmod(0o755)
        _mark_managed(install_path)

    def _symlink_bin(self, install_path: Path) -> None:
        package = self.resolved_package.package
        packages_path = Path(self.paths.packages_path)
        bin_path = Path(self.paths.bin_path)
        bin_path.mkdir(parents=True, exist_ok=True)
        symlink_path = bin_path / package.bin_name

        if symlink_path.exists():
            link = Path(os.readlink(symlink_path)) if symlink_path.is_symlink() else None
            if link is not None and link != install_path and link.is_relative_to(
                packages_path
            ):
                owner_dir = str(link.relative_to(packages_path).parent)
                owner = owner_dir[9:].replace("-", "/", 1)
                if owner == package.full_name("-"):
                    shutil.rmtree(link.parent)
                else:
                    logger.warning(
                        "The package %s owns the binary %s", owner, package.bin_name
                    )
                    response = self.ask(
                        f"Do you want to switch to {package.full_name('/')} (y/N)? "
                    )
                    if response.strip().lower() != "y":
                        return
            symlink_path.unlink()

        try:
            symlink_path.symlink_to(install_path)
        except OSError as exc:
            raise OSError(
                f"Failed to link {install_path} to {symlink_path}: {exc}"
            ) from exc

    def _integrate(
        self,
        install_path: Path,
        prefix: str,
        portable: Optional[str],
        portable_home: Optional[str],
        portable_config: Optional[str],
    ) -> None:
        if self.file_type is None:
            return
        package = self.resolved_package.package
        kind = self.file_type(install_path)
        if kind == APPIMAGE:
            setup_portable_dir(
                package.bin_name,
                install_path,
                portable,
                portable_home,
                portable_config,
                self.paths.packages_path,
            )
        elif kind == FLATIMAGE:
            try:
                integrate_using_remote_files(package, install_path, self.paths)
            except (requests.RequestException, OSError, ValueError):
                logger.warning("%s: Failed to integrate FlatImage", prefix)