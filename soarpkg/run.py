"""Download a package into the cache and run it without installing."""

from __future__ import annotations

import errno
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

import requests

from soarpkg.installed import format_bytes
from soarpkg.package import ResolvedPackage

logger = logging.getLogger(__name__)

_MANAGED_ATTR = "user.managed_by"
_MANAGED_VALUE = b"soar"
_UNSUPPORTED = {errno.ENOTSUP, errno.EOPNOTSUPP}
_CHUNK_SIZE = 64 * 1024
_TIMEOUT = 60


def _is_managed(path: Path) -> bool:
    getxattr = getattr(os, "getxattr", None)
    if getxattr is None:
        return False
    try:
        return getxattr(path, _MANAGED_ATTR) == _MANAGED_VALUE
    except OSError:
        return False


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
class Runner:
    """Fetches a package binary into a cache path and executes it."""

    resolved_package: ResolvedPackage
    install_path: Path
    args: Sequence[str] = ()
    checksum_validator: Optional[Callable[[str, Path], bool]] = None
    temp_path: Path = field(init=False)

    def __post_init__(self) -> None:
        self.install_path = Path(self.install_path)
        self.args = list(self.args)
        self.temp_path = self.install_path.with_suffix(".part")

    def execute(self) -> int:
        """Run the cached binary, downloading it first if needed; return its exit code."""
        package = self.resolved_package.package
        package_name = package.full_name("/")

        if self.install_path.exists():
            if not _is_managed(self.install_path):
                raise PermissionError(
                    f"Path {self.install_path} is not managed by soar. Exiting."
                )
            logger.info("Found existing cache for %s", package_name)
            return self._run()

        self._download(package_name)

        if package.bsum == "null":
            logger.warning("Missing checksum for %s. Installing anyway.", package_name)
        elif self.checksum_validator is not None and not self.checksum_validator(
            package.bsum, self.temp_path
        ):
            logger.error("%s: Checksum verification failed.", package_name)

        self._save_file()
        return self._run()

    def _download(self, package_name: str) -> None:
        downloaded = self.temp_path.stat().st_size if self.temp_path.exists() else 0
        try:
            response = requests.get(
                self.resolved_package.package.download_url,
                headers={"Range": f"bytes={downloaded}-"},
                stream=True,
                timeout=_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise RuntimeError(f"{package_name} Failed to download package: {exc}") from exc

        with response:
            length = response.headers.get("Content-Length")
            total_size = int(length) + downloaded if length else 0
            print(f"{package_name}: Downloading package [{format_bytes(total_size)}]")

            if not 200 <= response.status_code < 300:
                raise RuntimeError(
                    f"{package_name}: Download failed {response.status_code}"
                )

            try:
                with self.temp_path.open("ab") as handle:
                    for chunk in response.iter_content(_CHUNK_SIZE):
                        handle.write(chunk)
            except requests.RequestException as exc:
                raise RuntimeError(f"{package_name}: Failed to read chunk: {exc}") from exc

    def _save_file(self) -> None:
        if self.install_path.exists():
            self.install_path.unlink()
        self.temp_path.rename(self.install_path)
        self.install_path.chmod(0o755)
        _mark_managed(self.install_path)

    def _run(self) -> int:
        return subprocess.run([str(self.install_path), *self.args]).returncode