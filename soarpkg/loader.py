"""Loading cached repository metadata, refreshing it when outdated."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import requests

from soarpkg.fetcher import Repository

logger = logging.getLogger(__name__)


class _Fetcher(Protocol):
    def checksum(self, repository: Repository) -> bytes: ...

    def execute(self, repository: Repository) -> bytes: ...


class MetadataLoader:
    """Returns cached metadata, refetching it when the remote checksum changed."""

    def execute(self, repo: Repository, fetcher: _Fetcher) -> bytes:
        try:
            remote = fetcher.checksum(repo)
        except (requests.RequestException, OSError) as exc:
            logger.debug("Could not fetch checksum for %s: %s", repo.name, exc)
        else:
            checksum_path = Path(repo.path).with_name(f"{repo.name}.remote.bsum")
            try:
                local = checksum_path.read_bytes()
            except OSError:
                local = b""
            if remote != local:
                logger.warning("Local registry is outdated. Refetching...")
                try:
                    return fetcher.execute(repo)
                finally:
                    checksum_path.write_bytes(remote)

        try:
            return Path(repo.path).read_bytes()
        except OSError as exc:
            raise OSError(f"Failed to load registry path: {exc}") from exc