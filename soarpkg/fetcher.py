"""Fetching repository metadata and default icons."""

from __future__ import annotations

import json
import logging
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import msgpack
import requests

from soarpkg.package import Package

logger = logging.getLogger(__name__)

_TIMEOUT = 60


@dataclass
class Repository:
    """A configured package repository and where its metadata is cached."""

    name: str
    url: str
    path: Path
    sources: dict[str, str] = field(default_factory=dict)
    metadata: Optional[str] = None

    @property
    def metadata_file(self) -> str:
        return self.metadata or "metadata.json"


def _download(url: str) -> bytes:
    response = requests.get(url, timeout=_TIMEOUT)
    response.raise_for_status()
    return response.content


def group_packages(
    collection: Mapping[str, Sequence[Mapping[str, Any]]], arch: Optional[str] = None
) -> dict[str, dict[str, list[Package]]]:
    """Group each collection's packages by lower-cased name.

    A package's variant is the second-to-last segment of its download URL,
    unless that segment is the machine architecture.
    """
    arch = platform.machine() if arch is None else arch
    grouped: dict[str, dict[str, list[Package]]] = {}
    for key, packages in collection.items():
        by_name: dict[str, list[Package]] = {}
        for data in packages:
            package = Package.from_dict(data)
            segments = package.download_url.split("/")
            variant = segments[-2] if len(segments) >= 2 else None
            package.variant = variant if variant != arch else None
            by_name.setdefault(package.name.lower(), []).append(package)
        grouped[key] = by_name
    return grouped


@dataclass
class MetadataFetcher:
    """Downloads repository metadata into the local registry."""

    registry_path: Path

    def _icon_path(self, repository: Repository, key: str) -> Path:
        return Path(self.registry_path) / "icons" / f"{repository.name}-{key}.png"

    def execute(self, repository: Repository) -> bytes:
        """Fetch, regroup and cache the metadata; return the cached bytes."""
        url = f"{repository.url}/{repository.metadata_file}"
        content = _download(url)

        try:
            parsed = json.loads(content)
        except ValueError as exc:
            raise ValueError(f"Failed to parse metadata json: {exc}") from exc
        if not isinstance(parsed, dict) or not all(
            isinstance(v, list) and all(isinstance(p, dict) for p in v)
            for v in parsed.values()
        ):
            raise ValueError("Failed to parse metadata json: unexpected structure")

        grouped = group_packages(parsed)
        payload = {
            key: {name: [p.to_dict() for p in pkgs] for name, pkgs in by_name.items()}
            for key, by_name in grouped.items()
        }
        data = msgpack.packb(payload, use_bin_type=True)

        path = Path(repository.path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OSError(f"Failed to create registry directory: {exc}") from exc
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise OSError(
                f"Failed to write metadata for {repository.name}: {exc}"
            ) from exc

        try:
            self.fetch_icons(repository)
        except (requests.RequestException, OSError) as exc:
            logger.debug("Could not fetch icons for %s: %s", repository.name, exc)

        return data

    def fetch_icons(self, repository: Repository) -> list[Path]:
        """Download missing default icons; return the paths written.

        Nothing is written unless every missing icon downloads.
        """
        downloaded: list[tuple[Path, bytes]] = []
        for key, base_url in repository.sources.items():
            icon_path = self._icon_path(repository, key)
            if icon_path.exists():
                continue
            downloaded.append((icon_path, _download(f"{base_url}/{key}.default.png")))

        written = []
        for icon_path, content in downloaded:
            try:
                icon_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise OSError(
                    f"Failed to create icon directory at {icon_path.parent}: {exc}"
                ) from exc
            icon_path.write_bytes(content)
            written.append(icon_path)
        return written

    def checksum(self, repository: Repository) -> bytes:
        """Download the remote checksum of the metadata file."""
        return _download(f"{repository.url}/{repository.metadata_file}.bsum")