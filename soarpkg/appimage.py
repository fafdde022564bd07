"""Desktop integration: icons, desktop entries and portable directories."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import BinaryIO, Optional

import requests
from PIL import Image

from soarpkg.package import Package, SoarPaths

logger = logging.getLogger(__name__)

# Little-endian squashfs v4.0 superblock magic.
SQUASHFS_MAGIC = b"hsqs"

SUPPORTED_DIMENSIONS: tuple[tuple[int, int], ...] = (
    (16, 16),
    (24, 24),
    (32, 32),
    (48, 48),
    (64, 64),
    (72, 72),
    (80, 80),
    (96, 96),
    (128, 128),
    (192, 192),
    (256, 256),
    (512, 512),
)

_DOWNLOAD_TIMEOUT = 60


def _with_extension(path: Path, extension: str) -> Path:
    return Path(path).with_suffix(f".{extension}")


def _download(url: str) -> bytes:
    response = requests.get(url, timeout=_DOWNLOAD_TIMEOUT)
    response.raise_for_status()
    return response.content


def find_offset(file: BinaryIO) -> int:
    """Return the offset of the embedded squashfs image, or 0 if none.

    The file is scanned in aligned 4-byte steps and rewound afterwards.
    """
    found = 0
    while True:
        magic = file.read(len(SQUASHFS_MAGIC))
        if len(magic) < len(SQUASHFS_MAGIC):
            break
        if magic == SQUASHFS_MAGIC:
            found = file.tell() - len(magic)
            break
    file.seek(0)
    return found


def find_nearest_supported_dimension(width: int, height: int) -> tuple[int, int]:
    """Pick the supported icon size closest to the given one."""
    return min(
        SUPPORTED_DIMENSIONS,
        key=lambda dim: abs(dim[0] - width) + abs(dim[1] - height),
    )


def _fit_within(width: int, height: int, max_w: int, max_h: int) -> tuple[int, int]:
    ratio = min(max_w / width, max_h / height)
    return max(1, round(width * ratio)), max(1, round(height * ratio))


def normalize_image(image: Image.Image) -> Image.Image:
    """Resize an icon to the nearest supported size, keeping its aspect ratio."""
    width, height = image.size
    new_width, new_height = find_nearest_supported_dimension(width, height)
    if (width, height) == (new_width, new_height):
        return image
    logger.info(
        "Resizing image from %dx%d to %dx%d", width, height, new_width, new_height
    )
    size = _fit_within(width, height, new_width, new_height)
    return image.resize(size, Image.Resampling.LANCZOS)


def _is_foreign_link(path: Path, packages_path: Path) -> bool:
    target = Path(os.readlink(path))
    return path.exists() and not target.is_relative_to(packages_path)


def create_symlink(source: Path, target: Path, packages_path: Path) -> None:
    """Link `target` to `source`, replacing only links this tool manages."""
    target = Path(target)
    if target.is_symlink():
        if _is_foreign_link(target, Path(packages_path)):
            logger.error("%s is not managed by soar", target)
            return
        target.unlink()
    target.symlink_to(source)


def remove_link(path: Path, packages_path: Path) -> None:
    """Remove a symlink unless it points at a live file outside packages_path."""
    path = Path(path)
    if path.is_symlink():
        if _is_foreign_link(path, Path(packages_path)):
            logger.error("%s is not managed by soar", path)
            return
        path.unlink()


def _desktop_link(data_path: Path, name: str) -> Path:
    return Path(data_path) / "applications" / f"{name}-soar.desktop"


def _icon_link(data_path: Path, width: int, height: int, name: str) -> Path:
    return _with_extension(
        Path(data_path) / "icons" / "hicolor" / f"{width}x{height}" / "apps" / name,
        "png",
    )


def remove_applinks(name: str, bin_name: str, file_path: Path, paths: SoarPaths) -> None:
    """Remove the desktop entry and icon links of a package."""
    remove_link(_desktop_link(paths.data_path, name), paths.packages_path)

    original_icon = _with_extension(file_path, "png")
    if original_icon.exists():
        with Image.open(original_icon) as img:
            width, height = img.size
        remove_link(
            _icon_link(paths.data_path, width, height, bin_name), paths.packages_path
        )


def process_icon(output_path: Path, name: str, paths: SoarPaths) -> Path:
    """Normalise an extracted icon and link it into the icon theme; return the link."""
    output_path = Path(output_path)
    with Image.open(output_path) as opened:
        opened.load()
        image = opened.copy()
    original_size = image.size

    normalized = normalize_image(image)
    width, height = normalized.size
    if (width, height) != original_size:
        normalized.save(output_path, format="PNG")

    final_path = _icon_link(paths.data_path, width, height, name)
    try:
        final_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OSError(
            f"Failed to create icon directory at {final_path.parent}: {exc}"
        ) from exc
    create_symlink(output_path, final_path, paths.packages_path)
    return final_path


def _rewrite_desktop_line(line: str, bin_name: str, bin_path: Path) -> str:
    if line.startswith("Icon="):
        return f"Icon={bin_name}"
    if line.startswith("Exec="):
        return f"Exec={bin_path}/{bin_name}"
    if line.startswith("TryExec="):
        return f"TryExec={bin_path}/{bin_name}"
    return line


def process_desktop(
    output_path: Path, bin_name: str, name: str, paths: SoarPaths
) -> Path:
    """Rewrite a desktop entry to use the managed binary; return its link."""
    output_path = Path(output_path)
    content = output_path.read_text(encoding="utf-8")
    processed = "\n".join(
        _rewrite_desktop_line(line, bin_name, paths.bin_path)
        for line in content.splitlines()
        if not line.startswith("#")
    )
    output_path.write_text(processed, encoding="utf-8")

    final_path = _desktop_link(paths.data_path, name)
    try:
        final_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OSError(
            f"Failed to create desktop files directory at {final_path.parent}: {exc}"
        ) from exc
    create_symlink(output_path, final_path, paths.packages_path)
    return final_path


def integrate_using_remote_files(
    package: Package, file_path: Path, paths: SoarPaths
) -> None:
    """Fetch the icon and desktop entry published next to the package and install them."""
    if "/" not in package.icon:
        raise ValueError(f"Invalid icon URL: {package.icon!r}")
    base_url, _ = package.icon.rsplit("/", 1)
    desktop_url = f"{base_url}/{package.bin_name}.desktop"

    icon_content = _download(package.icon)
    desktop_content = _download(desktop_url)

    icon_path = _with_extension(file_path, "png")
    desktop_path = _with_extension(file_path, "desktop")
    icon_path.write_bytes(icon_content)
    desktop_path.write_bytes(desktop_content)

    process_icon(icon_path, package.bin_name, paths)
    process_desktop(desktop_path, package.bin_name, package.name, paths)


def _setup_one(
    location: Optional[str],
    bin_name: str,
    local_dir: Path,
    extension: str,
    packages_path: Path,
) -> None:
    if location is None:
        return
    if not location:
        local_dir.mkdir()
        return
    shared = _with_extension(Path(location) / bin_name, extension)
    try:
        shared.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OSError(f"Failed to create or access directory at {shared}: {exc}") from exc
    create_symlink(shared, local_dir, packages_path)


def setup_portable_dir(
    bin_name: str,
    package_path: Path,
    portable: Optional[str],
    portable_home: Optional[str],
    portable_config: Optional[str],
    packages_path: Path,
) -> None:
    """Create the portable home and config directories beside a package.

    An empty location creates the directory next to the package; a non-empty
    one creates it there and links it next to the package. `portable` sets both.
    """
    if portable is not None:
        portable_home = portable_config = portable

    _setup_one(
        portable_home, bin_name, _with_extension(package_path, "home"), "home",
        packages_path,
    )
    _setup_one(
        portable_config, bin_name, _with_extension(package_path, "config"), "config",
        packages_path,
    )