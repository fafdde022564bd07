"""Rendering package icons for the terminal (kitty, sixel or half blocks)."""

from __future__ import annotations

import base64
import io
import itertools
import os
import re
import select
import sys
from pathlib import Path

import requests
from PIL import Image

from soarpkg.package import ResolvedPackage

try:
    import termios
    import tty
except ImportError:  # non-POSIX platforms have no raw terminal mode
    termios = None
    tty = None

_CHUNK_SIZE = 4096
_TIMEOUT = 60
_QUERY_TIMEOUT = 0.5
_UPPER_HALF = "\u2580"
_LOWER_HALF = "\u2584"
_RESET = "\x1b[0m"
_KITTY_QUERY = "\x1b_Gi=31,s=1,v=1,a=q,t=d,f=24;AAAA\x1b\\\x1b[c"
_DEVICE_ATTRIBUTES_QUERY = "\x1b[c"


def _query_terminal(sequence: str, stop: bytes | None, limit: int = 1024) -> bytes:
    """Send a query in raw mode and return the terminal's reply (empty if none)."""
    if termios is None or tty is None:
        return b""
    try:
        if not (sys.stdin.isatty() and sys.stdout.isatty()):
            return b""
        fd = sys.stdin.fileno()
        saved = termios.tcgetattr(fd)
    except (AttributeError, OSError, ValueError, termios.error):
        return b""

    received = bytearray()
    try:
        tty.setraw(fd)
        sys.stdout.write(sequence)
        sys.stdout.flush()
        while len(received) < limit:
            ready, _, _ = select.select([fd], [], [], _QUERY_TIMEOUT)
            if not ready:
                break
            if stop is None:
                received += os.read(fd, limit)
                break
            byte = os.read(fd, 1)
            if not byte or byte == stop:
                break
            received += byte
    except (OSError, termios.error):
        return b""
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)
    return bytes(received)


def is_kitty_supported() -> bool:
    """Whether the terminal answers the kitty graphics protocol query."""
    reply = _query_terminal(_KITTY_QUERY, None)
    return "OK" in reply.decode("utf-8", errors="replace")


def is_sixel_supported() -> bool:
    """Whether the terminal reports sixel graphics among its attributes."""
    reply = _query_terminal(_DEVICE_ATTRIBUTES_QUERY, b"c")
    codes = re.split(r"[;?]", reply.decode("utf-8", errors="replace"))
    return "4" in codes


def build_transmit_sequence(base64_data: str) -> str:
    """Wrap base64 PNG data in kitty graphics escape sequences."""
    chunks = [
        base64_data[start:start + _CHUNK_SIZE]
        for start in range(0, len(base64_data), _CHUNK_SIZE)
    ]
    parts = []
    for number, chunk in enumerate(chunks):
        header = "a=T,f=100," if number == 0 else ""
        more = "m=1" if number < len(chunks) - 1 else ""
        payload = f";{chunk}" if chunk else ""
        parts.append(f"\x1b_G{header}{more}{payload}\x1b\\")
    return "".join(parts) + "\n"


def _blend_alpha(pixel: tuple[int, int, int, int]) -> tuple[int, int, int]:
    red, green, blue, alpha = pixel
    if alpha == 255:
        return red, green, blue
    factor = alpha / 255.0
    return int(red * factor), int(green * factor), int(blue * factor)


def _fg(rgb: tuple[int, int, int]) -> str:
    return "\x1b[38;2;{};{};{}m".format(*rgb)


def _bg(rgb: tuple[int, int, int]) -> str:
    return "\x1b[48;2;{};{};{}m".format(*rgb)


def _is_transparent(pixel: tuple[int, int, int, int]) -> bool:
    return pixel[3] < 25


def _halfblock_cell(top, bottom) -> str:
    if bottom is None:
        if _is_transparent(top):
            return " "
        return f"{_fg(_blend_alpha(top))}{_UPPER_HALF}{_RESET}"
    top_clear, bottom_clear = _is_transparent(top), _is_transparent(bottom)
    if top_clear and bottom_clear:
        return " "
    if top_clear:
        return f"{_fg(_blend_alpha(bottom))}{_LOWER_HALF}{_RESET}"
    if bottom_clear:
        return f"{_fg(_blend_alpha(top))}{_UPPER_HALF}{_RESET}"
    return (
        f"{_fg(_blend_alpha(bottom))}{_bg(_blend_alpha(top))}{_LOWER_HALF}{_RESET}"
    )


def halfblock_string(img: Image.Image) -> str:
    """Render an image with coloured half-block characters, two rows per line."""
    rgba = img.convert("RGBA")
    width, height = rgba.size
    pixels = rgba.load()
    lines = []
    for y in range(0, height, 2):
        cells = (
            _halfblock_cell(pixels[x, y], pixels[x, y + 1] if y + 1 < height else None)
            for x in range(width)
        )
        lines.append("".join(cells) + "\n")
    return "".join(lines)


def _sixel_string(img: Image.Image) -> str:
    """Encode an image as a sixel sequence with a 256-colour palette."""
    rgb = img.convert("RGB")
    indexed = rgb.quantize(colors=256, dither=Image.Dither.FLOYDSTEINBERG)
    width, height = indexed.size
    pixels = list(indexed.getdata())
    palette = indexed.getpalette() or []
    colours = max(pixels, default=0) + 1

    parts = ["\x1bPq", f'"1;1;{width};{height}']
    for index in range(colours):
        red, green, blue = (palette[index * 3:index * 3 + 3] + [0, 0, 0])[:3]
        parts.append(
            f"#{index};2;{round(red * 100 / 255)};"
            f"{round(green * 100 / 255)};{round(blue * 100 / 255)}"
        )

    for top in range(0, height, 6):
        rows = range(top, min(top + 6, height))
        band = [pixels[row * width:(row + 1) * width] for row in rows]
        for colour in sorted({value for row in band for value in row}):
            sixels = (
                chr(63 + sum(1 << dy for dy, row in enumerate(band) if row[x] == colour))
                for x in range(width)
            )
            encoded = []
            for char, run in itertools.groupby(sixels):
                count = len(list(run))
                encoded.append(f"!{count}{char}" if count > 3 else char * count)
            parts.append(f"#{colour}{''.join(encoded)}$")
        parts.append("-")
    parts.append("\x1b\\")
    return "".join(parts)


def load_default_icon(registry_path: Path, icon_name: str) -> bytes:
    """Read a repository's default icon, or return empty bytes if missing."""
    icon_path = Path(registry_path) / "icons" / icon_name
    return icon_path.read_bytes() if icon_path.exists() else b""


def _download_icon(url: str) -> bytes:
    response = requests.get(url, timeout=_TIMEOUT)
    response.raise_for_status()
    return response.content


def get_package_image_string(
    resolved_package: ResolvedPackage,
    registry_path: Path,
    font_width: int,
    font_height: int,
) -> str:
    """Render the package icon using the best protocol the terminal supports."""
    default_name = f"{resolved_package.repo_name}-{resolved_package.collection}.png"
    try:
        icon = _download_icon(resolved_package.package.icon)
    except requests.RequestException:
        icon = load_default_icon(registry_path, default_name)

    try:
        img = Image.open(io.BytesIO(icon))
        img.load()
    except OSError:
        img = Image.open(io.BytesIO(load_default_icon(registry_path, default_name)))
        img.load()

    size = (font_width * 30, font_height * 16)
    if is_kitty_supported():
        buffer = io.BytesIO()
        img.resize(size, Image.Resampling.LANCZOS).save(buffer, format="PNG")
        encoded = base64.standard_b64encode(buffer.getvalue()).decode("ascii")
        return build_transmit_sequence(encoded)
    if is_sixel_supported():
        sixel = _sixel_string(img.resize(size, Image.Resampling.LANCZOS))
        return sixel.replace("\x1bPq", "\x1bP0;1q")

    return halfblock_string(img.resize((30, 30), Image.Resampling.LANCZOS))