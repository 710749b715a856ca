"""Input inspection: container/format detection and media duration."""
import json
import logging
import subprocess
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from converter import config

logger = logging.getLogger("converter.probe")

# Pillow format names -> file extension used by the registry
_PIL_FORMATS = {
    "JPEG": "jpg",
    "PNG": "png",
    "GIF": "gif",
    "WEBP": "webp",
    "BMP": "bmp",
    "TIFF": "tiff",
    "ICO": "ico",
    "PSD": "psd",
    "AVIF": "avif",
}

# ffprobe format_name (first entry of the comma list) -> extension
_FFPROBE_FORMATS = {
    "mov": "mov",
    "matroska": "mkv",
    "webm": "webm",
    "avi": "avi",
    "flv": "flv",
    "asf": "wmv",
    "mpegts": "ts",
    "mpeg": "mpg",
    "ogg": "ogg",
    "mp3": "mp3",
    "wav": "wav",
    "flac": "flac",
    "aac": "aac",
    "gif": "gif",
}


def extension_of(filename: str) -> Optional[str]:
    suffix = Path(filename or "").suffix.lower().lstrip(".")
    return suffix or None


def detect_image_format(path: Path) -> Optional[str]:
    try:
        with Image.open(path) as img:
            return _PIL_FORMATS.get((img.format or "").upper())
    except (UnidentifiedImageError, OSError):
        return None


def ffprobe(path: Path, timeout: float = 30) -> Optional[dict]:
    cmd = [
        config.FFPROBE_BINARY, "-v", "quiet",
        "-print_format", "json",
        "-show_format", "-show_streams",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        logger.debug("ffprobe not found; skipping probe of %s", path.name)
        return None
    except subprocess.TimeoutExpired:
        logger.warning("ffprobe timed out on %s", path.name)
        return None
    if result.returncode != 0 or not result.stdout.strip():
        return None
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError:
        return None


def detect_format(path: Path) -> Optional[str]:
    """Best-effort format detection from file content: images via Pillow, media via ffprobe."""
    fmt = detect_image_format(path)
    if fmt:
        return fmt
    info = ffprobe(path)
    if not info:
        return None
    names = (info.get("format", {}).get("format_name") or "").split(",")
    if "mov" in names and "mp4" in names:
        # ffprobe reports mov,mp4,m4a,3gp,... for the whole ISO family; trust the extension hint
        ext = extension_of(path.name)
        return ext if ext in names else "mp4"
    return _FFPROBE_FORMATS.get(names[0]) if names and names[0] else None


def media_duration(path: Path) -> Optional[float]:
    info = ffprobe(path)
    if not info:
        return None
    try:
        return float(info.get("format", {}).get("duration"))
    except (TypeError, ValueError):
        return None
