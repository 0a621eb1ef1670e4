"""Media files in the shared working directory: save, find, describe, delete."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import time as _time

import structlog

logger = structlog.get_logger(__name__)

IMAGE_EXTENSIONS: tuple[str, ...] = (".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp", ".svg", ".tiff")
VIDEO_EXTENSIONS: tuple[str, ...] = (".mp4", ".mov", ".avi", ".mkv", ".webm", ".flv", ".wmv", ".m4v")
AUDIO_EXTENSIONS: tuple[str, ...] = (".mp3", ".wav", ".flac", ".aac", ".ogg", ".m4a", ".wma")
MODEL_EXTENSIONS: tuple[str, ...] = (".obj", ".fbx", ".gltf", ".glb", ".dae", ".3ds", ".blend", ".stl")
ARCHIVE_EXTENSIONS: tuple[str, ...] = (".zip", ".rar", ".7z", ".tar", ".gz")

MEDIA_EXTENSIONS: frozenset[str] = frozenset(
    IMAGE_EXTENSIONS + VIDEO_EXTENSIONS + AUDIO_EXTENSIONS + MODEL_EXTENSIONS + ARCHIVE_EXTENSIONS
)


@dataclass(frozen=True)
class MediaFile:
    """A media file on disk, handed to the chat surface for upload."""

    path: Path
    name: str
    size: int
    created_at: datetime


def _media_file(path: Path) -> MediaFile:
    stat = path.stat()
    return MediaFile(
        path=path,
        name=path.name,
        size=stat.st_size,
        created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
    )


def _unique_path(directory: Path, stem: str, ext: str) -> Path:
    candidate = directory / f"{stem}.{ext}"
    n = 1
    while candidate.exists():
        candidate = directory / f"{stem}-{n}.{ext}"
        n += 1
    return candidate


def save_media_bytes(data: bytes, ext: str, directory: Path, *, prefix: str = "generated_image") -> MediaFile:
    """Write ``data`` under a timestamped name that does not collide."""
    directory.mkdir(parents=True, exist_ok=True)
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    path = _unique_path(directory, f"{prefix}_{ts}", ext.lower().lstrip("."))
    # "x" so two concurrent writers never share a file.
    with open(path, "xb") as fh:
        fh.write(data)
    logger.debug("media_saved", name=path.name, size=len(data))
    return _media_file(path)


def file_icon(filename: str) -> str:
    ext = Path(filename).suffix.lower()
    if ext in IMAGE_EXTENSIONS:
        return "🖼️"
    if ext in VIDEO_EXTENSIONS:
        return "🎬"
    if ext in AUDIO_EXTENSIONS:
        return "🎵"
    if ext in MODEL_EXTENSIONS:
        return "🗿"
    if ext in ARCHIVE_EXTENSIONS:
        return "📦"
    return "📎"


def find_recent_files(directory: Path, minutes: int = 30) -> list[MediaFile]:
    """Media files in ``directory`` modified within ``minutes``, newest first.

    ``minutes <= 0`` disables the age limit.
    """
    try:
        entries = list(directory.iterdir())
    except OSError as exc:
        logger.error("media_scan_failed", directory=str(directory), error=str(exc))
        return []

    threshold = _time.time() - minutes * 60 if minutes > 0 else 0.0
    found: list[MediaFile] = []
    for entry in entries:
        if entry.suffix.lower() not in MEDIA_EXTENSIONS:
            continue
        try:
            if not entry.is_file() or entry.stat().st_mtime <= threshold:
                continue
            found.append(_media_file(entry))
        except OSError as exc:
            logger.warning("media_stat_failed", name=entry.name, error=str(exc))
    return sorted(found, key=lambda f: f.created_at, reverse=True)


def filter_by_size(files: list[MediaFile], max_size: int) -> list[MediaFile]:
    return [f for f in files if f.size <= max_size]


def delete_files(files: list[MediaFile]) -> int:
    """Delete uploaded files. Returns how many were removed."""
    removed = 0
    for f in files:
        try:
            f.path.unlink()
            removed += 1
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("media_delete_failed", name=f.name, error=str(exc))
    logger.info("media_deleted", removed=removed, requested=len(files))
    return removed
