"""
Media storage layout.

All media lives under a single root (config.MEDIA_PATH):

    thumbnails/content/<content_id>_cover<ext>
    thumbnails/episodes/<episode_id>_thumbnail<ext>
    videos/original/<content_id>_<unix>.mp4
    videos/transcoded/<quality>/<stem>.m3u8 (+ <stem>_NNN.ts segments)

The database only stores paths relative to the root, always with forward
slashes. Helpers here build those paths, normalize paths coming from clients,
and join relative paths back onto the root without letting them escape it.
"""

import logging
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional, Union

from api.enums import MediaKind
from api.errors import InvalidInputError, NotFoundError
from config import QUALITY_LADDER

logger = logging.getLogger(__name__)

COVER_DIR = "thumbnails/content"
EPISODE_THUMB_DIR = "thumbnails/episodes"
ORIGINAL_DIR = "videos/original"
TRANSCODED_DIR = "videos/transcoded"

_KIND_DIRS = {
    MediaKind.COVER: COVER_DIR,
    MediaKind.EPISODE_THUMBNAIL: EPISODE_THUMB_DIR,
    MediaKind.ORIGINAL_VIDEO: ORIGINAL_DIR,
}

# Prefixes clients have historically sent in front of stored paths
_STRIP_PREFIXES = ("media/", "thumbnails/", "videos/")


def ensure_layout(root: Path, qualities: Optional[Iterable[str]] = None) -> None:
    """Create the media directory tree under root (idempotent)."""
    if qualities is None:
        qualities = [q["name"] for q in QUALITY_LADDER]
    dirs = [COVER_DIR, EPISODE_THUMB_DIR, ORIGINAL_DIR]
    dirs.extend(f"{TRANSCODED_DIR}/{quality}" for quality in qualities)
    for rel in dirs:
        (root / rel).mkdir(mode=0o755, parents=True, exist_ok=True)
    logger.debug(f"Media layout ready under {root}")


def cover_path(content_id: int, ext: str) -> str:
    return f"{COVER_DIR}/{content_id}_cover{ext}"


def episode_thumb_path(episode_id: int, ext: str) -> str:
    return f"{EPISODE_THUMB_DIR}/{episode_id}_thumbnail{ext}"


def original_video_path(content_id: int, timestamp: int) -> str:
    return f"{ORIGINAL_DIR}/{content_id}_{timestamp}.mp4"


def movie_convention_path(content_id: int) -> str:
    """Where a movie's original lives when no path was ever recorded."""
    return f"{ORIGINAL_DIR}/{content_id}.mp4"


def rendition_dir(quality: str) -> str:
    return f"{TRANSCODED_DIR}/{quality}"


def rendition_path(quality: str, filename: str) -> str:
    """Playlist path for one ladder rung of an original (by its filename)."""
    stem = PurePosixPath(filename).stem
    return f"{rendition_dir(quality)}/{stem}.m3u8"


def rendition_segment_pattern(quality: str, filename: str) -> str:
    """ffmpeg segment filename pattern matching rendition_path()."""
    stem = PurePosixPath(filename).stem
    return f"{rendition_dir(quality)}/{stem}_%03d.ts"


def normalize_media_path(path: str, kind: Union[MediaKind, str]) -> str:
    """
    Re-root a client-supplied path under the canonical directory for kind.

    Leading media/, thumbnails/ and videos/ prefixes are stripped (either slash
    style) and only the base name is kept, so the result can never point
    outside its directory. Applying it twice gives the same result.

    Raises:
        InvalidInputError: if no usable file name remains
    """
    kind = MediaKind(kind)
    cleaned = (path or "").strip().replace("\\", "/")

    stripped = True
    while stripped:
        stripped = False
        for prefix in _STRIP_PREFIXES:
            if cleaned.startswith(prefix):
                cleaned = cleaned[len(prefix):]
                stripped = True

    name = cleaned.rstrip("/").rsplit("/", 1)[-1]
    if name in ("", ".", ".."):
        raise InvalidInputError(f"Invalid {kind.value.replace('_', ' ')} path")

    return f"{_KIND_DIRS[kind]}/{name}"


def safe_extension(filename: Optional[str], allowed: Iterable[str]) -> str:
    """
    Return the lower-cased extension of filename if it is in allowed.

    Raises:
        InvalidInputError: if the file has no extension or it is not allowed
    """
    ext = PurePosixPath((filename or "").replace("\\", "/")).suffix.lower()
    allowed = set(allowed)
    if ext not in allowed:
        raise InvalidInputError(f"Invalid file type. Allowed: {', '.join(sorted(allowed))}")
    return ext


def absolute_path(root: Path, relative: str) -> Path:
    """
    Join a stored relative path onto root.

    Raises:
        NotFoundError: if the result resolves outside root
    """
    base = root.resolve()
    candidate = (base / relative.replace("\\", "/").lstrip("/")).resolve()
    try:
        candidate.relative_to(base)
    except ValueError:
        logger.warning(f"Rejected media path outside root: {relative!r}")
        raise NotFoundError("File not found")
    return candidate
