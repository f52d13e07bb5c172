"""
Upload intake: bounded streaming writes into the media tree.

Videos are written to videos/original/<content_id>_<unix>.mp4, recorded on the
episode (or the content for movie-level uploads) and handed to the transcode
queue. Intake returns as soon as the original is on disk; transcoding happens
in the background and does not need ffmpeg to be present here.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import Request, UploadFile

from api import catalog, storage
from api.errors import InvalidInputError, StorageFailureError
from api.job_queue import enqueue_transcode
from config import (
    MAX_FORM_FIELD_SIZE,
    MAX_IMAGE_UPLOAD_SIZE,
    MAX_VIDEO_UPLOAD_SIZE,
    MEDIA_PATH,
    SUPPORTED_IMAGE_EXTENSIONS,
    SUPPORTED_VIDEO_EXTENSIONS,
    UPLOAD_CHUNK_SIZE,
)

logger = logging.getLogger(__name__)


@dataclass
class StoredUpload:
    path: str  # relative to the media root
    job_id: Optional[int] = None


def _format_size(size: int) -> str:
    return f"{size / (1024 * 1024):.0f} MiB"


def check_content_length(request: Request, max_size: int) -> None:
    """
    Reject a request whose declared Content-Length exceeds max_size plus the
    allowance for ordinary form fields, before any bytes are read.

    Raises:
        InvalidInputError: if the declared length is too large
    """
    content_length = request.headers.get("content-length")
    if not content_length:
        return
    try:
        declared = int(content_length)
    except ValueError:
        return  # Invalid header, the streaming check still applies
    if declared > max_size + MAX_FORM_FIELD_SIZE:
        raise InvalidInputError(f"File too large. Maximum upload size is {_format_size(max_size)}")


async def save_upload_with_size_limit(file: UploadFile, upload_path: Path, max_size: int) -> int:
    """
    Stream an upload to disk in UPLOAD_CHUNK_SIZE chunks.

    Returns the total bytes written. The partial file is removed on any failure.

    Raises:
        InvalidInputError: if the declared or streamed size exceeds max_size
        StorageFailureError: if the file cannot be written
    """
    too_large = f"File too large. Maximum upload size is {_format_size(max_size)}"
    if file.size is not None and file.size > max_size:
        raise InvalidInputError(too_large)

    total_size = 0
    try:
        with open(upload_path, "wb") as f:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_size:
                    f.close()
                    upload_path.unlink(missing_ok=True)
                    raise InvalidInputError(too_large)
                f.write(chunk)
    except InvalidInputError:
        raise
    except OSError as e:
        upload_path.unlink(missing_ok=True)
        logger.warning(f"Storage error during upload to {upload_path}: {e}")
        raise StorageFailureError("Failed to store uploaded file") from e
    except Exception:
        upload_path.unlink(missing_ok=True)
        raise

    return total_size


def _unique_original_path(content_id: int) -> str:
    # Two uploads for one content in the same second must not share a file
    timestamp = int(time.time())
    relative = storage.original_video_path(content_id, timestamp)
    while (MEDIA_PATH / relative).exists():
        timestamp += 1
        relative = storage.original_video_path(content_id, timestamp)
    return relative


async def upload_video(content_id: int, episode_id: Optional[int], file: UploadFile) -> StoredUpload:
    """
    Store an original video and queue it for transcoding.

    Raises:
        InvalidInputError: unknown content/episode, episode of another content,
            bad extension or oversized file
        StorageFailureError: the file could not be written
    """
    content = await catalog.get_content(content_id)
    if content is None:
        raise InvalidInputError("Content not found")
    if episode_id is not None:
        episode = await catalog.get_episode(episode_id)
        if episode is None or episode["content_id"] != content_id:
            raise InvalidInputError("Episode not found for this content")

    storage.safe_extension(file.filename, SUPPORTED_VIDEO_EXTENSIONS)

    relative = _unique_original_path(content_id)
    target = MEDIA_PATH / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    size = await save_upload_with_size_limit(file, target, MAX_VIDEO_UPLOAD_SIZE)
    logger.info(f"Stored original for content {content_id} (episode={episode_id}): {relative} ({size} bytes)")

    if episode_id is not None:
        await catalog.set_episode_video_path(episode_id, relative)
    else:
        await catalog.set_content_video_path(content_id, relative)

    job_id = await enqueue_transcode(content_id, episode_id, relative)
    return StoredUpload(path=relative, job_id=job_id)


async def upload_cover(content_id: int, file: UploadFile) -> StoredUpload:
    """Store thumbnails/content/<id>_cover<ext> and record it on the content."""
    if await catalog.get_content(content_id) is None:
        raise InvalidInputError("Content not found")
    ext = storage.safe_extension(file.filename, SUPPORTED_IMAGE_EXTENSIONS)

    relative = storage.cover_path(content_id, ext)
    target = MEDIA_PATH / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    await save_upload_with_size_limit(file, target, MAX_IMAGE_UPLOAD_SIZE)
    await catalog.set_cover_image(content_id, relative)
    logger.info(f"Stored cover for content {content_id}: {relative}")
    return StoredUpload(path=relative)


async def upload_episode_thumb(episode_id: int, file: UploadFile) -> StoredUpload:
    """Store thumbnails/episodes/<id>_thumbnail<ext> and record it on the episode."""
    if await catalog.get_episode(episode_id) is None:
        raise InvalidInputError("Episode not found")
    ext = storage.safe_extension(file.filename, SUPPORTED_IMAGE_EXTENSIONS)

    relative = storage.episode_thumb_path(episode_id, ext)
    target = MEDIA_PATH / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    await save_upload_with_size_limit(file, target, MAX_IMAGE_UPLOAD_SIZE)
    await catalog.set_episode_thumbnail(episode_id, relative)
    logger.info(f"Stored thumbnail for episode {episode_id}: {relative}")
    return StoredUpload(path=relative)
