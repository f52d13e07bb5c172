"""
Playback link resolution: (content, episode?, quality) -> file on disk.

The original upload is always the fallback. A ladder quality is served only
once its HLS playlist exists, so a failed or still-running transcode never
turns into a 404.
"""

import logging
from pathlib import Path
from typing import Optional

from api import catalog, storage
from api.errors import NotFoundError
from config import MEDIA_PATH, ORIGINAL_QUALITY, QUALITY_NAMES

logger = logging.getLogger(__name__)


def _original_relative(content: dict, episode: Optional[dict]) -> str:
    if episode is not None and episode.get("video_path"):
        return episode["video_path"]
    if content.get("video_path"):
        return content["video_path"]
    # Movies registered without an upload; also reached for episodes with no video
    return storage.movie_convention_path(content["id"])


async def resolve_video(
    content_id: int,
    episode_id: Optional[int] = None,
    quality: str = ORIGINAL_QUALITY,
    root: Optional[Path] = None,
) -> Path:
    """
    Resolve the file to stream.

    Raises:
        NotFoundError: unknown content, episode of another content, or no file on disk
    """
    root = root or MEDIA_PATH

    content = await catalog.get_content(content_id)
    if content is None:
        raise NotFoundError("Content not found")

    episode = None
    if episode_id is not None:
        episode = await catalog.get_episode(episode_id)
        if episode is None or episode["content_id"] != content_id:
            raise NotFoundError("Episode not found")

    original = _original_relative(content, episode)

    if quality in QUALITY_NAMES:
        rendition = storage.rendition_path(quality, Path(original).name)
        try:
            candidate = storage.absolute_path(root, rendition)
        except NotFoundError:
            candidate = None
        if candidate is not None and candidate.is_file():
            return candidate
        logger.debug(f"No {quality} rendition for content {content_id} (episode={episode_id}), serving original")
    elif quality != ORIGINAL_QUALITY:
        logger.debug(f"Unknown quality {quality!r} requested, serving original")

    path = storage.absolute_path(root, original)
    if not path.is_file():
        logger.warning(f"Original missing for content {content_id} (episode={episode_id}): {original}")
        raise NotFoundError("Video file not found")
    return path
