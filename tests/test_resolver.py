"""Tests for playback link resolution and its fallback to the original."""

from datetime import datetime, timezone

import pytest

from api.database import contents
from api.errors import NotFoundError
from api.resolver import resolve_video


def _rendition(root, quality, content_id):
    path = root / "videos" / "transcoded" / quality / f"{content_id}_1700000000.m3u8"
    path.write_text("#EXTM3U\n")
    return path


class TestResolveVideo:
    """Tests for resolve_video."""

    @pytest.mark.asyncio
    async def test_original_quality(self, db, sample_content):
        path = await resolve_video(sample_content["content_id"], sample_content["episode_id"], "original")
        assert path == sample_content["absolute_path"].resolve()

    @pytest.mark.asyncio
    async def test_rendition_when_present(self, db, sample_content, test_storage):
        playlist = _rendition(test_storage, "480p", sample_content["content_id"])

        path = await resolve_video(sample_content["content_id"], sample_content["episode_id"], "480p")

        assert path == playlist.resolve()

    @pytest.mark.asyncio
    async def test_falls_back_to_original(self, db, sample_content, test_storage):
        """A missing rung never turns into a 404 while the original exists."""
        _rendition(test_storage, "240p", sample_content["content_id"])

        path = await resolve_video(sample_content["content_id"], sample_content["episode_id"], "1080p")

        assert path == sample_content["absolute_path"].resolve()

    @pytest.mark.asyncio
    async def test_unknown_quality_falls_back(self, db, sample_content):
        path = await resolve_video(sample_content["content_id"], sample_content["episode_id"], "4k")
        assert path == sample_content["absolute_path"].resolve()

    @pytest.mark.asyncio
    async def test_content_level_video(self, db, make_content, test_storage):
        relative = "videos/original/77_1700000001.mp4"
        (test_storage / relative).write_bytes(b"movie")
        content_id = make_content(title="Film", type="Movie", video_path=relative)

        path = await resolve_video(content_id)

        assert path.read_bytes() == b"movie"

    @pytest.mark.asyncio
    async def test_episode_without_video_uses_movie_convention(self, db, make_content, make_episode, test_storage):
        content_id = make_content(title="Single Episode Movie", type="Movie")
        episode_id = make_episode(content_id)
        (test_storage / f"videos/original/{content_id}.mp4").write_bytes(b"whole movie")

        path = await resolve_video(content_id, episode_id)

        assert path.name == f"{content_id}.mp4"

    @pytest.mark.asyncio
    async def test_missing_original(self, db, sample_content):
        sample_content["absolute_path"].unlink()
        with pytest.raises(NotFoundError, match="Video file not found"):
            await resolve_video(sample_content["content_id"], sample_content["episode_id"], "720p")

    @pytest.mark.asyncio
    async def test_unknown_content(self, db):
        with pytest.raises(NotFoundError, match="Content not found"):
            await resolve_video(12345)

    @pytest.mark.asyncio
    async def test_episode_of_other_content(self, db, sample_content, make_content):
        other = make_content(title="Another")
        with pytest.raises(NotFoundError, match="Episode not found"):
            await resolve_video(other, sample_content["episode_id"])

    @pytest.mark.asyncio
    async def test_deleted_content(self, db, sample_content, test_db):
        with test_db.begin() as conn:
            conn.execute(
                contents.update()
                .where(contents.c.id == sample_content["content_id"])
                .values(deleted_at=datetime.now(timezone.utc))
            )
        with pytest.raises(NotFoundError):
            await resolve_video(sample_content["content_id"], sample_content["episode_id"])

    @pytest.mark.asyncio
    async def test_stored_path_cannot_escape_root(self, db, make_content):
        content_id = make_content(title="Escaper", type="Movie", video_path="../../etc/passwd")
        with pytest.raises(NotFoundError):
            await resolve_video(content_id)
