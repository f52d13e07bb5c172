"""
Pytest fixtures for AnimeStream tests.
Provides a throwaway SQLite database, a media root, sample rows, an app client
and auth headers.

The app reads its settings at import time, so the environment is pointed at a
temporary directory before anything from api/ or config is imported.
"""

import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest
import sqlalchemy as sa

# Set up test paths BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["ANIMESTREAM_TEST_MODE"] = "1"
os.environ["DATABASE_URL"] = f"sqlite:///{_test_temp_dir}/test.db"
os.environ["MEDIA_PATH"] = str(Path(_test_temp_dir) / "media")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["TRANSCODE_CONCURRENCY"] = "0"
os.environ["JWT_SECRET"] = "test-secret"

from api import storage  # noqa: E402
from api.auth import create_access_token  # noqa: E402
from api.database import (  # noqa: E402
    categories,
    content_genres,
    contents,
    database,
    episodes,
    genres,
    metadata,
)
from config import DATABASE_URL, MEDIA_PATH  # noqa: E402

# Body of the sample original; every byte is distinct modulo 256
SAMPLE_VIDEO_SIZE = 10000
SAMPLE_VIDEO_BYTES = bytes(i % 256 for i in range(SAMPLE_VIDEO_SIZE))

CATEGORY_NAMES = ("Anime", "Movie", "Series")
GENRE_NAMES = ("Action", "Comedy", "Drama")


@pytest.fixture(scope="function")
def test_db():
    """Recreate every table in the SQLite file and seed categories and genres."""
    engine = sa.create_engine(DATABASE_URL)
    metadata.drop_all(engine)
    metadata.create_all(engine)
    now = datetime.now(timezone.utc)
    with engine.begin() as conn:
        for name in CATEGORY_NAMES:
            conn.execute(categories.insert().values(name=name, description=f"{name} titles", created_at=now))
        for name in GENRE_NAMES:
            conn.execute(genres.insert().values(name=name, created_at=now))
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def test_storage() -> Path:
    """Fresh media root with the full directory layout."""
    if MEDIA_PATH.exists():
        shutil.rmtree(MEDIA_PATH)
    storage.ensure_layout(MEDIA_PATH)
    yield MEDIA_PATH
    shutil.rmtree(MEDIA_PATH, ignore_errors=True)


@pytest.fixture(scope="function")
async def db(test_db):
    """The app's database object, connected in the test's event loop."""
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture(scope="function")
def client(test_db, test_storage):
    """TestClient with the app lifespan running (connects the database)."""
    from fastapi.testclient import TestClient

    from api.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_token() -> str:
    return create_access_token(1, "admin")


@pytest.fixture
def admin_headers(admin_token: str) -> dict:
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture
def user_headers() -> dict:
    return {"Authorization": f"Bearer {create_access_token(2, 'user')}"}


def insert_content(engine, title: str = "Sample Show", type: str = "Anime", **values) -> int:
    """Insert a content row synchronously and return its id."""
    now = datetime.now(timezone.utc)
    with engine.begin() as conn:
        result = conn.execute(
            contents.insert().values(
                title=title,
                description=values.pop("description", "A sample show"),
                type=type,
                rating=values.pop("rating", 8.5),
                created_at=now,
                updated_at=now,
                **values,
            )
        )
        return result.inserted_primary_key[0]


def insert_episode(engine, content_id: int, episode_number: int = 1, season_number: int = 1, **values) -> int:
    now = datetime.now(timezone.utc)
    with engine.begin() as conn:
        result = conn.execute(
            episodes.insert().values(
                content_id=content_id,
                title=values.pop("title", f"Episode {episode_number}"),
                episode_number=episode_number,
                season_number=season_number,
                video_path=values.pop("video_path", ""),
                created_at=now,
                updated_at=now,
                **values,
            )
        )
        return result.inserted_primary_key[0]


@pytest.fixture
def sample_content(test_db, test_storage) -> dict:
    """An anime with one episode whose original is on disk."""
    content_id = insert_content(test_db)
    relative = f"videos/original/{content_id}_1700000000.mp4"
    (test_storage / relative).write_bytes(SAMPLE_VIDEO_BYTES)
    episode_id = insert_episode(test_db, content_id, video_path=relative)
    with test_db.begin() as conn:
        conn.execute(content_genres.insert().values(content_id=content_id, genre_id=1))
    return {
        "content_id": content_id,
        "episode_id": episode_id,
        "video_path": relative,
        "absolute_path": test_storage / relative,
        "size": SAMPLE_VIDEO_SIZE,
        "bytes": SAMPLE_VIDEO_BYTES,
    }


@pytest.fixture
def make_content(test_db):
    """Factory: make_content(title=..., type=..., **columns) -> content id."""

    def _make(title: str = "Sample Show", type: str = "Anime", **values) -> int:
        return insert_content(test_db, title, type, **values)

    return _make


@pytest.fixture
def make_episode(test_db):
    """Factory: make_episode(content_id, episode_number, season_number, **columns) -> episode id."""

    def _make(content_id: int, episode_number: int = 1, season_number: int = 1, **values) -> int:
        return insert_episode(test_db, content_id, episode_number, season_number, **values)

    return _make
