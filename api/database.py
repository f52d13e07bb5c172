from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL, DB_POOL_MAX_SIZE, DB_POOL_MIN_SIZE, DB_SSLMODE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_postgres_url(url: str) -> bool:
    return url.startswith(("postgresql", "postgres"))


def _database_options() -> dict:
    """Backend-specific connection options (pool sizing only applies to asyncpg)."""
    if not is_postgres_url(DATABASE_URL):
        return {}
    options = {"min_size": DB_POOL_MIN_SIZE, "max_size": DB_POOL_MAX_SIZE}
    if DB_SSLMODE and DB_SSLMODE != "disable":
        options["ssl"] = True
    return options


# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL, **_database_options())
metadata = sa.MetaData()


async def configure_database():
    """
    Configure database-specific settings after connection.
    PostgreSQL needs nothing. SQLite is switched to WAL so a standalone worker
    process can read while the API writes.
    """
    if database.url.dialect == "sqlite":
        await database.execute("PRAGMA journal_mode=WAL")


# Content type tags must match one of these names (e.g. "Anime", "Movie", "Series")
categories = sa.Table(
    "categories",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100), unique=True, nullable=False),
    sa.Column("description", sa.Text, default=""),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
)

genres = sa.Table(
    "genres",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100), unique=True, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
)

# Seasons are managed elsewhere; contents only reference them
seasons = sa.Table(
    "seasons",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("year", sa.Integer, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
)

# Catalog items (movie, series, anime)
#
# PATH SEMANTICS:
# ---------------
# - cover_image: relative to MEDIA_PATH, always under thumbnails/content/
# - video_path: optional movie-level original under videos/original/, set when a
#   video is uploaded for the content without an episode
# All paths use forward slashes; the resolver joins them onto MEDIA_PATH.
#
# SOFT DELETE:
# ------------
# deleted_at != NULL hides the row (and its episodes/links, which are stamped in
# the same transaction). Files on disk are retained.
contents = sa.Table(
    "contents",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, default=""),
    sa.Column("type", sa.String(20), nullable=False),  # must equal a categories.name
    sa.Column("cover_image", sa.String(255), nullable=True),
    sa.Column("video_path", sa.String(255), nullable=True),
    sa.Column("release_date", sa.DateTime(timezone=True), nullable=True),
    sa.Column("duration", sa.Integer, nullable=True),  # minutes, movies only
    sa.Column(
        "rating",
        sa.Float,
        sa.CheckConstraint("rating >= 0 AND rating <= 10", name="ck_contents_rating_range"),
        default=0,
    ),
    sa.Column("season_id", sa.Integer, sa.ForeignKey("seasons.id", ondelete="SET NULL"), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow),
    sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_contents_title", "title"),
    sa.Index("ix_contents_type", "type"),
    sa.Index("ix_contents_deleted_at", "deleted_at"),
)

content_genres = sa.Table(
    "content_genres",
    metadata,
    sa.Column("content_id", sa.Integer, sa.ForeignKey("contents.id", ondelete="CASCADE"), primary_key=True),
    sa.Column("genre_id", sa.Integer, sa.ForeignKey("genres.id", ondelete="CASCADE"), primary_key=True),
)

content_categories = sa.Table(
    "content_categories",
    metadata,
    sa.Column("content_id", sa.Integer, sa.ForeignKey("contents.id", ondelete="CASCADE"), primary_key=True),
    sa.Column("category_id", sa.Integer, sa.ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True),
)

episodes = sa.Table(
    "episodes",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("content_id", sa.Integer, sa.ForeignKey("contents.id", ondelete="CASCADE"), nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, default=""),
    sa.Column("type", sa.String(20), nullable=False, default="episode"),
    sa.Column(
        "episode_number",
        sa.Integer,
        sa.CheckConstraint("episode_number >= 1", name="ck_episodes_episode_number"),
        nullable=False,
    ),
    sa.Column(
        "season_number",
        sa.Integer,
        sa.CheckConstraint("season_number >= 1", name="ck_episodes_season_number"),
        nullable=False,
        default=1,
    ),
    sa.Column("video_path", sa.String(255), nullable=False, default=""),  # relative, videos/original/...
    sa.Column(
        "duration",
        sa.Integer,
        sa.CheckConstraint("duration >= 0", name="ck_episodes_duration"),
        default=0,
    ),  # seconds
    sa.Column("thumbnail_url", sa.String(255), nullable=True),  # relative, thumbnails/episodes/...
    sa.Column("release_date", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow),
    sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    sa.UniqueConstraint("content_id", "season_number", "episode_number", name="uq_episodes_coordinates"),
    sa.Index("ix_episodes_content_id", "content_id"),
)

# Playback links. Episode coordinates (season_number, episode_number) point at an
# episode of the same content.
#
# - type 'self-hosted': url is a relative media path, server is 'local'
# - type 'embed': url is the raw provider URL; provider is set only for
#   allow-listed hosts and drives iframe rendering at response time
stream_links = sa.Table(
    "stream_links",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("content_id", sa.Integer, sa.ForeignKey("contents.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("quality", sa.String(20), default=""),
    sa.Column("url", sa.Text, nullable=False),
    sa.Column(
        "type",
        sa.String(20),
        sa.CheckConstraint("type IN ('embed', 'self-hosted')", name="ck_stream_links_type"),
        default="embed",
    ),
    sa.Column("provider", sa.String(50), nullable=True),
    sa.Column("server", sa.String(50), nullable=False, default="local"),
    sa.Column("episode_number", sa.Integer, default=1),
    sa.Column("season_number", sa.Integer, default=1),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow),
    sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_stream_links_content_id", "content_id"),
)

download_links = sa.Table(
    "download_links",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("content_id", sa.Integer, sa.ForeignKey("contents.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("quality", sa.String(20), default=""),
    sa.Column("url", sa.Text, nullable=False),
    sa.Column("server", sa.String(50), nullable=False, default="external"),
    sa.Column("episode_number", sa.Integer, default=1),
    sa.Column("season_number", sa.Integer, default=1),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow),
    sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_download_links_content_id", "content_id"),
)

# Transcoding jobs
#
# STATE SEMANTICS:
# ----------------
# - queued: created by upload intake, waiting for a worker
# - running: claimed by worker_id; current_rung names the rung in progress
# - completed: every rung of the ladder produced a playlist
# - failed: a rung failed; current_rung and error record where and why
#
# STATE TRANSITIONS:
# -----------------
# 1. Intake: insert (status=queued, submitted_at)
# 2. Claim: queued -> running (worker_id, started_at), atomic per row
# 3. Progress: current_rung advances through the ladder in order
# 4. Finish: running -> completed (completed_at)
# 5. Fail: running -> failed (completed_at, error); terminal, never retried
# 6. Restart: rows left running by a crashed process go back to queued
#
# Partial renditions and the original are kept on failure so playback can fall
# back to the original.
transcoding_jobs = sa.Table(
    "transcoding_jobs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("content_id", sa.Integer, sa.ForeignKey("contents.id", ondelete="CASCADE"), nullable=False),
    sa.Column("episode_id", sa.Integer, sa.ForeignKey("episodes.id", ondelete="SET NULL"), nullable=True),
    sa.Column("source_filename", sa.String(255), nullable=False),
    sa.Column("source_path", sa.String(255), nullable=False),  # relative to MEDIA_PATH
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed')",
            name="ck_transcoding_jobs_status",
        ),
        nullable=False,
        default="queued",
    ),
    sa.Column("current_rung", sa.String(10), nullable=True),
    sa.Column("error", sa.Text, nullable=True),
    sa.Column("worker_id", sa.String(36), nullable=True),
    sa.Column("submitted_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_transcoding_jobs_status", "status"),
    sa.Index("ix_transcoding_jobs_submitted_at", "submitted_at"),
)


def create_tables():
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    connect_args = {}
    if is_postgres_url(DATABASE_URL) and DB_SSLMODE:
        connect_args["sslmode"] = DB_SSLMODE
    engine = sa.create_engine(DATABASE_URL, connect_args=connect_args)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
