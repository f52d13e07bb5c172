"""
Catalog persistence: contents, episodes, genres/categories and playback links.

Everything is id-keyed. Relations are loaded with one IN query per relation
for the whole page of contents, and which relations to load is the caller's
decision (see ALL_RELATIONS).

Intake of a whole content item (multipart form + episodes JSON) goes through
upsert_content(): a content is matched by title, updated in place if found,
and its episodes and links are replaced wholesale when new ones are sent.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

import sqlalchemy as sa

from api import storage
from api.database import (
    categories,
    content_categories,
    content_genres,
    contents,
    database,
    download_links,
    episodes,
    genres,
    stream_links,
)
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry, fetch_val_with_retry
from api.embed import classify_embed_url
from api.enums import LinkServer, MediaKind, StreamLinkType
from api.errors import InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)

ALL_RELATIONS = frozenset({"episodes", "genres", "categories", "stream_links", "download_links"})

CONTENT_FIELDS = ("title", "description", "type", "release_date", "duration", "rating", "season_id")


def _row_dict(row) -> dict:
    return dict(row)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# =============================================================================
# Contents
# =============================================================================


async def get_content(content_id: int, relations: Iterable[str] = frozenset()) -> Optional[dict]:
    """Load a live content row plus the requested relations, or None."""
    row = await fetch_one_with_retry(
        contents.select().where(contents.c.id == content_id).where(contents.c.deleted_at.is_(None))
    )
    if row is None:
        return None
    loaded = await attach_relations([_row_dict(row)], relations)
    return loaded[0]


async def get_content_by_title(title: str) -> Optional[dict]:
    row = await fetch_one_with_retry(
        contents.select()
        .where(contents.c.title == title)
        .where(contents.c.deleted_at.is_(None))
        .order_by(contents.c.id)
        .limit(1)
    )
    return _row_dict(row) if row else None


async def _check_content_type(type_name: str) -> None:
    found = await fetch_val_with_retry(sa.select(categories.c.id).where(categories.c.name == type_name))
    if found is None:
        raise InvalidInputError(f"Unknown content type: {type_name}")


async def create_content(fields: dict) -> int:
    """Insert a content row. Raises InvalidInputError if type is not a category name."""
    await _check_content_type(fields.get("type", ""))
    values = {k: fields[k] for k in CONTENT_FIELDS if k in fields}
    content_id = await db_execute_with_retry(contents.insert().values(**values))
    logger.info(f"Created content {content_id}: {fields.get('title')!r}")
    return content_id


async def update_content(content_id: int, fields: dict) -> None:
    if "type" in fields:
        await _check_content_type(fields["type"])
    values = {k: fields[k] for k in CONTENT_FIELDS if k in fields}
    values["updated_at"] = datetime.now(timezone.utc)
    await db_execute_with_retry(contents.update().where(contents.c.id == content_id).values(**values))
    logger.info(f"Updated content {content_id}")


async def soft_delete_content(content_id: int) -> None:
    """Hide a content and everything hanging off it. Files stay on disk."""
    if await get_content(content_id) is None:
        raise NotFoundError("Content not found")

    now = datetime.now(timezone.utc)
    async with database.transaction():
        await database.execute(contents.update().where(contents.c.id == content_id).values(deleted_at=now))
        for table in (episodes, stream_links, download_links):
            await database.execute(
                table.update()
                .where(table.c.content_id == content_id)
                .where(table.c.deleted_at.is_(None))
                .values(deleted_at=now)
            )
    logger.info(f"Soft-deleted content {content_id}")


async def set_cover_image(content_id: int, path: str) -> None:
    await db_execute_with_retry(
        contents.update()
        .where(contents.c.id == content_id)
        .values(cover_image=path, updated_at=datetime.now(timezone.utc))
    )


async def set_content_video_path(content_id: int, path: str) -> None:
    await db_execute_with_retry(
        contents.update()
        .where(contents.c.id == content_id)
        .values(video_path=path, updated_at=datetime.now(timezone.utc))
    )


# =============================================================================
# Listing
# =============================================================================


async def _paginate(condition, page: int, page_size: int, relations: Iterable[str]) -> Tuple[List[dict], int]:
    condition = sa.and_(contents.c.deleted_at.is_(None), condition)
    total = await fetch_val_with_retry(sa.select(sa.func.count()).select_from(contents).where(condition))
    rows = await fetch_all_with_retry(
        contents.select()
        .where(condition)
        .order_by(contents.c.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = await attach_relations([_row_dict(r) for r in rows], relations)
    return items, total or 0


async def list_contents(
    page: int, page_size: int, type: Optional[str] = None, relations: Iterable[str] = ALL_RELATIONS
) -> Tuple[List[dict], int]:
    condition = contents.c.type == type if type else sa.true()
    return await _paginate(condition, page, page_size, relations)


async def search_contents(
    q: str, page: int, page_size: int, relations: Iterable[str] = ALL_RELATIONS
) -> Tuple[List[dict], int]:
    """Case-insensitive title substring search. LIKE wildcards in q match literally."""
    pattern = f"%{_escape_like(q.strip())}%"
    return await _paginate(contents.c.title.ilike(pattern, escape="\\"), page, page_size, relations)


async def list_by_genre(
    genre_id: int, page: int, page_size: int, relations: Iterable[str] = ALL_RELATIONS
) -> Tuple[List[dict], int]:
    subquery = sa.select(content_genres.c.content_id).where(content_genres.c.genre_id == genre_id)
    return await _paginate(contents.c.id.in_(subquery), page, page_size, relations)


async def list_by_category(
    category_id: int, page: int, page_size: int, relations: Iterable[str] = ALL_RELATIONS
) -> Tuple[List[dict], int]:
    """Contents whose type is the name of the given category."""
    subquery = sa.select(categories.c.name).where(categories.c.id == category_id)
    return await _paginate(contents.c.type.in_(subquery), page, page_size, relations)


async def attach_relations(items: List[dict], relations: Iterable[str]) -> List[dict]:
    """Add the requested relation lists to each content dict (in place)."""
    relations = set(relations)
    unknown = relations - ALL_RELATIONS
    if unknown:
        raise ValueError(f"Unknown relations: {sorted(unknown)}")
    if not items or not relations:
        return items

    ids = [item["id"] for item in items]
    grouped: Dict[str, Dict[int, List[dict]]] = {name: {} for name in relations}

    if "episodes" in relations:
        rows = await fetch_all_with_retry(
            episodes.select()
            .where(episodes.c.content_id.in_(ids))
            .where(episodes.c.deleted_at.is_(None))
            .order_by(episodes.c.season_number, episodes.c.episode_number)
        )
        for row in rows:
            grouped["episodes"].setdefault(row["content_id"], []).append(_row_dict(row))

    if "genres" in relations:
        rows = await fetch_all_with_retry(
            sa.select(content_genres.c.content_id, genres.c.id, genres.c.name)
            .select_from(content_genres.join(genres, genres.c.id == content_genres.c.genre_id))
            .where(content_genres.c.content_id.in_(ids))
            .order_by(genres.c.name)
        )
        for row in rows:
            grouped["genres"].setdefault(row["content_id"], []).append({"id": row["id"], "name": row["name"]})

    if "categories" in relations:
        rows = await fetch_all_with_retry(
            sa.select(content_categories.c.content_id, categories.c.id, categories.c.name, categories.c.description)
            .select_from(content_categories.join(categories, categories.c.id == content_categories.c.category_id))
            .where(content_categories.c.content_id.in_(ids))
            .order_by(categories.c.name)
        )
        for row in rows:
            grouped["categories"].setdefault(row["content_id"], []).append(
                {"id": row["id"], "name": row["name"], "description": row["description"]}
            )

    for name, table in (("stream_links", stream_links), ("download_links", download_links)):
        if name not in relations:
            continue
        rows = await fetch_all_with_retry(
            table.select()
            .where(table.c.content_id.in_(ids))
            .where(table.c.deleted_at.is_(None))
            .order_by(table.c.season_number, table.c.episode_number, table.c.id)
        )
        for row in rows:
            grouped[name].setdefault(row["content_id"], []).append(_row_dict(row))

    for item in items:
        for name in relations:
            item[name] = grouped[name].get(item["id"], [])
    return items


# =============================================================================
# Relations
# =============================================================================


async def replace_genres(content_id: int, genre_ids: Iterable[int]) -> None:
    """Replace a content's genres. Unknown ids are dropped; an empty list is a no-op."""
    genre_ids = sorted(set(genre_ids))
    if not genre_ids:
        return
    rows = await fetch_all_with_retry(sa.select(genres.c.id).where(genres.c.id.in_(genre_ids)))
    known = [row["id"] for row in rows]
    if len(known) != len(genre_ids):
        logger.warning(f"Ignoring unknown genre ids for content {content_id}: {set(genre_ids) - set(known)}")

    async with database.transaction():
        await database.execute(content_genres.delete().where(content_genres.c.content_id == content_id))
        for genre_id in known:
            await database.execute(content_genres.insert().values(content_id=content_id, genre_id=genre_id))


def _is_web_url(url: str) -> bool:
    return urlsplit(url).scheme.lower() in ("http", "https")


def self_hosted_link_url(url: str) -> str:
    """
    Stored URL for a self-hosted link given as a URL or path instead of a file part.

    http(s) URLs are kept as-is; anything else is a media path and is
    re-rooted under videos/original/.

    Raises:
        InvalidInputError: if the value is empty or has no usable file name
    """
    url = (url or "").strip()
    if not url:
        raise InvalidInputError("Stream link URL is required")
    if _is_web_url(url):
        return url
    return storage.normalize_media_path(url, MediaKind.ORIGINAL_VIDEO)


async def list_categories() -> List[dict]:
    rows = await fetch_all_with_retry(categories.select().order_by(categories.c.name))
    return [_row_dict(r) for r in rows]


async def create_category(name: str, description: str = "") -> dict:
    """
    Insert a category. Its name becomes a valid content type.

    Raises:
        InvalidInputError: if the name is taken
    """
    taken = await fetch_val_with_retry(sa.select(categories.c.id).where(categories.c.name == name))
    if taken is not None:
        raise InvalidInputError(f"Category already exists: {name}")
    category_id = await db_execute_with_retry(categories.insert().values(name=name, description=description))
    logger.info(f"Created category {category_id}: {name!r}")
    row = await fetch_one_with_retry(categories.select().where(categories.c.id == category_id))
    return _row_dict(row)


async def list_genres() -> List[dict]:
    rows = await fetch_all_with_retry(genres.select().order_by(genres.c.name))
    return [_row_dict(r) for r in rows]


async def create_genre(name: str) -> dict:
    """
    Insert a genre.

    Raises:
        InvalidInputError: if the name is taken
    """
    taken = await fetch_val_with_retry(sa.select(genres.c.id).where(genres.c.name == name))
    if taken is not None:
        raise InvalidInputError(f"Genre already exists: {name}")
    genre_id = await db_execute_with_retry(genres.insert().values(name=name))
    logger.info(f"Created genre {genre_id}: {name!r}")
    row = await fetch_one_with_retry(genres.select().where(genres.c.id == genre_id))
    return _row_dict(row)


async def delete_content_episodes(content_id: int) -> None:
    """Hard-delete all episodes and links of a content before they are re-created."""
    async with database.transaction():
        for table in (stream_links, download_links, episodes):
            await database.execute(table.delete().where(table.c.content_id == content_id))
    logger.info(f"Removed previous episodes and links of content {content_id}")


async def create_episode(content_id: int, fields: dict) -> int:
    """
    Insert an episode.

    Raises:
        InvalidInputError: if (content, season, episode) is already taken
    """
    season_number = fields.get("season_number") or 1
    episode_number = fields["episode_number"]
    await _claim_coordinates(content_id, season_number, episode_number)

    return await db_execute_with_retry(
        episodes.insert().values(
            content_id=content_id,
            title=fields["title"],
            description=fields.get("description", ""),
            type="episode",
            episode_number=episode_number,
            season_number=season_number,
            video_path=fields.get("video_path", ""),
            duration=fields.get("duration", 0),
            release_date=fields.get("release_date"),
        )
    )


async def add_stream_link(content_id: int, fields: dict) -> int:
    return await db_execute_with_retry(
        stream_links.insert().values(
            content_id=content_id,
            name=fields["name"],
            quality=fields.get("quality", ""),
            url=fields["url"],
            type=fields.get("type", StreamLinkType.EMBED.value),
            provider=fields.get("provider"),
            server=fields.get("server", LinkServer.LOCAL.value),
            episode_number=fields.get("episode_number", 1),
            season_number=fields.get("season_number", 1),
        )
    )


async def add_download_link(content_id: int, fields: dict) -> int:
    return await db_execute_with_retry(
        download_links.insert().values(
            content_id=content_id,
            name=fields["name"],
            quality=fields.get("quality", ""),
            url=fields["url"],
            server=fields.get("server", LinkServer.EXTERNAL.value),
            episode_number=fields.get("episode_number", 1),
            season_number=fields.get("season_number", 1),
        )
    )


# =============================================================================
# Episodes
# =============================================================================


def _live_episodes(content_id: int):
    return episodes.select().where(episodes.c.content_id == content_id).where(episodes.c.deleted_at.is_(None))


async def get_episode(episode_id: int) -> Optional[dict]:
    row = await fetch_one_with_retry(
        episodes.select().where(episodes.c.id == episode_id).where(episodes.c.deleted_at.is_(None))
    )
    return _row_dict(row) if row else None


async def list_episodes(content_id: int, season: Optional[int] = None) -> List[dict]:
    query = _live_episodes(content_id)
    if season is not None:
        query = query.where(episodes.c.season_number == season)
    rows = await fetch_all_with_retry(query.order_by(episodes.c.season_number, episodes.c.episode_number))
    return [_row_dict(r) for r in rows]


async def next_episode(content_id: int, season: int, episode: int) -> Optional[dict]:
    """Next episode in the same season, else the first episode of a later season."""
    row = await fetch_one_with_retry(
        _live_episodes(content_id)
        .where(episodes.c.season_number == season)
        .where(episodes.c.episode_number > episode)
        .order_by(episodes.c.episode_number)
        .limit(1)
    )
    if row is None:
        row = await fetch_one_with_retry(
            _live_episodes(content_id)
            .where(episodes.c.season_number > season)
            .order_by(episodes.c.season_number, episodes.c.episode_number)
            .limit(1)
        )
    return _row_dict(row) if row else None


async def latest_episode(content_id: int) -> Optional[dict]:
    row = await fetch_one_with_retry(
        _live_episodes(content_id)
        .order_by(episodes.c.season_number.desc(), episodes.c.episode_number.desc())
        .limit(1)
    )
    return _row_dict(row) if row else None


EPISODE_FIELDS = ("title", "description", "episode_number", "season_number", "duration", "release_date", "video_path")


async def _claim_coordinates(
    content_id: int, season_number: int, episode_number: int, exclude_id: Optional[int] = None
) -> None:
    """Make (season, episode) of a content available, or raise if a live episode has it."""
    at_coordinates = sa.and_(
        episodes.c.content_id == content_id,
        episodes.c.season_number == season_number,
        episodes.c.episode_number == episode_number,
    )
    query = sa.select(episodes.c.id).where(at_coordinates).where(episodes.c.deleted_at.is_(None))
    if exclude_id is not None:
        query = query.where(episodes.c.id != exclude_id)
    if await fetch_val_with_retry(query) is not None:
        raise InvalidInputError(f"Duplicate episode S{season_number}E{episode_number}")

    # Soft-deleted rows still hold the unique index
    await db_execute_with_retry(episodes.delete().where(at_coordinates).where(episodes.c.deleted_at.isnot(None)))


def _episode_values(fields: dict) -> dict:
    values = {k: fields[k] for k in EPISODE_FIELDS if k in fields}
    if values.get("video_path"):
        values["video_path"] = storage.normalize_media_path(values["video_path"], MediaKind.ORIGINAL_VIDEO)
    return values


async def add_episode(content_id: int, fields: dict) -> dict:
    """
    Create a single episode of a live content.

    Raises:
        NotFoundError: if the content does not exist
        InvalidInputError: if (season, episode) is taken or the video path is unusable
    """
    if await get_content(content_id) is None:
        raise NotFoundError("Content not found")
    episode_id = await create_episode(content_id, _episode_values(fields))
    logger.info(f"Created episode {episode_id} of content {content_id}")
    return await get_episode(episode_id)


async def update_episode(content_id: int, episode_id: int, fields: dict) -> dict:
    """
    Update an episode in place. Links follow the episode when it is renumbered.

    Raises:
        NotFoundError: if the episode is not a live episode of content_id
        InvalidInputError: if the new (season, episode) is taken
    """
    episode = await get_episode(episode_id)
    if episode is None or episode["content_id"] != content_id:
        raise NotFoundError("Episode not found")

    values = _episode_values(fields)
    old = (episode["season_number"], episode["episode_number"])
    new = (values.get("season_number", old[0]), values.get("episode_number", old[1]))
    if new != old:
        await _claim_coordinates(content_id, new[0], new[1], exclude_id=episode_id)
    values["updated_at"] = datetime.now(timezone.utc)

    async with database.transaction():
        await database.execute(episodes.update().where(episodes.c.id == episode_id).values(**values))
        if new != old:
            for table in (stream_links, download_links):
                await database.execute(
                    table.update()
                    .where(table.c.content_id == content_id)
                    .where(table.c.season_number == old[0])
                    .where(table.c.episode_number == old[1])
                    .where(table.c.deleted_at.is_(None))
                    .values(season_number=new[0], episode_number=new[1])
                )
    logger.info(f"Updated episode {episode_id} of content {content_id}")
    return await get_episode(episode_id)


async def delete_episode(content_id: int, episode_id: int) -> None:
    """Soft-delete an episode and the links at its coordinates. Files stay on disk."""
    episode = await get_episode(episode_id)
    if episode is None or episode["content_id"] != content_id:
        raise NotFoundError("Episode not found")

    now = datetime.now(timezone.utc)
    async with database.transaction():
        await database.execute(episodes.update().where(episodes.c.id == episode_id).values(deleted_at=now))
        for table in (stream_links, download_links):
            await database.execute(
                table.update()
                .where(table.c.content_id == content_id)
                .where(table.c.season_number == episode["season_number"])
                .where(table.c.episode_number == episode["episode_number"])
                .where(table.c.deleted_at.is_(None))
                .values(deleted_at=now)
            )
    logger.info(f"Soft-deleted episode {episode_id} of content {content_id}")


async def set_episode_video_path(episode_id: int, path: str) -> None:
    await db_execute_with_retry(
        episodes.update()
        .where(episodes.c.id == episode_id)
        .values(video_path=path, updated_at=datetime.now(timezone.utc))
    )


async def set_episode_thumbnail(episode_id: int, path: str) -> None:
    await db_execute_with_retry(
        episodes.update()
        .where(episodes.c.id == episode_id)
        .values(thumbnail_url=path, updated_at=datetime.now(timezone.utc))
    )


# =============================================================================
# Intake
# =============================================================================


async def upsert_content(form, files: dict, content_id: Optional[int] = None) -> Tuple[dict, bool]:
    """
    Create or update a content item from a parsed ContentForm.

    Without content_id the content is matched by title; with it (PUT) the id is
    fixed and the title may change. Returns (content with all relations, created).

    Args:
        form: api.schemas.ContentForm
        files: multipart file parts by field name (coverImage, video fields)
        content_id: Content to update, or None to upsert on title
    """
    # intake imports this module
    from api import intake

    fields = {
        "title": form.title,
        "description": form.description,
        "type": form.type,
        "release_date": form.release_date,
        "rating": form.rating,
        "season_id": form.season_id,
    }

    if content_id is not None:
        existing = await get_content(content_id)
        if existing is None:
            raise NotFoundError("Content not found")
        holder = await get_content_by_title(form.title)
        if holder is not None and holder["id"] != content_id:
            raise InvalidInputError(f"Another content already has the title {form.title!r}")
    else:
        existing = await get_content_by_title(form.title)

    if existing is not None:
        content_id = existing["id"]
        await update_content(content_id, fields)
    else:
        content_id = await create_content(fields)
    created = existing is None

    cover = files.get("coverImage")
    if cover is not None:
        await intake.upload_cover(content_id, cover)

    if form.genre_ids:
        await replace_genres(content_id, form.genre_ids)

    if form.episodes is not None:
        if not created:
            await delete_content_episodes(content_id)
        for ep in form.episodes:
            await _create_episode_with_links(content_id, ep, files, intake)

    content = await get_content(content_id, ALL_RELATIONS)
    return content, created


async def _create_episode_with_links(content_id: int, ep, files: dict, intake) -> None:
    coordinates = {"episode_number": ep.episode_number, "season_number": ep.season_number}
    episode_id = await create_episode(
        content_id,
        {"title": ep.title, "description": ep.description, **coordinates},
    )

    for link in ep.stream_links:
        if link.type == StreamLinkType.SELF_HOSTED and link.video_field:
            upload = files.get(link.video_field)
            if upload is None:
                logger.warning(f"No video file in field {link.video_field!r} for episode {episode_id}, skipping link")
                continue
            stored = await intake.upload_video(content_id, episode_id, upload)
            await add_stream_link(
                content_id,
                {
                    "name": link.name,
                    "quality": link.quality,
                    "type": StreamLinkType.SELF_HOSTED.value,
                    "server": LinkServer.LOCAL.value,
                    "url": stored.path,
                    **coordinates,
                },
            )
            continue

        provider = None
        server = LinkServer.EXTERNAL
        if link.type == StreamLinkType.EMBED:
            url, provider = classify_embed_url(link.url)
        else:
            url = self_hosted_link_url(link.url)
            if not _is_web_url(url):
                server = LinkServer.LOCAL
        await add_stream_link(
            content_id,
            {
                "name": link.name,
                "quality": link.quality,
                "type": link.type.value,
                "provider": provider,
                "server": server.value,
                "url": url,
                **coordinates,
            },
        )

    for link in ep.download_links:
        await add_download_link(
            content_id,
            {"name": link.name, "quality": link.quality, "url": link.url, "server": link.name, **coordinates},
        )
