"""
HTTP API: catalog reads and writes, media uploads, streaming and static media.

This module is the single place where domain errors become HTTP responses;
everything below it raises api.errors exceptions.

Run with:
    python -m api.main
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException

from api import catalog, intake, job_queue, resolver, storage
from api.auth import CurrentUser, require_admin
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    rate_limit_exceeded_handler,
)
from api.database import configure_database, create_tables, database
from api.db_retry import DatabaseLockedError
from api.enums import JobStatus
from api.errors import CatalogError, InvalidInputError, NotFoundError, RangeNotSatisfiableError
from api.exception_utils import handle_api_exceptions
from api.schemas import (
    CategoryCreate,
    CategoryResponse,
    ContentForm,
    ContentListResponse,
    ContentResponse,
    ContentWriteResponse,
    EpisodeCreate,
    EpisodeListResponse,
    EpisodeResponse,
    EpisodeUpdate,
    GenreCreate,
    GenreResponse,
    JobResponse,
    PageParams,
    UploadResponse,
)
from api.streaming import serve_file
from config import (
    CORS_ALLOWED_ORIGINS,
    LOG_LEVEL,
    MAX_FORM_FIELD_SIZE,
    MAX_IMAGE_UPLOAD_SIZE,
    MAX_VIDEO_UPLOAD_SIZE,
    MEDIA_PATH,
    ORIGINAL_QUALITY,
    PORT,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_UPLOAD,
    TRANSCODE_CONCURRENCY,
)

logger = logging.getLogger(__name__)

# Initialize rate limiter
# Uses in-memory storage by default, can be configured to use Redis
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    # The worker module imports api.*; import it late so the API can be
    # loaded on its own
    from worker.transcoder import start_embedded_workers, stop_embedded_workers

    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For deployments with multiple instances, set RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    create_tables()
    await database.connect()
    await configure_database()
    # Test runs build their own throwaway media roots
    if not os.environ.get("ANIMESTREAM_TEST_MODE"):
        storage.ensure_layout(MEDIA_PATH)

    requeued = await job_queue.requeue_interrupted_jobs()
    if requeued:
        logger.info(f"Requeued {requeued} interrupted transcode job(s) on startup")
    start_embedded_workers(TRANSCODE_CONCURRENCY)

    yield

    await stop_embedded_workers()
    await database.disconnect()


app = FastAPI(title="AnimeStream", description="Anime streaming catalog and media API", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(RangeNotSatisfiableError)
async def range_not_satisfiable_handler(request: Request, exc: RangeNotSatisfiableError):
    """416 with the file size and no body."""
    return Response(
        status_code=416,
        headers={"Content-Range": f"bytes */{exc.size}", "Accept-Ranges": "bytes"},
    )


@app.exception_handler(CatalogError)
async def catalog_error_handler(request: Request, exc: CatalogError):
    """Map domain errors to their status codes. Server-side failures get a short message."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content={"detail": type(exc).default_detail})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(DatabaseLockedError)
async def database_locked_handler(request: Request, exc: DatabaseLockedError):
    """Handle database locked errors with a 503 response."""
    logger.warning(f"Database locked error: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Database temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Report malformed paths and query strings as 400 instead of 422."""
    return JSONResponse(status_code=400, content={"detail": _first_error(exc.errors())})


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)

# allow_credentials=True requires specific origins, not wildcards
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=bool(CORS_ALLOWED_ORIGINS),
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Origin", "Content-Type", "Accept", "Authorization", "Range", "If-Range", "X-Request-ID"],
    expose_headers=["Content-Length", "Content-Range", "Accept-Ranges", "Last-Modified", "X-Request-ID"],
    max_age=12 * 3600,
)


class StreamingStaticFiles(StaticFiles):
    """
    Static handler for the media tree (covers, thumbnails, HLS renditions).

    Sets HLS MIME types and cache headers, and answers misses with a JSON 404.
    """

    async def get_response(self, path: str, scope) -> Response:
        try:
            response = await super().get_response(path, scope)
        except HTTPException as e:
            if e.status_code == 404:
                return JSONResponse(status_code=404, content={"detail": "File not found"})
            raise
        except OSError as e:
            logger.warning(f"Storage unavailable for media file {path}: {e}")
            return JSONResponse(
                status_code=503,
                content={"detail": "Media storage temporarily unavailable. Please try again later."},
                headers={"Retry-After": "30"},
            )

        if path.endswith(".ts"):
            # Segments never change once written
            response.headers["Content-Type"] = "video/mp2t"
            response.headers["Cache-Control"] = "public, max-age=31536000"
        elif path.endswith(".m3u8"):
            response.headers["Content-Type"] = "application/vnd.apple.mpegurl"
            response.headers["Cache-Control"] = "no-cache"
        elif "thumbnails/" in path:
            # Covers are overwritten in place on re-upload
            response.headers["Cache-Control"] = "public, max-age=60, must-revalidate"
        return response


app.mount("/media", StreamingStaticFiles(directory=str(MEDIA_PATH), check_dir=False), name="media")


# =============================================================================
# Helpers
# =============================================================================


def _first_error(errors) -> str:
    if not errors:
        return "Invalid input"
    error = errors[0]
    location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
    message = error.get("msg", "Invalid input")
    return f"{location}: {message}" if location else message


async def _parse_content_form(request: Request):
    """
    Read the create/update multipart form.

    Returns (ContentForm, file parts by field name).
    """
    try:
        form = await request.form(max_part_size=MAX_FORM_FIELD_SIZE)
    except HTTPException as e:
        raise InvalidInputError(e.detail) from e

    files = {}
    fields = {}
    for key, value in form.multi_items():
        if isinstance(value, str):
            fields.setdefault(key, value)
        elif value.filename:
            files[key] = value

    raw = {
        "title": fields.get("title", ""),
        "description": fields.get("description", ""),
        "type": fields.get("type", ""),
        "release_date": fields.get("releaseDate"),
        "genre_ids": form.getlist("genreIds[]") or form.getlist("genreIds"),
        "rating": fields.get("rating"),
        "season_id": fields.get("season_id", fields.get("seasonId")),
    }

    episodes_blob = fields.get("episodes", "").strip()
    if episodes_blob:
        try:
            raw["episodes"] = json.loads(episodes_blob)
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"Failed to parse episodes: {e.msg}")

    try:
        content_form = ContentForm.model_validate(raw)
    except ValidationError as e:
        raise InvalidInputError(_first_error(e.errors()))
    return content_form, files


async def _content_or_404(content_id: int, relations=catalog.ALL_RELATIONS) -> dict:
    content = await catalog.get_content(content_id, relations)
    if content is None:
        raise NotFoundError("Content not found")
    return content


def _list_response(items, total: int, params: PageParams) -> dict:
    return {"contents": items, "total": total, "page": params.page, "page_size": params.page_size}


# =============================================================================
# Health
# =============================================================================


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns 503 if the database or the media root is unavailable.
    """
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
            "checked_at": result["checked_at"],
        },
    )


# =============================================================================
# Categories and genres
# =============================================================================


@app.get("/api/categories", response_model=List[CategoryResponse])
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_categories(request: Request):
    return await catalog.list_categories()


@app.post("/api/categories", status_code=201, response_model=CategoryResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("create_category", "Failed to create category")
async def create_category(request: Request, body: CategoryCreate, admin: CurrentUser = Depends(require_admin)):
    """Add a category; its name becomes a valid content type."""
    category = await catalog.create_category(body.name, body.description)
    logger.info(f"Admin {admin.user_id} created category {category['id']}: {body.name!r}")
    return category


@app.get("/api/genres", response_model=List[GenreResponse])
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_genres(request: Request):
    return await catalog.list_genres()


@app.post("/api/genres", status_code=201, response_model=GenreResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("create_genre", "Failed to create genre")
async def create_genre(request: Request, body: GenreCreate, admin: CurrentUser = Depends(require_admin)):
    genre = await catalog.create_genre(body.name)
    logger.info(f"Admin {admin.user_id} created genre {genre['id']}: {body.name!r}")
    return genre


# =============================================================================
# Contents
# =============================================================================


@app.get("/api/contents", response_model=ContentListResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_contents(
    request: Request,
    page: Optional[str] = None,
    pageSize: Optional[str] = None,
    type: Optional[str] = None,
    categoryId: Optional[int] = None,
):
    """List contents, newest first. categoryId takes precedence over type."""
    params = PageParams(page=page, page_size=pageSize)
    if categoryId is not None:
        items, total = await catalog.list_by_category(categoryId, params.page, params.page_size)
    else:
        items, total = await catalog.list_contents(params.page, params.page_size, type=type or None)
    return _list_response(items, total, params)


@app.get("/api/contents/search", response_model=ContentListResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def search_contents(
    request: Request,
    q: str = "",
    page: Optional[str] = None,
    pageSize: Optional[str] = None,
):
    """Case-insensitive title substring search."""
    params = PageParams(page=page, page_size=pageSize)
    if not q.strip():
        raise InvalidInputError("Search query is required")
    items, total = await catalog.search_contents(q, params.page, params.page_size)
    return _list_response(items, total, params)


@app.get("/api/contents/genre/{genre_id}", response_model=ContentListResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_contents_by_genre(
    request: Request,
    genre_id: int,
    page: Optional[str] = None,
    pageSize: Optional[str] = None,
):
    params = PageParams(page=page, page_size=pageSize)
    items, total = await catalog.list_by_genre(genre_id, params.page, params.page_size)
    return _list_response(items, total, params)


@app.get("/api/contents/category/{category_id}", response_model=ContentListResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_contents_by_category(
    request: Request,
    category_id: int,
    page: Optional[str] = None,
    pageSize: Optional[str] = None,
):
    params = PageParams(page=page, page_size=pageSize)
    items, total = await catalog.list_by_category(category_id, params.page, params.page_size)
    return _list_response(items, total, params)


@app.post("/api/contents/create", response_model=ContentWriteResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("create_content", "Failed to save content")
async def create_content(request: Request, admin: CurrentUser = Depends(require_admin)):
    """
    Create a content item, or update the existing one with the same title.

    Multipart fields: title, description, type, releaseDate, genreIds[], rating,
    season_id, episodes (JSON), plus coverImage and any per-episode video parts.
    """
    intake.check_content_length(request, MAX_VIDEO_UPLOAD_SIZE)
    form, files = await _parse_content_form(request)
    content, created = await catalog.upsert_content(form, files)
    logger.info(f"Admin {admin.user_id} {'created' if created else 'updated'} content {content['id']}: {form.title!r}")
    return {
        "message": "Content created successfully" if created else "Content updated successfully",
        "content": content,
    }


@app.get("/api/contents/{content_id}", response_model=ContentResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_content(request: Request, content_id: int):
    return await _content_or_404(content_id)


@app.put("/api/contents/{content_id}", response_model=ContentWriteResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("update_content", "Failed to save content")
async def update_content(request: Request, content_id: int, admin: CurrentUser = Depends(require_admin)):
    """Update a content item in place; same form as create."""
    intake.check_content_length(request, MAX_VIDEO_UPLOAD_SIZE)
    form, files = await _parse_content_form(request)
    content, _created = await catalog.upsert_content(form, files, content_id=content_id)
    logger.info(f"Admin {admin.user_id} updated content {content_id}")
    return {"message": "Content updated successfully", "content": content}


@app.delete("/api/contents/{content_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def delete_content(request: Request, content_id: int, admin: CurrentUser = Depends(require_admin)):
    """Soft-delete a content item with its episodes and links. Files stay on disk."""
    await _content_or_404(content_id, relations=())
    await catalog.soft_delete_content(content_id)
    logger.info(f"Admin {admin.user_id} deleted content {content_id}")
    return {"message": "Content deleted successfully"}


# =============================================================================
# Episodes
# =============================================================================


@app.get("/api/contents/{content_id}/episodes", response_model=EpisodeListResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_episodes(request: Request, content_id: int, season: Optional[int] = Query(None, ge=1)):
    content = await _content_or_404(content_id, relations=("genres", "categories"))
    episode_rows = await catalog.list_episodes(content_id, season)
    return {"episodes": episode_rows, "content": content}


@app.get("/api/contents/{content_id}/episodes/next", response_model=EpisodeResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_next_episode(
    request: Request,
    content_id: int,
    season: int = Query(..., ge=1),
    episode: int = Query(..., ge=0),
):
    """The episode after (season, episode): same season first, then the next season."""
    found = await catalog.next_episode(content_id, season, episode)
    if found is None:
        raise NotFoundError("No next episode found")
    return found


@app.get("/api/contents/{content_id}/episodes/latest", response_model=EpisodeResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_latest_episode(request: Request, content_id: int):
    found = await catalog.latest_episode(content_id)
    if found is None:
        raise NotFoundError("No episodes found")
    return found


@app.get("/api/contents/{content_id}/episodes/{episode_id}", response_model=EpisodeResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_episode(request: Request, content_id: int, episode_id: int):
    found = await catalog.get_episode(episode_id)
    if found is None or found["content_id"] != content_id:
        raise NotFoundError("Episode not found")
    return found


@app.post("/api/contents/{content_id}/episodes", status_code=201, response_model=EpisodeResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("create_episode", "Failed to save episode")
async def create_episode(
    request: Request, content_id: int, body: EpisodeCreate, admin: CurrentUser = Depends(require_admin)
):
    """Add one episode. videoPath, if given, is re-rooted under videos/original/."""
    episode = await catalog.add_episode(content_id, body.model_dump())
    logger.info(f"Admin {admin.user_id} created episode {episode['id']} of content {content_id}")
    return episode


@app.put("/api/contents/{content_id}/episodes/{episode_id}", response_model=EpisodeResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("update_episode", "Failed to save episode")
async def update_episode(
    request: Request,
    content_id: int,
    episode_id: int,
    body: EpisodeUpdate,
    admin: CurrentUser = Depends(require_admin),
):
    return await catalog.update_episode(content_id, episode_id, body.model_dump(exclude_none=True))


@app.delete("/api/contents/{content_id}/episodes/{episode_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def delete_episode(
    request: Request, content_id: int, episode_id: int, admin: CurrentUser = Depends(require_admin)
):
    """Soft-delete an episode and its links. Files stay on disk."""
    await catalog.delete_episode(content_id, episode_id)
    logger.info(f"Admin {admin.user_id} deleted episode {episode_id} of content {content_id}")
    return {"message": "Episode deleted successfully"}


# =============================================================================
# Media: streaming
# =============================================================================


@app.get("/api/media/stream/{content_id}")
async def stream_content(request: Request, content_id: int, quality: str = ORIGINAL_QUALITY):
    """Stream a movie-level original (or one of its renditions) with Range support."""
    path = await resolver.resolve_video(content_id, None, quality)
    return serve_file(path, request)


@app.get("/api/media/stream/{content_id}/episodes/{episode_id}")
async def stream_episode(request: Request, content_id: int, episode_id: int, quality: str = ORIGINAL_QUALITY):
    """Stream an episode's original (or one of its renditions) with Range support."""
    path = await resolver.resolve_video(content_id, episode_id, quality)
    return serve_file(path, request)


# =============================================================================
# Media: uploads
# =============================================================================


@app.post("/api/media/content/{content_id}/video", status_code=201, response_model=UploadResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("upload_video", "Failed to upload video")
async def upload_content_video(
    request: Request,
    content_id: int,
    video: UploadFile = File(...),
    admin: CurrentUser = Depends(require_admin),
):
    """Upload a movie-level original and queue it for transcoding."""
    intake.check_content_length(request, MAX_VIDEO_UPLOAD_SIZE)
    stored = await intake.upload_video(content_id, None, video)
    return {"path": stored.path, "job_id": stored.job_id}


# Older clients post here
app.add_api_route(
    "/api/contents/{content_id}/upload-video",
    upload_content_video,
    methods=["POST"],
    status_code=201,
    response_model=UploadResponse,
)


@app.post(
    "/api/media/content/{content_id}/episodes/{episode_id}/video",
    status_code=201,
    response_model=UploadResponse,
)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("upload_episode_video", "Failed to upload video")
async def upload_episode_video(
    request: Request,
    content_id: int,
    episode_id: int,
    video: UploadFile = File(...),
    admin: CurrentUser = Depends(require_admin),
):
    """Upload an episode original and queue it for transcoding."""
    intake.check_content_length(request, MAX_VIDEO_UPLOAD_SIZE)
    stored = await intake.upload_video(content_id, episode_id, video)
    return {"path": stored.path, "job_id": stored.job_id}


@app.post("/api/media/content/{content_id}/cover", status_code=201, response_model=UploadResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("upload_cover", "Failed to upload cover")
async def upload_content_cover(
    request: Request,
    content_id: int,
    cover: UploadFile = File(...),
    admin: CurrentUser = Depends(require_admin),
):
    intake.check_content_length(request, MAX_IMAGE_UPLOAD_SIZE)
    stored = await intake.upload_cover(content_id, cover)
    return {"path": stored.path}


@app.post("/api/media/episode/{episode_id}/thumbnail", status_code=201, response_model=UploadResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("upload_episode_thumbnail", "Failed to upload thumbnail")
async def upload_episode_thumbnail(
    request: Request,
    episode_id: int,
    thumbnail: UploadFile = File(...),
    admin: CurrentUser = Depends(require_admin),
):
    intake.check_content_length(request, MAX_IMAGE_UPLOAD_SIZE)
    stored = await intake.upload_episode_thumb(episode_id, thumbnail)
    return {"path": stored.path}


# =============================================================================
# Media: transcoding jobs
# =============================================================================


@app.get("/api/media/jobs")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_jobs(
    request: Request,
    status: Optional[JobStatus] = None,
    limit: int = Query(50, ge=1, le=500),
    admin: CurrentUser = Depends(require_admin),
):
    jobs = await job_queue.list_jobs(status.value if status else None, limit)
    return {"jobs": [JobResponse.model_validate(job.__dict__) for job in jobs]}


@app.get("/api/media/jobs/{job_id}", response_model=JobResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_job(request: Request, job_id: int, admin: CurrentUser = Depends(require_admin)):
    job = await job_queue.get_job(job_id)
    if job is None:
        raise NotFoundError("Job not found")
    return job.__dict__


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
