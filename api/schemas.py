from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from api.embed import render_embed
from api.enums import StreamLinkType
from config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE


def _blank_to_none(v):
    if isinstance(v, str) and v.strip() == "":
        return None
    return v


# =============================================================================
# Content intake (multipart form + episodes JSON blob)
# =============================================================================


class StreamLinkInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=100)
    type: StreamLinkType = StreamLinkType.EMBED
    quality: str = Field(default="", max_length=20)
    url: str = ""
    # Name of the multipart file part holding the video (self-hosted only)
    video_field: Optional[str] = Field(default=None, alias="videoField")

    @field_validator("quality", "url", mode="before")
    @classmethod
    def default_blank(cls, v):
        return v if v is not None else ""


class DownloadLinkInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    quality: str = Field(default="", max_length=20)
    url: str = Field(..., min_length=1)


class EpisodeInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    episode_number: int = Field(..., ge=1, alias="episodeNumber")
    season_number: int = Field(default=1, ge=1, alias="seasonNumber")
    stream_links: List[StreamLinkInput] = Field(default_factory=list, alias="streamLinks")
    download_links: List[DownloadLinkInput] = Field(default_factory=list, alias="downloadLinks")

    @field_validator("season_number", mode="before")
    @classmethod
    def default_season(cls, v):
        # Clients send 0 or null for single-season shows
        return v if v else 1

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v):
        return v if v is not None else ""

    @field_validator("stream_links", "download_links", mode="before")
    @classmethod
    def default_links(cls, v):
        return v if v is not None else []


class ContentForm(BaseModel):
    """Fields of the create/update multipart form, after parsing."""

    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="", max_length=10000)
    type: str = Field(..., min_length=1, max_length=20)
    release_date: Optional[datetime] = None
    genre_ids: List[int] = Field(default_factory=list)
    rating: float = Field(default=0, ge=0, le=10)
    season_id: Optional[int] = None
    # None means "episodes not sent": existing episodes are left alone
    episodes: Optional[List[EpisodeInput]] = None

    @field_validator("title", "type", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("release_date", "season_id", mode="before")
    @classmethod
    def blank_is_none(cls, v):
        return _blank_to_none(v)

    @field_validator("rating", mode="before")
    @classmethod
    def default_rating(cls, v):
        v = _blank_to_none(v)
        return v if v is not None else 0


# =============================================================================
# Single-resource writes (JSON bodies)
# =============================================================================


class EpisodeCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    episode_number: int = Field(..., ge=1, alias="episodeNumber")
    season_number: int = Field(default=1, ge=1, alias="seasonNumber")
    duration: int = Field(default=0, ge=0)
    release_date: Optional[datetime] = Field(default=None, alias="releaseDate")
    # Path of an original already under the media root
    video_path: str = Field(default="", max_length=255, alias="videoPath")


class EpisodeUpdate(BaseModel):
    """Partial episode update; omitted fields are left alone."""

    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    episode_number: Optional[int] = Field(default=None, ge=1, alias="episodeNumber")
    season_number: Optional[int] = Field(default=None, ge=1, alias="seasonNumber")
    duration: Optional[int] = Field(default=None, ge=0)
    release_date: Optional[datetime] = Field(default=None, alias="releaseDate")
    video_path: Optional[str] = Field(default=None, max_length=255, alias="videoPath")


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class GenreCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


# =============================================================================
# Responses
# =============================================================================


class GenreResponse(BaseModel):
    id: int
    name: str


class CategoryResponse(BaseModel):
    id: int
    name: str
    description: str = ""

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v):
        return v if v is not None else ""


class StreamLinkResponse(BaseModel):
    id: int
    content_id: int
    name: str
    quality: str = ""
    url: str
    type: str
    provider: Optional[str] = None
    server: str
    episode_number: int
    season_number: int
    # Rendered iframe for allow-listed embed providers; never stored
    embed_html: Optional[str] = None

    @field_validator("quality", mode="before")
    @classmethod
    def default_quality(cls, v):
        return v if v is not None else ""

    @model_validator(mode="after")
    def render_iframe(self):
        if self.type == StreamLinkType.EMBED.value:
            self.embed_html = render_embed(self.url, self.provider)
        else:
            self.embed_html = None
        return self


class DownloadLinkResponse(BaseModel):
    id: int
    content_id: int
    name: str
    quality: str = ""
    url: str
    server: str
    episode_number: int
    season_number: int

    @field_validator("quality", mode="before")
    @classmethod
    def default_quality(cls, v):
        return v if v is not None else ""


class EpisodeResponse(BaseModel):
    id: int
    content_id: int
    title: str
    description: str = ""
    type: str = "episode"
    episode_number: int
    season_number: int
    video_path: str = ""
    duration: int = 0
    thumbnail_url: Optional[str] = None
    release_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("description", "video_path", mode="before")
    @classmethod
    def default_text(cls, v):
        return v if v is not None else ""

    @field_validator("duration", mode="before")
    @classmethod
    def default_duration(cls, v):
        return v if v is not None else 0


class ContentResponse(BaseModel):
    id: int
    title: str
    description: str = ""
    type: str
    cover_image: Optional[str] = None
    video_path: Optional[str] = None
    release_date: Optional[datetime] = None
    duration: Optional[int] = None
    rating: float = 0
    season_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    episodes: List[EpisodeResponse] = []
    genres: List[GenreResponse] = []
    categories: List[CategoryResponse] = []
    stream_links: List[StreamLinkResponse] = []
    download_links: List[DownloadLinkResponse] = []

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v):
        return v if v is not None else ""

    @field_validator("rating", mode="before")
    @classmethod
    def default_rating(cls, v):
        return v if v is not None else 0


class ContentListResponse(BaseModel):
    contents: List[ContentResponse]
    total: int
    page: int
    page_size: int = Field(..., serialization_alias="pageSize")


class ContentWriteResponse(BaseModel):
    message: str
    content: ContentResponse


class EpisodeListResponse(BaseModel):
    episodes: List[EpisodeResponse]
    content: ContentResponse


class UploadResponse(BaseModel):
    path: str
    job_id: Optional[int] = None


class JobResponse(BaseModel):
    id: int
    content_id: int
    episode_id: Optional[int] = None
    source_filename: str
    source_path: str
    status: str
    current_rung: Optional[str] = None
    error: Optional[str] = None
    worker_id: Optional[str] = None
    submitted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PageParams(BaseModel):
    """Normalized paging: page >= 1, 1 <= page_size <= MAX_PAGE_SIZE."""

    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @field_validator("page", mode="before")
    @classmethod
    def clamp_page(cls, v):
        v = _blank_to_none(v)
        try:
            v = int(v)
        except (TypeError, ValueError):
            return 1
        return v if v >= 1 else 1

    @field_validator("page_size", mode="before")
    @classmethod
    def clamp_page_size(cls, v):
        v = _blank_to_none(v)
        try:
            v = int(v)
        except (TypeError, ValueError):
            return DEFAULT_PAGE_SIZE
        if v < 1:
            return DEFAULT_PAGE_SIZE
        return min(v, MAX_PAGE_SIZE)
