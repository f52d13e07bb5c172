"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Status values for transcoding jobs."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StreamLinkType(str, Enum):
    """How a stream link is played back."""

    EMBED = "embed"  # third-party player in an iframe
    SELF_HOSTED = "self-hosted"  # file under the media root


class LinkServer(str, Enum):
    """Server tags stored on stream links."""

    LOCAL = "local"
    EXTERNAL = "external"


class MediaKind(str, Enum):
    """Kinds of stored media, each with its own canonical directory."""

    COVER = "cover"
    EPISODE_THUMBNAIL = "episode_thumbnail"
    ORIGINAL_VIDEO = "original_video"


class UserRole(str, Enum):
    """Roles carried in access tokens."""

    USER = "user"
    ADMIN = "admin"
