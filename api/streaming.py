"""
Byte-range aware file delivery.

parse_range() is a pure function over (header, size) so it can be tested
exhaustively. serve_file() turns a resolved path plus the request's
conditional/range headers into a 200, 206 or 304 response; unsatisfiable
ranges raise RangeNotSatisfiableError, which the app turns into a 416 with an
empty body.

Only single ranges are supported.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from typing import Iterator, Optional

from fastapi import Request
from fastapi.responses import Response, StreamingResponse

from api.errors import RangeNotSatisfiableError
from config import STREAM_CHUNK_SIZE

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}
DEFAULT_MEDIA_TYPE = "video/mp4"


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def _is_digits(text: str) -> bool:
    return text.isascii() and text.isdigit()


def parse_range(header: str, size: int) -> ByteRange:
    """
    Parse a single-range Range header for a file of size bytes.

    Raises:
        RangeNotSatisfiableError: malformed, multiple, or out-of-bounds ranges
    """
    header = (header or "").strip()
    if not header.startswith("bytes="):
        raise RangeNotSatisfiableError(size)

    parts = [part.strip() for part in header[len("bytes="):].split(",") if part.strip()]
    if len(parts) != 1:
        raise RangeNotSatisfiableError(size)

    start_text, sep, end_text = parts[0].partition("-")
    if not sep:
        raise RangeNotSatisfiableError(size)
    start_text, end_text = start_text.strip(), end_text.strip()

    if not start_text:
        # Suffix form: last k bytes
        if not _is_digits(end_text):
            raise RangeNotSatisfiableError(size)
        suffix = int(end_text)
        if suffix <= 0 or suffix > size:
            raise RangeNotSatisfiableError(size)
        return ByteRange(size - suffix, size - 1)

    if not _is_digits(start_text):
        raise RangeNotSatisfiableError(size)
    start = int(start_text)
    if start >= size:
        raise RangeNotSatisfiableError(size)

    if not end_text:
        return ByteRange(start, size - 1)
    if not _is_digits(end_text):
        raise RangeNotSatisfiableError(size)
    end = int(end_text)
    if end < start or end >= size:
        raise RangeNotSatisfiableError(size)
    return ByteRange(start, end)


def media_type_for(path: Path) -> str:
    return MEDIA_TYPES.get(path.suffix.lower(), DEFAULT_MEDIA_TYPE)


def _iter_file(path: Path, start: int, length: int, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    # Runs in Starlette's threadpool; closing the generator closes the file
    with open(path, "rb") as f:
        f.seek(start)
        remaining = length
        while remaining > 0:
            chunk = f.read(min(chunk_size, remaining))
            if not chunk:
                logger.warning(f"Short read on {path} with {remaining} bytes left")
                break
            remaining -= len(chunk)
            yield chunk


def _not_modified_since(header: Optional[str], mtime: int) -> bool:
    if not header:
        return False
    try:
        since = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return False
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return int(since.timestamp()) >= mtime


def serve_file(path: Path, request: Request) -> Response:
    """
    Build the response for a resolved file.

    Raises:
        RangeNotSatisfiableError: for a Range header that cannot be served
    """
    stat = path.stat()
    size = stat.st_size
    mtime = int(stat.st_mtime)
    last_modified = formatdate(mtime, usegmt=True)
    media_type = media_type_for(path)
    headers = {"Accept-Ranges": "bytes", "Last-Modified": last_modified}

    if _not_modified_since(request.headers.get("if-modified-since"), mtime):
        return Response(status_code=304, headers=headers)

    range_header = request.headers.get("range")
    if_range = request.headers.get("if-range")
    if range_header and if_range and if_range.strip() != last_modified:
        # Validator changed since the client's partial copy: send everything
        range_header = None

    if not range_header:
        headers["Content-Length"] = str(size)
        return StreamingResponse(_iter_file(path, 0, size), status_code=200, media_type=media_type, headers=headers)

    byte_range = parse_range(range_header, size)
    headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.end}/{size}"
    headers["Content-Length"] = str(byte_range.length)
    return StreamingResponse(
        _iter_file(path, byte_range.start, byte_range.length),
        status_code=206,
        media_type=media_type,
        headers=headers,
    )


def http_date(value: datetime) -> str:
    """Format a datetime as an HTTP-date, e.g. for If-Modified-Since."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return formatdate(value.timestamp(), usegmt=True)
