#!/usr/bin/env python3
"""
AnimeStream CLI - Command line interface for catalog and media management.
"""

import argparse
import os
import sys
from pathlib import Path

import httpx
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)

from api.auth import create_access_token
from api.enums import JobStatus, UserRole
from api.errors import truncate_error
from config import (
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    MAX_IMAGE_UPLOAD_SIZE,
    MAX_VIDEO_UPLOAD_SIZE,
    PORT,
    SUPPORTED_IMAGE_EXTENSIONS,
    SUPPORTED_VIDEO_EXTENSIONS,
)


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("ANIMESTREAM_API_TIMEOUT", "30"))

# Upload timeout in seconds (default 1 hour)
UPLOAD_TIMEOUT = int(os.getenv("ANIMESTREAM_UPLOAD_TIMEOUT", "3600"))

_default_api_url = f"http://localhost:{PORT}"
API_BASE = os.getenv("ANIMESTREAM_API_URL", _default_api_url).rstrip("/") + "/api"

# Bearer token for admin endpoints; mint one with `animestream token`
API_TOKEN = os.getenv("ANIMESTREAM_TOKEN", "")


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


class ProgressFileWrapper:
    """Wrapper for file objects that reports upload progress."""

    def __init__(self, file, progress, task_id):
        self.file = file
        self.progress = progress
        self.task_id = task_id

    def read(self, size=-1):
        """Read from the file; only non-empty reads advance the progress bar."""
        data = self.file.read(size)
        if data:
            self.progress.update(self.task_id, advance=len(data))
        return data

    def seek(self, *args, **kwargs):
        return self.file.seek(*args, **kwargs)

    def tell(self):
        return self.file.tell()

    def close(self):
        """Does not close the underlying file; the caller owns it."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass


def safe_json_response(response, default_error="Request failed"):
    """
    Parse a JSON response, turning API errors into CLIError.

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def validate_file(file_path: Path, allowed_extensions, max_size: int) -> int:
    """
    Validate a file before upload.

    Returns:
        int: File size in bytes

    Raises:
        CLIError: If the file is missing, unreadable, empty, of the wrong type or too large
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")

    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")

    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    if file_path.suffix.lower() not in allowed_extensions:
        allowed = ", ".join(sorted(allowed_extensions))
        raise CLIError(f"Unsupported file type '{file_path.suffix}'. Allowed: {allowed}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")

    if file_size > max_size:
        max_mib = max_size / (1024 * 1024)
        file_mib = file_size / (1024 * 1024)
        raise CLIError(f"File too large ({file_mib:.1f} MiB). Maximum upload size is {max_mib:.0f} MiB")

    return file_size


def get_auth_headers(token: str = None) -> dict:
    """Get headers for admin API requests."""
    token = token or API_TOKEN
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


def handle_auth_error(response) -> bool:
    """
    Check for auth errors and provide helpful message.

    Exits the program on 401/403; returns False otherwise.
    """
    if response.status_code == 401:
        print("Error: Authentication required.")
        print("Set ANIMESTREAM_TOKEN to a token from `animestream token --role admin`.")
        sys.exit(1)
    elif response.status_code == 403:
        print("Error: Admin access required.")
        print("The token's role is not admin. Mint one with `animestream token --role admin`.")
        sys.exit(1)
    return False


def _fail(message: str):
    print(f"Error: {message}")
    sys.exit(1)


def _shorten(text: str, width: int) -> str:
    text = text or ""
    return text[: width - 2] + ".." if len(text) > width else text


def cmd_token(args):
    """Mint a bearer token signed with the local JWT_SECRET."""
    print(create_access_token(args.user_id, args.role))


def _upload_file(url: str, field: str, file_path: Path, file_size: int, token: str) -> dict:
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        FileSizeColumn(),
        TextColumn("/"),
        TotalFileSizeColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
    ) as progress:
        task_id = progress.add_task("Uploading...", total=file_size)

        with open(file_path, "rb") as f:
            wrapped_file = ProgressFileWrapper(f, progress, task_id)
            files = {field: (file_path.name, wrapped_file)}

            with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                response = client.post(url, files=files, headers=get_auth_headers(token))

    handle_auth_error(response)
    return safe_json_response(response)


def cmd_upload(args):
    """Upload a video for a content item or one of its episodes."""
    try:
        file_path = Path(args.file)
        file_size = validate_file(file_path, SUPPORTED_VIDEO_EXTENSIONS, MAX_VIDEO_UPLOAD_SIZE)

        if args.episode:
            url = f"{API_BASE}/media/content/{args.content_id}/episodes/{args.episode}/video"
            target = f"content {args.content_id}, episode {args.episode}"
        else:
            url = f"{API_BASE}/media/content/{args.content_id}/video"
            target = f"content {args.content_id}"

        print(f"Uploading: {file_path.name} -> {target}")
        result = _upload_file(url, "video", file_path, file_size, args.token)
        print("Success! Video queued for transcoding.")
        print(f"  Path: {result['path']}")
        print(f"  Job: {result.get('job_id')}")

    except httpx.ConnectError:
        print(f"Error: Could not connect to API at {API_BASE}")
        print("Make sure the server is running.")
        sys.exit(1)
    except httpx.TimeoutException:
        print(f"Error: Upload timed out (exceeded {UPLOAD_TIMEOUT}s timeout)")
        print("You can increase the timeout with ANIMESTREAM_UPLOAD_TIMEOUT environment variable")
        sys.exit(1)
    except CLIError as e:
        _fail(str(e))


def cmd_cover(args):
    """Upload a cover image for a content item."""
    try:
        file_path = Path(args.file)
        file_size = validate_file(file_path, SUPPORTED_IMAGE_EXTENSIONS, MAX_IMAGE_UPLOAD_SIZE)
        url = f"{API_BASE}/media/content/{args.content_id}/cover"
        result = _upload_file(url, "cover", file_path, file_size, args.token)
        print(f"Cover stored at {result['path']}")
    except httpx.ConnectError:
        _fail(f"Could not connect to API at {API_BASE}")
    except httpx.TimeoutException:
        _fail(f"Upload timed out (exceeded {UPLOAD_TIMEOUT}s timeout)")
    except CLIError as e:
        _fail(str(e))


def _print_contents(result: dict):
    contents = result.get("contents", [])
    if not contents:
        print("No contents found.")
        return

    print(f"Page {result.get('page', 1)} ({result.get('total', len(contents))} total)")
    print(f"{'ID':<6} {'Type':<10} {'Episodes':<9} {'Title':<45}")
    print("-" * 72)
    for c in contents:
        episode_count = len(c.get("episodes") or [])
        print(f"{c['id']:<6} {_shorten(c['type'], 10):<10} {episode_count:<9} {_shorten(c['title'], 45):<45}")


def cmd_list(args):
    """List contents."""
    try:
        params = {"page": args.page, "pageSize": args.page_size}
        if args.type:
            params["type"] = args.type
        if args.category:
            params["categoryId"] = args.category
        response = httpx.get(f"{API_BASE}/contents", params=params, timeout=DEFAULT_API_TIMEOUT)
        _print_contents(safe_json_response(response))
    except httpx.ConnectError:
        _fail(f"Could not connect to API at {API_BASE}")
    except httpx.TimeoutException:
        _fail(f"Request timed out while connecting to {API_BASE}")
    except CLIError as e:
        _fail(str(e))


def cmd_search(args):
    """Search contents by title."""
    try:
        params = {"q": args.query, "page": args.page, "pageSize": args.page_size}
        response = httpx.get(f"{API_BASE}/contents/search", params=params, timeout=DEFAULT_API_TIMEOUT)
        _print_contents(safe_json_response(response))
    except httpx.ConnectError:
        _fail(f"Could not connect to API at {API_BASE}")
    except httpx.TimeoutException:
        _fail(f"Request timed out while connecting to {API_BASE}")
    except CLIError as e:
        _fail(str(e))


def cmd_delete(args):
    """Soft-delete a content item."""
    try:
        response = httpx.delete(
            f"{API_BASE}/contents/{args.content_id}",
            headers=get_auth_headers(args.token),
            timeout=DEFAULT_API_TIMEOUT,
        )
        handle_auth_error(response)
        safe_json_response(response)
        print(f"Content {args.content_id} deleted.")
    except httpx.ConnectError:
        _fail(f"Could not connect to API at {API_BASE}")
    except httpx.TimeoutException:
        _fail(f"Request timed out while connecting to {API_BASE}")
    except CLIError as e:
        _fail(str(e))


def cmd_jobs(args):
    """Show transcoding jobs."""
    try:
        headers = get_auth_headers(args.token)
        if args.job_id:
            response = httpx.get(f"{API_BASE}/media/jobs/{args.job_id}", headers=headers, timeout=DEFAULT_API_TIMEOUT)
            handle_auth_error(response)
            jobs = [safe_json_response(response)]
        else:
            params = {"limit": args.limit}
            if args.status:
                params["status"] = args.status
            response = httpx.get(f"{API_BASE}/media/jobs", params=params, headers=headers, timeout=DEFAULT_API_TIMEOUT)
            handle_auth_error(response)
            jobs = safe_json_response(response).get("jobs", [])

        if not jobs:
            print("No jobs found.")
            return

        print(f"{'ID':<6} {'Status':<10} {'Rung':<6} {'Content':<8} {'Episode':<8} {'Source':<30}")
        print("-" * 72)
        for j in jobs:
            episode = j["episode_id"] if j.get("episode_id") is not None else "-"
            print(
                f"{j['id']:<6} {j['status']:<10} {j.get('current_rung') or '-':<6} "
                f"{j['content_id']:<8} {episode:<8} {_shorten(j['source_filename'], 30):<30}"
            )
            if j.get("error"):
                print(f"       error: {j['error']}")
    except httpx.ConnectError:
        _fail(f"Could not connect to API at {API_BASE}")
    except httpx.TimeoutException:
        _fail(f"Request timed out while connecting to {API_BASE}")
    except CLIError as e:
        _fail(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="animestream", description="AnimeStream CLI - Manage the catalog and media")
    parser.add_argument("--token", default=None, help="Bearer token (default: $ANIMESTREAM_TOKEN)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Token command
    token_parser = subparsers.add_parser("token", help="Mint a bearer token with the local JWT secret")
    token_parser.add_argument("--user-id", type=positive_int, default=1, help="User id claim (default: 1)")
    token_parser.add_argument(
        "--role", choices=[r.value for r in UserRole], default=UserRole.ADMIN.value, help="Role claim (default: admin)"
    )
    token_parser.set_defaults(func=cmd_token)

    # Upload command
    upload_parser = subparsers.add_parser("upload", help="Upload a video file")
    upload_parser.add_argument("content_id", type=positive_int, help="Content ID")
    upload_parser.add_argument("file", help="Video file to upload")
    upload_parser.add_argument("-e", "--episode", type=positive_int, help="Episode ID (default: movie-level upload)")
    upload_parser.set_defaults(func=cmd_upload)

    # Cover command
    cover_parser = subparsers.add_parser("cover", help="Upload a cover image")
    cover_parser.add_argument("content_id", type=positive_int, help="Content ID")
    cover_parser.add_argument("file", help="Image file to upload")
    cover_parser.set_defaults(func=cmd_cover)

    # List command
    list_parser = subparsers.add_parser("list", help="List contents")
    list_parser.add_argument("-t", "--type", help="Filter by content type (e.g. Anime)")
    list_parser.add_argument("-c", "--category", type=positive_int, help="Filter by category ID")
    list_parser.add_argument("-p", "--page", type=positive_int, default=1)
    list_parser.add_argument("-n", "--page-size", type=positive_int, default=12)
    list_parser.set_defaults(func=cmd_list)

    # Search command
    search_parser = subparsers.add_parser("search", help="Search contents by title")
    search_parser.add_argument("query", help="Title substring")
    search_parser.add_argument("-p", "--page", type=positive_int, default=1)
    search_parser.add_argument("-n", "--page-size", type=positive_int, default=12)
    search_parser.set_defaults(func=cmd_search)

    # Delete command
    del_parser = subparsers.add_parser("delete", help="Delete a content item")
    del_parser.add_argument("content_id", type=positive_int, help="Content ID to delete")
    del_parser.set_defaults(func=cmd_delete)

    # Jobs command
    jobs_parser = subparsers.add_parser("jobs", help="Show transcoding jobs")
    jobs_parser.add_argument("job_id", nargs="?", type=positive_int, help="Show a single job")
    jobs_parser.add_argument("-s", "--status", choices=[s.value for s in JobStatus], help="Filter by status")
    jobs_parser.add_argument("-l", "--limit", type=positive_int, default=50)
    jobs_parser.set_defaults(func=cmd_jobs)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
