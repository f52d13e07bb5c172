"""
Tests for the CLI module: argument parsing, upload validation, response
handling and command output.
"""

import argparse
import os
from pathlib import Path
from unittest import mock

import pytest

from api.auth import decode_access_token
from cli.main import (
    CLIError,
    ProgressFileWrapper,
    build_parser,
    get_auth_headers,
    positive_int,
    safe_json_response,
    validate_file,
)
from config import SUPPORTED_IMAGE_EXTENSIONS, SUPPORTED_VIDEO_EXTENSIONS


class TestProgressFileWrapper:
    """Test the ProgressFileWrapper class for upload progress tracking."""

    def test_wrapper_reads_and_updates_progress(self, tmp_path):
        """Test that ProgressFileWrapper reads data and updates progress."""
        test_file = tmp_path / "episode.mp4"
        test_file.write_bytes(b"Hello, World!")

        mock_progress = mock.Mock()

        with open(test_file, "rb") as f:
            wrapper = ProgressFileWrapper(f, mock_progress, 1)

            assert wrapper.read(5) == b"Hello"
            mock_progress.update.assert_called_once_with(1, advance=5)

            mock_progress.reset_mock()
            assert wrapper.read(8) == b", World!"
            mock_progress.update.assert_called_once_with(1, advance=8)

    def test_wrapper_forwards_seek_and_tell(self, tmp_path):
        test_file = tmp_path / "episode.mp4"
        test_file.write_bytes(b"0123456789")

        with open(test_file, "rb") as f:
            wrapper = ProgressFileWrapper(f, mock.Mock(), 1)
            wrapper.seek(5)
            assert wrapper.tell() == 5
            assert wrapper.read(5) == b"56789"

    def test_close_leaves_file_open(self, tmp_path):
        """The caller owns the file; closing the wrapper does not close it."""
        test_file = tmp_path / "episode.mp4"
        test_file.write_bytes(b"data")

        with open(test_file, "rb") as f:
            with ProgressFileWrapper(f, mock.Mock(), 1) as wrapper:
                wrapper.close()
            assert not f.closed

    def test_wrapper_empty_read_at_eof(self, tmp_path):
        """Test that empty reads at EOF don't update progress."""
        test_file = tmp_path / "episode.mp4"
        test_file.write_bytes(b"data")

        mock_progress = mock.Mock()

        with open(test_file, "rb") as f:
            wrapper = ProgressFileWrapper(f, mock_progress, 1)
            assert wrapper.read() == b"data"
            mock_progress.reset_mock()

            assert wrapper.read() == b""
            mock_progress.update.assert_not_called()


class TestSafeJsonResponse:
    """Test the safe_json_response function."""

    def _response(self, ok, status=200, body=None, text=""):
        response = mock.Mock()
        response.is_success = ok
        response.status_code = status
        if isinstance(body, Exception):
            response.json.side_effect = body
        else:
            response.json.return_value = body
        response.text = text
        return response

    def test_successful_json_response(self):
        assert safe_json_response(self._response(True, body={"id": 1})) == {"id": 1}

    def test_successful_non_json_response_raises_error(self):
        with pytest.raises(CLIError) as exc_info:
            safe_json_response(self._response(True, body=ValueError("Invalid JSON"), text="Not JSON content"))
        assert "Invalid JSON response" in str(exc_info.value)
        assert "Not JSON content" in str(exc_info.value)

    def test_error_response_with_json_detail(self):
        with pytest.raises(CLIError) as exc_info:
            safe_json_response(self._response(False, 404, {"detail": "Content not found"}))
        assert str(exc_info.value) == "API error (404): Content not found"

    def test_error_response_non_json(self):
        """An HTML error page from a proxy is reported as text."""
        with pytest.raises(CLIError) as exc_info:
            safe_json_response(
                self._response(False, 502, ValueError("Invalid JSON"), "<html><body>Bad Gateway</body></html>")
            )
        assert "API error (502)" in str(exc_info.value)
        assert "Bad Gateway" in str(exc_info.value)

    def test_error_response_empty_text(self):
        with pytest.raises(CLIError) as exc_info:
            safe_json_response(self._response(False, 503, ValueError("x"), ""), default_error="Service unavailable")
        assert "Service unavailable" in str(exc_info.value)

    def test_error_response_long_text_truncated(self):
        with pytest.raises(CLIError) as exc_info:
            safe_json_response(self._response(False, 500, ValueError("x"), "x" * 600))
        error_detail = str(exc_info.value).split(": ", 1)[1]
        assert len(error_detail) == 500
        assert error_detail.endswith("...")


class TestValidateFile:
    """Test the validate_file function."""

    def test_valid_video(self, tmp_path):
        test_file = tmp_path / "episode_01.MP4"
        test_file.write_bytes(b"test content")

        assert validate_file(test_file, SUPPORTED_VIDEO_EXTENSIONS, 1024) == 12

    def test_file_not_found(self, tmp_path):
        with pytest.raises(CLIError, match="File not found"):
            validate_file(tmp_path / "missing.mp4", SUPPORTED_VIDEO_EXTENSIONS, 1024)

    def test_path_is_directory(self, tmp_path):
        test_dir = tmp_path / "season_1.mp4"
        test_dir.mkdir()

        with pytest.raises(CLIError, match="Path is not a file"):
            validate_file(test_dir, SUPPORTED_VIDEO_EXTENSIONS, 1024)

    def test_file_not_readable(self, tmp_path):
        test_file = tmp_path / "episode.mp4"
        test_file.write_bytes(b"test content")

        with mock.patch("os.access", return_value=False):
            with pytest.raises(CLIError, match="File is not readable"):
                validate_file(test_file, SUPPORTED_VIDEO_EXTENSIONS, 1024)

    def test_wrong_extension(self, tmp_path):
        test_file = tmp_path / "poster.png"
        test_file.write_bytes(b"png")

        with pytest.raises(CLIError, match="Unsupported file type '.png'"):
            validate_file(test_file, SUPPORTED_VIDEO_EXTENSIONS, 1024)

    def test_image_extensions(self, tmp_path):
        test_file = tmp_path / "poster.png"
        test_file.write_bytes(b"png")

        assert validate_file(test_file, SUPPORTED_IMAGE_EXTENSIONS, 1024) == 3

    def test_empty_file(self, tmp_path):
        test_file = tmp_path / "empty.mp4"
        test_file.touch()

        with pytest.raises(CLIError, match="File is empty"):
            validate_file(test_file, SUPPORTED_VIDEO_EXTENSIONS, 1024)

    def test_too_large(self, tmp_path):
        """Files over the server's cap are rejected before uploading."""
        test_file = tmp_path / "movie.mp4"
        test_file.write_bytes(b"x" * 2048)

        with pytest.raises(CLIError, match="File too large"):
            validate_file(test_file, SUPPORTED_VIDEO_EXTENSIONS, 1024)


class TestParser:
    """Argument handling."""

    def test_positive_int(self):
        assert positive_int("3") == 3
        with pytest.raises(argparse.ArgumentTypeError):
            positive_int("0")
        with pytest.raises(ValueError):
            positive_int("abc")

    def test_upload_episode(self):
        args = build_parser().parse_args(["upload", "7", "ep1.mp4", "--episode", "12"])
        assert (args.content_id, args.file, args.episode) == (7, "ep1.mp4", 12)

    def test_upload_movie_level(self):
        args = build_parser().parse_args(["upload", "7", "movie.mp4"])
        assert args.episode is None

    def test_rejects_negative_id(self, capsys):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["upload", "-1", "movie.mp4"])

    def test_list_defaults(self):
        args = build_parser().parse_args(["list"])
        assert (args.page, args.page_size, args.type, args.category) == (1, 12, None, None)

    def test_jobs_status_choices(self):
        args = build_parser().parse_args(["jobs", "-s", "failed"])
        assert args.status == "failed"
        assert args.job_id is None
        with pytest.raises(SystemExit):
            build_parser().parse_args(["jobs", "-s", "stuck"])

    def test_global_token(self):
        args = build_parser().parse_args(["--token", "abc", "delete", "4"])
        assert args.token == "abc"
        assert args.content_id == 4

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestAuthHeaders:
    """Bearer header construction."""

    def test_explicit_token(self):
        assert get_auth_headers("tok") == {"Authorization": "Bearer tok"}

    def test_env_token(self):
        with mock.patch("cli.main.API_TOKEN", "from-env"):
            assert get_auth_headers() == {"Authorization": "Bearer from-env"}

    def test_no_token(self):
        with mock.patch("cli.main.API_TOKEN", ""):
            assert get_auth_headers() == {}


class TestCommands:
    """Command output with the HTTP layer mocked."""

    def _ok(self, body):
        response = mock.Mock()
        response.is_success = True
        response.status_code = 200
        response.json.return_value = body
        return response

    def test_token_command(self, capsys):
        from cli.main import main

        main(["token", "--user-id", "5", "--role", "user"])

        token = capsys.readouterr().out.strip()
        claims = decode_access_token(token)
        assert claims["user_id"] == 5
        assert claims["role"] == "user"

    def test_list(self, capsys):
        from cli.main import main

        body = {
            "contents": [
                {"id": 2, "type": "Anime", "title": "Show B", "episodes": [{}, {}]},
                {"id": 1, "type": "Movie", "title": "A Movie With A Very Long Title That Keeps Going On", "episodes": []},
            ],
            "total": 2,
            "page": 1,
            "pageSize": 12,
        }
        with mock.patch("httpx.get", return_value=self._ok(body)) as get:
            main(["list", "-t", "Anime"])

        assert get.call_args.kwargs["params"] == {"page": 1, "pageSize": 12, "type": "Anime"}
        out = capsys.readouterr().out
        assert "Show B" in out
        assert "2 total" in out
        assert ".." in out

    def test_list_empty(self, capsys):
        from cli.main import main

        with mock.patch("httpx.get", return_value=self._ok({"contents": [], "total": 0, "page": 1})):
            main(["list"])

        assert "No contents found." in capsys.readouterr().out

    def test_search_api_error_exits(self, capsys):
        from cli.main import main

        response = mock.Mock()
        response.is_success = False
        response.status_code = 400
        response.json.return_value = {"detail": "Search query is required"}
        with mock.patch("httpx.get", return_value=response):
            with pytest.raises(SystemExit):
                main(["search", " "])

        assert "Search query is required" in capsys.readouterr().out

    def test_jobs_shows_errors(self, capsys):
        from cli.main import main

        body = {
            "jobs": [
                {
                    "id": 9,
                    "status": "failed",
                    "current_rung": "480p",
                    "content_id": 3,
                    "episode_id": None,
                    "source_filename": "3_1700000000.mp4",
                    "error": "480p: Video transcoding failed.",
                }
            ]
        }
        with mock.patch("httpx.get", return_value=self._ok(body)):
            main(["--token", "t", "jobs"])

        out = capsys.readouterr().out
        assert "failed" in out
        assert "480p: Video transcoding failed." in out

    def test_delete_forbidden_exits(self, capsys):
        from cli.main import main

        response = mock.Mock()
        response.status_code = 403
        with mock.patch("httpx.delete", return_value=response):
            with pytest.raises(SystemExit):
                main(["--token", "user-token", "delete", "3"])

        assert "Admin access required" in capsys.readouterr().out

    def test_upload_episode_url(self, tmp_path, capsys):
        from cli import main as cli_main

        video = tmp_path / "ep1.mp4"
        video.write_bytes(b"video")
        with mock.patch.object(cli_main, "_upload_file", return_value={"path": "videos/original/3_1.mp4", "job_id": 4}) as upload:
            cli_main.main(["upload", "3", str(video), "-e", "8"])

        url, field, path, size, _token = upload.call_args.args
        assert url.endswith("/api/media/content/3/episodes/8/video")
        assert field == "video"
        assert Path(path) == video
        assert size == 5
        assert "Job: 4" in capsys.readouterr().out

    def test_upload_rejects_bad_file_before_network(self, tmp_path, capsys):
        from cli import main as cli_main

        notes = tmp_path / "notes.txt"
        notes.write_text("hi")
        with mock.patch.object(cli_main, "_upload_file") as upload:
            with pytest.raises(SystemExit):
                cli_main.main(["upload", "3", str(notes)])

        upload.assert_not_called()
        assert "Unsupported file type" in capsys.readouterr().out


class TestTimeoutConfiguration:
    """Test that timeout constants are properly configured."""

    def test_defaults(self):
        from cli.main import DEFAULT_API_TIMEOUT, UPLOAD_TIMEOUT

        assert DEFAULT_API_TIMEOUT == 30
        assert UPLOAD_TIMEOUT == 3600

    def test_env_overrides(self):
        import importlib

        import cli.main

        try:
            with mock.patch.dict(
                os.environ,
                {"ANIMESTREAM_API_TIMEOUT": "60", "ANIMESTREAM_UPLOAD_TIMEOUT": "7200"},
            ):
                importlib.reload(cli.main)
                assert cli.main.DEFAULT_API_TIMEOUT == 60
                assert cli.main.UPLOAD_TIMEOUT == 7200
        finally:
            importlib.reload(cli.main)

    def test_api_base_strips_trailing_slash(self):
        import importlib

        import cli.main

        try:
            with mock.patch.dict(os.environ, {"ANIMESTREAM_API_URL": "http://example.com:8080/"}):
                importlib.reload(cli.main)
                assert cli.main.API_BASE == "http://example.com:8080/api"
        finally:
            importlib.reload(cli.main)
