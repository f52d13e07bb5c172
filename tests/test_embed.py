"""Tests for embed link classification and iframe rendering."""

import pytest

from api.embed import classify_embed_url, provider_for_url, render_embed
from api.errors import InvalidInputError
from api.schemas import StreamLinkResponse


class TestProviderForUrl:
    """Tests for the provider allow-list."""

    @pytest.mark.parametrize(
        "url",
        [
            "https://mp4upload.com/embed-abc.html",
            "https://www.mp4upload.com/embed-abc.html",
            "http://MP4UPLOAD.COM/x",
        ],
    )
    def test_allow_listed(self, url):
        assert provider_for_url(url) == "mp4upload"

    @pytest.mark.parametrize(
        "url",
        [
            "https://evil.com/embed",
            "https://mp4upload.com.evil.com/x",
            "https://notmp4upload.com/x",
            "javascript:alert(1)",
            "ftp://mp4upload.com/x",
        ],
    )
    def test_not_allow_listed(self, url):
        assert provider_for_url(url) is None


class TestClassifyEmbedUrl:
    """Tests for ingest-time classification."""

    def test_known_provider_keeps_raw_url(self):
        """The raw URL is stored, not markup."""
        url, provider = classify_embed_url("  https://www.mp4upload.com/embed-abc.html ")
        assert url == "https://www.mp4upload.com/embed-abc.html"
        assert provider == "mp4upload"

    def test_unknown_provider_stored_verbatim(self):
        url, provider = classify_embed_url("https://player.example.com/v/1")
        assert url == "https://player.example.com/v/1"
        assert provider is None

    def test_iframe_from_known_provider_unwrapped(self):
        """Pre-built markup from an allow-listed host is reduced to its src."""
        markup = '<IFRAME SRC="https://mp4upload.com/embed-xyz.html?a=1&amp;b=2" width="640"></iframe>'
        url, provider = classify_embed_url(markup)
        assert url == "https://mp4upload.com/embed-xyz.html?a=1&b=2"
        assert provider == "mp4upload"

    def test_iframe_from_unknown_provider_reduced_to_src(self):
        """Markup is never stored, whatever the host."""
        url, provider = classify_embed_url('<iframe src="https://other.example/v/1" onload="x()"></iframe>')
        assert url == "https://other.example/v/1"
        assert provider is None

    @pytest.mark.parametrize(
        "markup",
        [
            "<iframe></iframe>",
            '<iframe onload="alert(document.cookie)"></iframe>',
            '<iframe src="" onload="alert(1)"></iframe>',
        ],
    )
    def test_iframe_without_src_rejected(self, markup):
        with pytest.raises(InvalidInputError, match="no src"):
            classify_embed_url(markup)

    def test_protocol_relative_url_gets_https(self):
        url, provider = classify_embed_url("//www.mp4upload.com/embed-abc.html")
        assert url == "https://www.mp4upload.com/embed-abc.html"
        assert provider == "mp4upload"

    def test_protocol_relative_iframe_src(self):
        url, provider = classify_embed_url("<iframe src='//player.example.com/e/5'></iframe>")
        assert url == "https://player.example.com/e/5"
        assert provider is None

    @pytest.mark.parametrize("value", ["javascript:alert(1)", "data:text/html,hi", "mp4upload.com/x", "https://"])
    def test_non_http_rejected(self, value):
        with pytest.raises(InvalidInputError):
            classify_embed_url(value)

    def test_iframe_with_javascript_src_rejected(self):
        with pytest.raises(InvalidInputError):
            classify_embed_url("<iframe src='javascript:alert(1)'></iframe>")

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_empty_rejected(self, value):
        with pytest.raises(InvalidInputError):
            classify_embed_url(value)


class TestRenderEmbed:
    """Tests for response-time rendering."""

    def test_renders_fullscreen_iframe(self):
        html = render_embed("https://mp4upload.com/embed-abc.html", "mp4upload")
        assert html.startswith('<iframe src="https://mp4upload.com/embed-abc.html"')
        assert 'width="1280"' in html
        assert 'height="720"' in html
        assert "allowfullscreen" in html

    def test_escapes_url(self):
        """Quotes and angle brackets in the URL cannot break out of the attribute."""
        html = render_embed('https://mp4upload.com/x?a=1&b="><script>alert(1)</script>', "mp4upload")
        assert "<script>" not in html
        assert "&quot;&gt;&lt;script&gt;" in html
        assert "a=1&amp;b=" in html

    def test_unknown_provider_not_rendered(self):
        assert render_embed("https://other.example/v/1", None) is None
        assert render_embed("https://other.example/v/1", "other") is None

    def test_provider_tag_must_match_host(self):
        """A forged provider tag on a foreign URL renders nothing."""
        assert render_embed("https://evil.com/x", "mp4upload") is None

    def test_empty_url(self):
        assert render_embed("", "mp4upload") is None


class TestStreamLinkResponse:
    """embed_html is computed, never stored."""

    def _link(self, **overrides):
        data = {
            "id": 1,
            "content_id": 1,
            "name": "Mirror",
            "quality": None,
            "url": "https://mp4upload.com/embed-abc.html",
            "type": "embed",
            "provider": "mp4upload",
            "server": "external",
            "episode_number": 1,
            "season_number": 1,
        }
        data.update(overrides)
        return StreamLinkResponse.model_validate(data)

    def test_embed_link_gets_iframe(self):
        link = self._link()
        assert link.embed_html is not None
        assert link.quality == ""

    def test_self_hosted_link_has_no_iframe(self):
        link = self._link(type="self-hosted", url="videos/original/1_1.mp4", provider=None, server="local")
        assert link.embed_html is None

    def test_client_supplied_html_is_discarded(self):
        link = self._link(provider=None, embed_html="<script>alert(1)</script>")
        assert link.embed_html is None
