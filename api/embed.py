"""
Embed stream links.

Third-party players are stored as a raw URL plus a provider key. The iframe
markup is only produced at response time, for allow-listed providers, with the
URL HTML-escaped.
"""

import html
import logging
import re
from typing import Optional, Tuple
from urllib.parse import urlsplit

from api.errors import InvalidInputError

logger = logging.getLogger(__name__)

# provider key -> registrable domain (subdomains match too)
EMBED_PROVIDERS = {
    "mp4upload": "mp4upload.com",
}

EMBED_WIDTH = 1280
EMBED_HEIGHT = 720

_IFRAME_RE = re.compile(r"<\s*iframe\b", re.IGNORECASE)
_SRC_RE = re.compile(r"""\bsrc\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s>]+))""", re.IGNORECASE)


def provider_for_url(url: str) -> Optional[str]:
    """Return the provider key for an allow-listed http(s) URL, else None."""
    parts = urlsplit(url.strip())
    if parts.scheme.lower() not in ("http", "https"):
        return None
    host = (parts.hostname or "").lower()
    for key, domain in EMBED_PROVIDERS.items():
        if host == domain or host.endswith("." + domain):
            return key
    return None


def _extract_iframe_src(markup: str) -> Optional[str]:
    match = _SRC_RE.search(markup)
    if not match:
        return None
    src = next(group for group in match.groups() if group is not None)
    return html.unescape(src).strip() or None


def _checked_url(url: str) -> str:
    """Return url with a scheme, or raise for anything but http(s)."""
    url = url.strip()
    # Protocol-relative player URLs are served over https
    if url.startswith("//"):
        url = "https:" + url
    parts = urlsplit(url)
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        raise InvalidInputError("Embed links must use http or https")
    return url


def classify_embed_url(value: str) -> Tuple[str, Optional[str]]:
    """
    Turn an incoming embed link into (url_to_store, provider).

    Only URLs are ever stored. Pre-built iframe markup is reduced to its src,
    and protocol-relative URLs get https. The provider is set for
    allow-listed hosts only; other hosts are stored with no provider.

    Raises:
        InvalidInputError: for empty values, markup without a src, or
            non-http(s) URLs
    """
    value = (value or "").strip()
    if not value:
        raise InvalidInputError("Embed link URL is required")

    if _IFRAME_RE.search(value):
        src = _extract_iframe_src(value)
        if not src:
            raise InvalidInputError("Embed markup has no src URL")
        value = src

    url = _checked_url(value)
    return url, provider_for_url(url)


def render_embed(url: Optional[str], provider: Optional[str]) -> Optional[str]:
    """Build the iframe for an allow-listed provider, or None."""
    if not url or provider not in EMBED_PROVIDERS:
        return None
    # Re-check the stored URL; provider tags alone are not trusted
    if provider_for_url(url) != provider:
        return None
    src = html.escape(url, quote=True)
    return (
        f'<iframe src="{src}" frameborder="0" marginwidth="0" marginheight="0" '
        f'scrolling="no" width="{EMBED_WIDTH}" height="{EMBED_HEIGHT}" allowfullscreen></iframe>'
    )
