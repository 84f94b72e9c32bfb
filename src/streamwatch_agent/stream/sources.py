"""
Stream Sources
==============

Allow-list validation and log-safe rendering of stream URLs.

A URL is handed to ffmpeg only after it passes validate_stream_url, so
an operator-supplied config can never make the decoder read local
files or arbitrary hosts.

Allow-list entries:
    "twitch.tv"      exact host match
    ".ttvnw.net"     any subdomain of ttvnw.net (usher, video-weaver edges)
"""

import logging
from typing import Iterable, Optional, Sequence
from urllib.parse import urlparse

from streamwatch_agent.errors import InvalidStreamUrlError


logger = logging.getLogger(__name__)


DEFAULT_ALLOWED_HOSTS = (
    "twitch.tv",
    "www.twitch.tv",
    ".twitch.tv",
    ".ttvnw.net",
)

ALLOWED_SCHEMES = ("http", "https")


def _host_matches(host: str, entry: str) -> bool:
    if entry.startswith("."):
        return host.endswith(entry)
    return host == entry


def is_allowed_stream_url(
    url: Optional[str],
    allowed_hosts: Iterable[str] = DEFAULT_ALLOWED_HOSTS,
) -> bool:
    """
    Check a stream URL against the source allow-list.

    Args:
        url: Candidate stream URL
        allowed_hosts: Allow-list entries (see module docstring)

    Returns:
        True if the URL may be passed to the decoder
    """
    if not url or not isinstance(url, str):
        return False

    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    if parsed.scheme not in ALLOWED_SCHEMES:
        return False

    host = (parsed.hostname or "").lower()
    if not host:
        return False

    return any(_host_matches(host, entry.lower()) for entry in allowed_hosts)


def validate_stream_url(
    url: Optional[str],
    allowed_hosts: Sequence[str] = DEFAULT_ALLOWED_HOSTS,
) -> str:
    """
    Return the URL unchanged if allowed, raise otherwise.

    Raises:
        InvalidStreamUrlError: If the URL is not on the allow-list
    """
    if not is_allowed_stream_url(url, allowed_hosts):
        raise InvalidStreamUrlError(
            f"Invalid stream URL: {sanitize_url(url)} is not an allowed source"
        )
    return url


def sanitize_url(url: Optional[str]) -> str:
    """Strip credentials and query string (may hold tokens) for logging."""
    if not url or not isinstance(url, str):
        return "[invalid-url]"
    try:
        parsed = urlparse(url)
    except ValueError:
        return "[invalid-url]"
    if not parsed.scheme or not parsed.hostname:
        return "[invalid-url]"
    netloc = parsed.hostname
    if parsed.port:
        netloc += f":{parsed.port}"
    return f"{parsed.scheme}://{netloc}{parsed.path}"
