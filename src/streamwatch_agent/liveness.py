"""
Stream Liveness
===============

Answers "is this stream broadcasting right now?" for the orchestrator.

This module provides:
    - LivenessChecker: Protocol used by the orchestrator
    - TwitchLivenessChecker: Twitch Helix implementation
    - extract_username_from_url: twitch.tv URL → login name

Design Rules:
    - Results are cached per login for a short TTL (API rate limits)
    - A failed lookup serves the stale cached answer when there is one
    - Otherwise the result carries an error and is_live=False;
      callers treat an errored result as "unknown", not "offline"
    - HTTP calls run in a worker thread, never on the event loop
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Protocol, Tuple
from urllib.parse import urlparse

import requests

from streamwatch_agent.errors import LivenessCheckError
from streamwatch_agent.models.channel import LivenessResult


logger = logging.getLogger(__name__)


HELIX_BASE_URL = "https://api.twitch.tv/helix"
TOKEN_URL = "https://id.twitch.tv/oauth2/token"

DEFAULT_CACHE_TTL_SECONDS = 30.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0

# Refresh the app token this long before Twitch says it expires
_TOKEN_EXPIRY_MARGIN_SECONDS = 60.0

TWITCH_HOSTS = ("twitch.tv", "www.twitch.tv", "m.twitch.tv")


class LivenessChecker(Protocol):
    """Protocol for stream status backends."""

    async def is_live(self, stream_url: str) -> LivenessResult:
        """
        Check whether the stream behind a URL is live.

        Never raises for lookup failures; they are reported in
        LivenessResult.error.
        """
        ...


def extract_username_from_url(url: Optional[str]) -> Optional[str]:
    """
    Login name from a channel URL.

    Example:
        >>> extract_username_from_url("https://www.twitch.tv/SomeStreamer/videos")
        'somestreamer'
    """
    if not url or not isinstance(url, str):
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None

    if (parsed.hostname or "").lower() not in TWITCH_HOSTS:
        return None

    parts = [p for p in parsed.path.split("/") if p]
    if not parts:
        return None
    return parts[0].lower()


class TwitchLivenessChecker:
    """
    Liveness via the Twitch Helix streams endpoint.

    Uses an app access token from the client-credentials flow.

    Attributes:
        client_id: Twitch application client ID
        cache_ttl_seconds: Lifetime of a cached answer

    Example:
        checker = TwitchLivenessChecker(client_id, client_secret)
        result = await checker.is_live("https://twitch.tv/somestreamer")
        if result.is_live:
            ...
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        session: Optional[requests.Session] = None,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not client_id or not client_secret:
            raise ValueError("client_id and client_secret are required")

        self.client_id = client_id
        self._client_secret = client_secret
        self._session = session or requests.Session()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.request_timeout = request_timeout
        self._clock = clock

        # login -> (checked_at, result)
        self._cache: Dict[str, Tuple[float, LivenessResult]] = {}
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0

    async def is_live(self, stream_url: str) -> LivenessResult:
        username = self._resolve_username(stream_url)
        if username is None:
            return LivenessResult(is_live=False, error="Invalid Twitch URL")

        cached = self._cache.get(username)
        if cached is not None and (self._clock() - cached[0]) < self.cache_ttl_seconds:
            logger.debug(f"Using cached stream status: {username} live={cached[1].is_live}")
            return cached[1]

        try:
            stream = await asyncio.to_thread(self._fetch_stream, username)
        except LivenessCheckError as e:
            logger.error(f"Error checking stream status for {username}: {e}")
            if cached is not None:
                logger.debug(f"Using stale cache on error: {username}")
                return cached[1]
            return LivenessResult(is_live=False, error=str(e))

        result = LivenessResult(is_live=stream is not None, stream_data=stream)
        self._cache[username] = (self._clock(), result)

        logger.debug(f"Stream status checked: {username} live={result.is_live}")
        return result

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.debug("Stream status cache cleared")

    @staticmethod
    def _resolve_username(stream_url: str) -> Optional[str]:
        if not stream_url:
            return None
        if "twitch.tv" in stream_url:
            return extract_username_from_url(stream_url)
        if "/" in stream_url or ":" in stream_url:
            return None
        return stream_url.strip().lower() or None

    # -------------------------------------------------------------------------
    # HTTP (runs in a worker thread)
    # -------------------------------------------------------------------------

    def _fetch_stream(self, username: str) -> Optional[dict]:
        """Helix stream record for a login, or None when offline."""
        response = self._helix_get("/streams", {"user_login": username})
        if response.status_code == 401:
            # Token revoked or expired early
            self._token = None
            response = self._helix_get("/streams", {"user_login": username})

        try:
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise LivenessCheckError(f"Twitch streams lookup failed: {e}") from e

        streams = payload.get("data") or []
        if not streams:
            return None

        stream = streams[0]
        return {
            "id": stream.get("id"),
            "user_id": stream.get("user_id"),
            "user_name": stream.get("user_name"),
            "game_name": stream.get("game_name"),
            "title": stream.get("title"),
            "viewer_count": stream.get("viewer_count"),
            "started_at": stream.get("started_at"),
            "thumbnail_url": stream.get("thumbnail_url"),
            "is_mature": stream.get("is_mature"),
        }

    def _helix_get(self, path: str, params: dict) -> requests.Response:
        headers = {
            "Client-Id": self.client_id,
            "Authorization": f"Bearer {self._get_token()}",
        }
        try:
            return self._session.get(
                f"{HELIX_BASE_URL}{path}",
                params=params,
                headers=headers,
                timeout=self.request_timeout,
            )
        except requests.RequestException as e:
            raise LivenessCheckError(f"Twitch API request failed: {e}") from e

    def _get_token(self) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token

        try:
            response = self._session.post(
                TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                },
                timeout=self.request_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise LivenessCheckError(f"Twitch token request failed: {e}") from e

        token = payload.get("access_token")
        if not token:
            raise LivenessCheckError("Twitch token response had no access_token")

        expires_in = float(payload.get("expires_in", 0))
        self._token = token
        self._token_expires_at = self._clock() + max(0.0, expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS)
        logger.info("Obtained Twitch app access token")
        return token
