# Plex Now Playing Widget
# Copyright (C) 2026 The plex-now-playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
SessionClient — reads the Plex Media Server session list.

Plex HTTP API (JSON when sent Accept: application/json):
  GET /status/sessions   — active playback sessions, one per player
  GET {thumb}            — artwork bytes (X-Plex-Token header, never in the URL)

Every outcome is returned as a SessionResult; nothing raises past
fetch_now_playing().  Retry cadence belongs to the polling controller.
"""

import asyncio
import json
import logging
import time
import uuid

import aiohttp

from ..lib.artwork import Artwork, ArtworkCache, render_artwork, render_executor
from ..lib.models import (
    UNKNOWN_ALBUM,
    UNKNOWN_ARTIST,
    UNKNOWN_TRACK,
    Credentials,
    ErrorKind,
    NowPlaying,
    PlaybackState,
    PlayerLocation,
    SessionResult,
)

log = logging.getLogger(__name__)

SESSION_TIMEOUT = 5    # seconds
ARTWORK_TIMEOUT = 10   # seconds

# Which field supplies the artist, first match wins
ARTIST_FIELDS = {
    "original_title": ("originalTitle", "grandparentTitle"),
    "grandparent_title": ("grandparentTitle", "originalTitle"),
}
ART_FIELDS = ("thumb", "parentThumb", "grandparentThumb")
ACTIVE_STATES = {s.value: s for s in PlaybackState}


def default_client_identifier() -> str:
    return f"plex-desktop-widget-{int(time.time())}"


def _text(value) -> str | None:
    """Return a non-empty string or None."""
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    return value or None


def _first(entry: dict, fields) -> str | None:
    for name in fields:
        value = _text(entry.get(name))
        if value:
            return value
    return None


def _non_negative_int(value) -> int:
    try:
        n = int(value)
    except (ValueError, TypeError):
        return 0
    return n if n > 0 else 0


class MalformedSessions(ValueError):
    """The response parsed as JSON but not in the shape Plex sends."""


def _player_state(entry: dict) -> PlaybackState | None:
    player = entry.get("Player")
    if not isinstance(player, dict):
        return None
    state = player.get("state")
    if state is None:
        return None
    if not isinstance(state, str):
        raise MalformedSessions("Player.state is not a string")
    return ACTIVE_STATES.get(state)


def select_track(metadata: list) -> dict | None:
    """First entry that is a track in a playing or paused session."""
    for entry in metadata:
        if not isinstance(entry, dict):
            continue
        if entry.get("type") == "track" and _player_state(entry) is not None:
            return entry
    return None


def build_now_playing(entry: dict, artist_priority: str = "original_title") -> NowPlaying:
    """Normalize one session entry.  The entry must already be selected."""
    player = entry.get("Player") if isinstance(entry.get("Player"), dict) else {}
    session = entry.get("Session") if isinstance(entry.get("Session"), dict) else {}
    artist_fields = ARTIST_FIELDS.get(artist_priority, ARTIST_FIELDS["original_title"])

    return NowPlaying(
        id=_text(entry.get("ratingKey")) or uuid.uuid4().hex,
        title=_text(entry.get("title")) or UNKNOWN_TRACK,
        artist=_first(entry, artist_fields) or UNKNOWN_ARTIST,
        album=_text(entry.get("parentTitle")) or UNKNOWN_ALBUM,
        album_art_path=_first(entry, ART_FIELDS),
        state=_player_state(entry) or PlaybackState.PLAYING,
        duration_ms=_non_negative_int(entry.get("duration")),
        position_ms=_non_negative_int(entry.get("viewOffset")),
        player=PlayerLocation(
            address=_text(player.get("address")),
            port=_text(player.get("port")),
            protocol=_text(player.get("protocol")),
            machine_identifier=_text(player.get("machineIdentifier")),
        ),
        session_key=_text(entry.get("sessionKey")) or _text(session.get("id")),
    )


def parse_sessions(payload, artist_priority: str = "original_title") -> NowPlaying | None:
    """Turn a decoded /status/sessions body into the current track, if any.

    A missing container or an empty Metadata list means nothing is playing.
    Raises MalformedSessions when the structure has the wrong types.
    """
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise MalformedSessions("response is not a JSON object")
    container = payload.get("MediaContainer")
    if container is None:
        return None
    if not isinstance(container, dict):
        raise MalformedSessions("MediaContainer is not an object")
    metadata = container.get("Metadata")
    if metadata is None:
        return None
    if not isinstance(metadata, list):
        raise MalformedSessions("MediaContainer.Metadata is not a list")

    entry = select_track(metadata)
    if entry is None:
        return None
    return build_now_playing(entry, artist_priority)


class SessionClient:
    """Fetches the current music session from one Plex Media Server."""

    def __init__(self, http_session: aiohttp.ClientSession,
                 credentials: Credentials | None = None,
                 client_identifier: str | None = None,
                 artist_priority: str = "original_title",
                 timeout: float = SESSION_TIMEOUT):
        self._http_session = http_session
        self.credentials = credentials
        self.client_identifier = client_identifier or default_client_identifier()
        self.artist_priority = artist_priority
        self.timeout = timeout
        self._artwork_cache = ArtworkCache()

    def _headers(self, credentials: Credentials, accept_json: bool = True) -> dict:
        headers = {
            "X-Plex-Token": credentials.token,
            "X-Plex-Client-Identifier": self.client_identifier,
        }
        if accept_json:
            headers["Accept"] = "application/json"
        return headers

    async def fetch_now_playing(self, credentials: Credentials | None = None) -> SessionResult:
        credentials = credentials or self.credentials
        if credentials is None:
            return SessionResult.failure(ErrorKind.AUTH_FAILED, "No Plex credentials configured")

        url = f"{credentials.server_url}/status/sessions"
        try:
            async with self._http_session.get(
                url, headers=self._headers(credentials),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status == 401:
                    return SessionResult.failure(
                        ErrorKind.AUTH_FAILED, "Invalid Plex token", status=401)
                if not 200 <= resp.status < 300:
                    return SessionResult.failure(
                        ErrorKind.SERVER_ERROR,
                        f"Server returned status {resp.status}", status=resp.status)
                body = await resp.read()
        except asyncio.TimeoutError:
            log.warning("Session request to %s timed out", credentials.server_url)
            return SessionResult.failure(
                ErrorKind.CONNECTION_FAILED,
                f"Connection failed: timed out after {self.timeout:g}s", cause="timeout")
        except aiohttp.ClientError as e:
            log.warning("Session request to %s failed: %s", credentials.server_url, e)
            return SessionResult.failure(
                ErrorKind.CONNECTION_FAILED, f"Connection failed: {e}",
                cause=type(e).__name__)
        except ValueError as e:
            # yarl rejects unparseable server URLs
            return SessionResult.failure(
                ErrorKind.CONNECTION_FAILED, f"Invalid server URL: {e}",
                cause=type(e).__name__)

        if not body.strip():
            return SessionResult()
        try:
            payload = json.loads(body)
            now_playing = parse_sessions(payload, self.artist_priority)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            log.warning("Session response is not JSON: %s", e)
            return SessionResult.failure(
                ErrorKind.MALFORMED_RESPONSE, "Server sent an unreadable response",
                cause=str(e))
        except (MalformedSessions, TypeError, AttributeError) as e:
            log.warning("Unexpected session response: %s", e)
            return SessionResult.failure(
                ErrorKind.MALFORMED_RESPONSE, f"Unexpected response: {e}", cause=str(e))

        log.debug("Now playing: %s", now_playing.title if now_playing else "nothing")
        return SessionResult(now_playing=now_playing)

    # ── Artwork ──

    async def fetch_album_art(self, path_or_url: str,
                              credentials: Credentials | None = None) -> bytes | None:
        """Download album art bytes, or None on any failure."""
        credentials = credentials or self.credentials
        if credentials is None or not path_or_url:
            return None
        if path_or_url.startswith(("http://", "https://")):
            url = path_or_url
        else:
            url = f"{credentials.server_url}{path_or_url}"

        try:
            async with self._http_session.get(
                url, headers=self._headers(credentials, accept_json=False),
                timeout=aiohttp.ClientTimeout(total=ARTWORK_TIMEOUT),
            ) as resp:
                if resp.status != 200:
                    log.debug("Artwork %s returned %d", path_or_url, resp.status)
                    return None
                data = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log.warning("Error fetching artwork: %s", e)
            return None

        if not data:
            log.warning("Artwork URL returned 0 bytes")
            return None
        return data

    async def fetch_artwork(self, now_playing: NowPlaying,
                            credentials: Credentials | None = None) -> Artwork | None:
        """The track's art sized for the widget, cached by thumb path."""
        credentials = credentials or self.credentials
        path = now_playing.album_art_path
        if credentials is None or not path:
            return None

        artwork = self._artwork_cache.lookup(path)
        if artwork is not None:
            log.debug("Artwork cache hit for %s", path)
            return artwork

        image_bytes = await self.fetch_album_art(path, credentials)
        if not image_bytes:
            return None

        loop = asyncio.get_running_loop()
        artwork = await loop.run_in_executor(render_executor, render_artwork, image_bytes)
        if artwork:
            self._artwork_cache.store(path, artwork)
            log.info("Rendered artwork for %s at %dx%d (%d cached)",
                     path, *artwork.size, len(self._artwork_cache))
        return artwork
