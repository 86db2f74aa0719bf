# Plex Now Playing Widget
# Copyright (C) 2026 The plex-now-playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Value types shared by the session client, the command dispatcher and the
polling controller.

Everything here is immutable.  A NowPlaying is rebuilt from scratch on every
poll and replaced wholesale; nothing patches it in place.
"""

import enum
from dataclasses import dataclass, field

UNKNOWN_TRACK = "Unknown Track"
UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"


def format_ms(ms: int) -> str:
    """Convert milliseconds to M:SS or H:MM:SS."""
    try:
        total = int(ms) // 1000
    except (ValueError, TypeError):
        return "0:00"
    if total < 0:
        total = 0
    if total >= 3600:
        h = total // 3600
        m = (total % 3600) // 60
        s = total % 60
        return f"{h}:{m:02d}:{s:02d}"
    return f"{total // 60}:{total % 60:02d}"


@dataclass(frozen=True)
class Credentials:
    server_url: str
    token: str

    def __post_init__(self):
        object.__setattr__(self, "server_url", self.server_url.rstrip("/"))

    def __repr__(self):
        # keep the token out of logs and tracebacks
        return f"Credentials(server_url={self.server_url!r}, token='***')"


class PlaybackState(str, enum.Enum):
    PLAYING = "playing"
    PAUSED = "paused"


class ErrorKind(str, enum.Enum):
    AUTH_FAILED = "auth_failed"
    SERVER_ERROR = "server_error"
    CONNECTION_FAILED = "connection_failed"
    MALFORMED_RESPONSE = "malformed_response"
    NO_PLAYER_TARGET = "no_player_target"


@dataclass(frozen=True)
class PlexError:
    kind: ErrorKind
    message: str
    status: int | None = None
    cause: str | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "status": self.status,
        }


@dataclass(frozen=True)
class PlayerLocation:
    address: str | None = None
    port: str | None = None
    protocol: str | None = None
    machine_identifier: str | None = None

    @property
    def can_control(self) -> bool:
        return bool(self.address)


@dataclass(frozen=True)
class NowPlaying:
    id: str
    title: str = UNKNOWN_TRACK
    artist: str = UNKNOWN_ARTIST
    album: str = UNKNOWN_ALBUM
    album_art_path: str | None = None
    state: PlaybackState = PlaybackState.PLAYING
    duration_ms: int = 0
    position_ms: int = 0
    player: PlayerLocation = field(default_factory=PlayerLocation)
    session_key: str | None = None

    @property
    def player_address(self) -> str | None:
        return self.player.address

    @property
    def player_port(self) -> str | None:
        return self.player.port

    @property
    def player_protocol(self) -> str | None:
        return self.player.protocol

    @property
    def is_paused(self) -> bool:
        return self.state is PlaybackState.PAUSED

    @property
    def progress(self) -> float:
        """Position as a fraction of duration, clamped to [0, 1].

        Plex occasionally reports a viewOffset past the end of the track.
        """
        if self.duration_ms <= 0:
            return 0.0
        return max(0.0, min(1.0, self.position_ms / self.duration_ms))

    def album_art_url(self, server_url: str) -> str | None:
        """Absolute art URL.  The token is sent as a header, never in here."""
        if not self.album_art_path:
            return None
        if self.album_art_path.startswith(("http://", "https://")):
            return self.album_art_path
        return f"{server_url.rstrip('/')}{self.album_art_path}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "album_art_path": self.album_art_path,
            "state": self.state.value,
            "duration_ms": self.duration_ms,
            "position_ms": self.position_ms,
            "duration": format_ms(self.duration_ms),
            "position": format_ms(min(self.position_ms, self.duration_ms)
                                  if self.duration_ms else self.position_ms),
            "progress": round(self.progress, 4),
            "session_key": self.session_key,
            "player_address": self.player.address,
            "player_port": self.player.port,
            "player_protocol": self.player.protocol,
            "can_control": self.player.can_control,
        }


@dataclass(frozen=True)
class SessionResult:
    """Outcome of one session fetch.

    Exactly one of: ``error`` set, or success with ``now_playing`` either a
    record or None ("nothing playing").
    """
    now_playing: NowPlaying | None = None
    error: PlexError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, *, status=None, cause=None):
        return cls(error=PlexError(kind, message, status=status, cause=cause))


@dataclass(frozen=True)
class CommandResult:
    error: PlexError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, *, status=None, cause=None):
        return cls(error=PlexError(kind, message, status=status, cause=cause))


class StateKind(str, enum.Enum):
    LOADING = "loading"
    ERROR = "error"
    PLAYING = "playing"
    EMPTY = "empty"


@dataclass(frozen=True)
class WidgetState:
    """What the presentation layer renders.

    An ERROR state keeps the last known track in ``now_playing`` so the UI
    can choose to leave it on screen.
    """
    kind: StateKind = StateKind.LOADING
    now_playing: NowPlaying | None = None
    error: PlexError | None = None
    artwork: str | None = None

    @classmethod
    def loading(cls):
        return cls(StateKind.LOADING)

    @classmethod
    def empty(cls):
        return cls(StateKind.EMPTY)

    @classmethod
    def playing(cls, now_playing: NowPlaying, artwork: str | None = None):
        return cls(StateKind.PLAYING, now_playing=now_playing, artwork=artwork)

    @classmethod
    def failed(cls, error: PlexError, last_known: NowPlaying | None = None):
        return cls(StateKind.ERROR, now_playing=last_known, error=error)

    def to_dict(self) -> dict:
        return {
            "state": self.kind.value,
            "now_playing": self.now_playing.to_dict() if self.now_playing else None,
            "error": self.error.to_dict() if self.error else None,
            "artwork": self.artwork,
        }
