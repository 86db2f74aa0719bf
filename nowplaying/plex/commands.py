# Plex Now Playing Widget
# Copyright (C) 2026 The plex-now-playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
PlayerCommandDispatcher — remote control for the active Plex player.

Plex players listen on port 3005:
  GET /player/playback/{play|pause|skipNext|skipPrevious}?commandID=N

commandID must increase with every command a controller sends.  The
response body is ignored; any 2xx counts as success.  Nothing here touches
the now-playing state; callers refresh afterwards.
"""

import asyncio
import enum
import itertools
import logging

import aiohttp

from ..lib.models import CommandResult, ErrorKind, NowPlaying, PlayerLocation

log = logging.getLogger(__name__)

PLAYER_PORT = 3005
COMMAND_TIMEOUT = 5  # seconds
DEVICE_NAME = "Plex Desktop Widget"


class PlayerCommand(str, enum.Enum):
    PLAY = "play"
    PAUSE = "pause"
    SKIP_NEXT = "skipNext"
    SKIP_PREVIOUS = "skipPrevious"


class PlayerCommandDispatcher:

    def __init__(self, http_session: aiohttp.ClientSession,
                 client_identifier: str,
                 device_name: str = DEVICE_NAME,
                 timeout: float = COMMAND_TIMEOUT):
        self._http_session = http_session
        self.client_identifier = client_identifier
        self.device_name = device_name
        self.timeout = timeout
        self._command_ids = itertools.count(1)
        self.last_command_id = 0

    async def send(self, command: PlayerCommand | str,
                   target: PlayerLocation | None) -> CommandResult:
        try:
            command = PlayerCommand(command)
        except ValueError:
            return CommandResult.failure(
                ErrorKind.SERVER_ERROR, f"Unknown player command '{command}'")

        if target is None or not target.address:
            log.warning("No player address available for %s", command.value)
            return CommandResult.failure(
                ErrorKind.NO_PLAYER_TARGET, "No player address available")

        self.last_command_id = next(self._command_ids)
        url = f"http://{target.address}:{PLAYER_PORT}/player/playback/{command.value}"
        log.info("Sending %s to %s (commandID=%d)",
                 command.value, target.address, self.last_command_id)

        try:
            async with self._http_session.get(
                url,
                params={"commandID": str(self.last_command_id)},
                headers={
                    "X-Plex-Client-Identifier": self.client_identifier,
                    "X-Plex-Device-Name": self.device_name,
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if not 200 <= resp.status < 300:
                    log.warning("%s command returned status %d", command.value, resp.status)
                    return CommandResult.failure(
                        ErrorKind.SERVER_ERROR,
                        f"Player returned status {resp.status}", status=resp.status)
        except asyncio.TimeoutError:
            log.warning("%s command to %s timed out", command.value, target.address)
            return CommandResult.failure(
                ErrorKind.CONNECTION_FAILED,
                f"Player did not respond within {self.timeout:g}s", cause="timeout")
        except (aiohttp.ClientError, ValueError) as e:
            log.warning("Error sending %s command: %s", command.value, e)
            return CommandResult.failure(
                ErrorKind.CONNECTION_FAILED, f"Connection failed: {e}",
                cause=type(e).__name__)

        log.info("%s command sent successfully", command.value)
        return CommandResult()

    async def play(self, target: PlayerLocation | None) -> CommandResult:
        return await self.send(PlayerCommand.PLAY, target)

    async def pause(self, target: PlayerLocation | None) -> CommandResult:
        return await self.send(PlayerCommand.PAUSE, target)

    async def skip_next(self, target: PlayerLocation | None) -> CommandResult:
        return await self.send(PlayerCommand.SKIP_NEXT, target)

    async def skip_previous(self, target: PlayerLocation | None) -> CommandResult:
        return await self.send(PlayerCommand.SKIP_PREVIOUS, target)

    async def toggle(self, now_playing: NowPlaying) -> CommandResult:
        """Play when paused, pause otherwise."""
        if now_playing.is_paused:
            return await self.play(now_playing.player)
        return await self.pause(now_playing.player)
