# Plex Now Playing Widget
# Copyright (C) 2026 The plex-now-playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Watch for the Plex desktop app so the widget can quit alongside it."""

import asyncio
import inspect
import logging
import subprocess

log = logging.getLogger(__name__)

CHECK_INTERVAL = 5   # seconds

# Desktop players, not the media server itself
PLEX_APP_NAMES = ("plex", "plexamp", "plex htpc", "plex media player")
EXCLUDED_NAMES = ("plex media server", "plex media scan", "plex tuner service",
                  "plex dlna server", "plex transcoder", "plex script host",
                  "plex relay", "plex commercial skipper", "plex-now-playing")

# Linux reports at most 15 characters of a process name (TASK_COMM_LEN - 1)
COMM_NAME_LIMIT = 15


def _excluded(name: str) -> bool:
    for excluded in EXCLUDED_NAMES:
        if name.startswith(excluded):
            return True
        if len(name) >= COMM_NAME_LIMIT and excluded.startswith(name):
            return True
    return False


def is_plex_app(process_name: str) -> bool:
    name = process_name.strip().lower()
    if not name or _excluded(name):
        return False
    return name in PLEX_APP_NAMES or "plex" in name


def parse_pgrep(output: str) -> list[str]:
    """Process names from `pgrep -l` output ("PID NAME" per line)."""
    names = []
    for line in output.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) == 2:
            names.append(parts[1])
    return names


class PlexAppMonitor:

    def __init__(self, interval: float = CHECK_INTERVAL):
        self.interval = interval
        self.is_running = False
        self._task: asyncio.Task | None = None
        self._pgrep_missing = False

    async def is_plex_running(self) -> bool:
        if self._pgrep_missing:
            return False
        try:
            proc = await asyncio.create_subprocess_exec(
                "pgrep", "-il", "plex",
                stdout=subprocess.PIPE, stderr=subprocess.DEVNULL,
            )
            stdout, _ = await proc.communicate()
        except FileNotFoundError:
            log.warning("pgrep not found — cannot detect the Plex app")
            self._pgrep_missing = True
            return False
        except OSError as e:
            log.warning("Could not check for the Plex app: %s", e)
            return False

        names = [n for n in parse_pgrep(stdout.decode(errors="replace")) if is_plex_app(n)]
        if names:
            log.debug("Plex app processes: %s", ", ".join(names))
        return bool(names)

    def watch(self, on_exit):
        """Call *on_exit* once when a running Plex app goes away."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._watch(on_exit))

    def cancel(self):
        if self._task:
            self._task.cancel()
            self._task = None

    async def _watch(self, on_exit):
        self.is_running = await self.is_plex_running()
        if self.is_running:
            log.info("Plex is already running")
        while True:
            await asyncio.sleep(self.interval)
            running = await self.is_plex_running()
            if running and not self.is_running:
                log.info("Plex app launched")
            if self.is_running and not running:
                log.info("Plex app terminated")
                self.is_running = False
                result = on_exit()
                if inspect.isawaitable(result):
                    await result
                return
            self.is_running = running
