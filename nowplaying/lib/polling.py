# Plex Now Playing Widget
# Copyright (C) 2026 The plex-now-playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
PollingController — drives the session client on a fixed interval.

One asyncio task owns the schedule.  Each tick spawns the fetch as its own
task so that stop() can cancel the schedule without cancelling a request
that is already on the wire; that request finishes, sees a stale
generation, and is dropped.

    controller = PollingController(client, credentials)
    controller.add_listener(on_state)   # sync or async callable(WidgetState)
    controller.start(2.0)
    ...
    controller.stop()

Ticks never overlap: if the previous fetch is still running when a tick is
due, the tick is skipped.
"""

import asyncio
import inspect
import logging

from .models import Credentials, NowPlaying, SessionResult, StateKind, WidgetState

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 2.0   # seconds
REFRESH_DELAY = 0.5      # seconds — lets the player apply a command first


class PollingController:

    def __init__(self, client, credentials: Credentials | None = None,
                 interval: float = DEFAULT_INTERVAL):
        self._client = client
        self._credentials = credentials
        self.interval = interval
        self._listeners: list = []
        self._state = WidgetState.loading()
        self._last_now_playing: NowPlaying | None = None
        self._generation = 0
        self._timer_task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None
        self.tick_count = 0
        self.skipped_ticks = 0

    # ── Public API ──

    @property
    def state(self) -> WidgetState:
        return self._state

    @property
    def running(self) -> bool:
        return self._timer_task is not None

    @property
    def generation(self) -> int:
        return self._generation

    def add_listener(self, callback):
        self._listeners.append(callback)

    def remove_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def start(self, interval: float | None = None):
        """Start polling, or restart with a new interval if already running.

        Must be called from within the running event loop.
        """
        if interval is not None:
            if interval <= 0:
                raise ValueError("interval must be positive")
            self.interval = interval

        if self.running:
            log.info("Restarting polling (interval=%gs)", self.interval)
            self._cancel_schedule()
        else:
            log.info("Starting polling (interval=%gs)", self.interval)

        self._generation += 1
        self._timer_task = asyncio.get_running_loop().create_task(
            self._run(self._generation))

    def stop(self):
        """Stop polling.  No-op when idle.

        A fetch already in flight runs to completion; its result is discarded.
        """
        if not self.running:
            return
        self._generation += 1
        self._cancel_schedule()
        log.info("Polling stopped")

    def refresh(self) -> bool:
        """Run one tick now, outside the schedule.

        Returns False when idle or when a fetch is already in flight.
        """
        if not self.running:
            return False
        return self._fire(self._generation)

    def refresh_soon(self, delay: float = REFRESH_DELAY):
        """Refresh once after *delay* seconds (used after player commands)."""
        if not self.running:
            return
        if self._refresh_task and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = asyncio.get_running_loop().create_task(
            self._delayed_refresh(delay, self._generation))

    async def wait_idle(self):
        """Wait for the in-flight fetch, if any, to finish."""
        if self._inflight and not self._inflight.done():
            await asyncio.wait([self._inflight])

    # ── Scheduling ──

    def _cancel_schedule(self):
        if self._timer_task:
            self._timer_task.cancel()
            self._timer_task = None
        if self._refresh_task:
            self._refresh_task.cancel()
            self._refresh_task = None

    async def _run(self, generation: int):
        while generation == self._generation:
            self._fire(generation)
            await asyncio.sleep(self.interval)

    async def _delayed_refresh(self, delay: float, generation: int):
        await asyncio.sleep(delay)
        if generation == self._generation:
            self._fire(generation)

    def _fire(self, generation: int) -> bool:
        if self._inflight and not self._inflight.done():
            self.skipped_ticks += 1
            log.debug("Previous fetch still running, skipping tick")
            return False
        self.tick_count += 1
        self._inflight = asyncio.get_running_loop().create_task(self._tick(generation))
        return True

    async def _tick(self, generation: int):
        result = await self._client.fetch_now_playing(self._credentials)
        if generation != self._generation:
            log.debug("Discarding result from stale poll (generation %d, now %d)",
                      generation, self._generation)
            return
        await self._apply(result)

    # ── State publication ──

    async def _apply(self, result: SessionResult):
        previous = self._state
        if result.error:
            if previous.kind is not StateKind.ERROR or previous.error != result.error:
                log.warning("Plex poll failed: %s", result.error.message)
            new_state = WidgetState.failed(result.error, last_known=self._last_now_playing)
        elif result.now_playing:
            if previous.kind is StateKind.ERROR:
                log.info("Plex reachable again")
            self._last_now_playing = result.now_playing
            new_state = WidgetState.playing(result.now_playing)
        else:
            if previous.kind is StateKind.ERROR:
                log.info("Plex reachable again")
            self._last_now_playing = None
            new_state = WidgetState.empty()
        await self._publish(new_state)

    async def _publish(self, state: WidgetState):
        self._state = state
        for callback in list(self._listeners):
            try:
                result = callback(state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error("State listener %r failed: %s", callback, e)
