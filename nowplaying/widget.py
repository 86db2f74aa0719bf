#!/usr/bin/env python3
# Plex Now Playing Widget
# Copyright (C) 2026 The plex-now-playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Plex now-playing widget service (plex-now-playing)

Polls a Plex Media Server for the current music session and pushes the
result to presentation clients over WebSocket (port 8780).  Playback
buttons in the UI post to the /player routes, which forward the command to
the Plex player and refresh shortly after.

Routes:
  GET  /ws                 — push feed: {"type": "widget_state", "reason", "data"}
  GET  /player/state       — current widget state
  POST /player/play|pause|toggle|next|prev
  GET  /artwork            — current album art (token stays server-side)
  GET  /status             — service status
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from dataclasses import replace

import aiohttp
from aiohttp import web

from .lib.app_monitor import PlexAppMonitor
from .lib.config import ConfigStore, cfg
from .lib.models import Credentials, StateKind, WidgetState
from .lib.polling import DEFAULT_INTERVAL, REFRESH_DELAY, PollingController
from .plex.commands import DEVICE_NAME, PlayerCommand, PlayerCommandDispatcher
from .plex.session import SessionClient, default_client_identifier

log = logging.getLogger(__name__)

DEFAULT_PORT = 8780
DEFAULT_HOST = "127.0.0.1"

COMMAND_ROUTES = {
    "play": PlayerCommand.PLAY,
    "pause": PlayerCommand.PAUSE,
    "next": PlayerCommand.SKIP_NEXT,
    "prev": PlayerCommand.SKIP_PREVIOUS,
}


class WidgetService:
    """Wires config, session client, dispatcher and poller to an aiohttp app."""

    def __init__(self, credentials: Credentials, *,
                 interval: float = DEFAULT_INTERVAL,
                 host: str = DEFAULT_HOST,
                 port: int = DEFAULT_PORT,
                 client_identifier: str | None = None,
                 device_name: str = DEVICE_NAME,
                 artist_priority: str = "original_title",
                 refresh_after_command: str = "delayed",
                 quit_with_plex: bool = False,
                 http_session: aiohttp.ClientSession | None = None,
                 app_monitor: PlexAppMonitor | None = None):
        self.credentials = credentials
        self.interval = interval
        self.host = host
        self.port = port
        self.client_identifier = client_identifier or default_client_identifier()
        self.device_name = device_name
        self.artist_priority = artist_priority
        self.refresh_after_command = refresh_after_command
        self.quit_with_plex = quit_with_plex
        self.app_monitor = app_monitor or PlexAppMonitor()

        self._http_session = http_session
        self._owns_session = http_session is None
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None
        self._stop_event: asyncio.Event | None = None
        self._artwork_task: asyncio.Task | None = None
        self._current_track_id: str | None = None
        self._artwork: str | None = None

        self.session_client: SessionClient | None = None
        self.dispatcher: PlayerCommandDispatcher | None = None
        self.controller: PollingController | None = None

    @classmethod
    def from_config(cls, store: ConfigStore, **overrides):
        """Build a service from the config file; None without credentials."""
        credentials = store.load()
        if credentials is None:
            return None
        options = {
            "interval": float(cfg("widget", "poll_interval", default=DEFAULT_INTERVAL)),
            "host": cfg("widget", "host", default=DEFAULT_HOST),
            "port": int(cfg("widget", "port", default=DEFAULT_PORT)),
            "client_identifier": cfg("widget", "client_identifier"),
            "device_name": cfg("widget", "device_name", default=DEVICE_NAME),
            "artist_priority": cfg("widget", "artist_priority", default="original_title"),
            "refresh_after_command": cfg("widget", "refresh_after_command", default="delayed"),
            "quit_with_plex": bool(cfg("widget", "quit_with_plex", default=False)),
        }
        options.update({k: v for k, v in overrides.items() if v is not None})
        return cls(credentials, **options)

    # ── Lifecycle ──

    def build(self):
        """Create the Plex clients and the poller (needs a running loop)."""
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        self.session_client = SessionClient(
            self._http_session, self.credentials,
            client_identifier=self.client_identifier,
            artist_priority=self.artist_priority)
        self.dispatcher = PlayerCommandDispatcher(
            self._http_session, self.client_identifier, device_name=self.device_name)
        self.controller = PollingController(
            self.session_client, self.credentials, interval=self.interval)
        self.controller.add_listener(self._on_state)

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_get("/player/state", self._handle_state)
        app.router.add_post("/player/toggle", self._handle_toggle)
        for name in COMMAND_ROUTES:
            app.router.add_post(f"/player/{name}", self._handle_command)
        app.router.add_get("/artwork", self._handle_artwork)
        app.router.add_get("/status", self._handle_status)
        return app

    async def start(self):
        if self.controller is None:
            self.build()

        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("Widget service on http://%s:%d (Plex server %s)",
                 self.host, self.port, self.credentials.server_url)

        self.controller.start(self.interval)
        if self.quit_with_plex:
            self.app_monitor.watch(self._on_plex_exit)

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._stop_event.set)
        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Clean up resources."""
        if self.controller:
            self.controller.stop()
        self.app_monitor.cancel()

        if self._artwork_task:
            self._artwork_task.cancel()
            self._artwork_task = None

        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        if self._http_session and self._owns_session:
            await self._http_session.close()
            self._http_session = None

    async def _on_plex_exit(self):
        log.info("Plex quit — stopping widget")
        await asyncio.sleep(REFRESH_DELAY)
        if self._stop_event:
            self._stop_event.set()

    # ── State feed ──

    def current_state(self) -> WidgetState:
        state = self.controller.state if self.controller else WidgetState.loading()
        if state.now_playing and state.now_playing.id == self._current_track_id:
            return replace(state, artwork=self._artwork)
        return state

    async def _on_state(self, state: WidgetState):
        track = state.now_playing if state.kind is StateKind.PLAYING else None
        reason = "update"
        if track and track.id != self._current_track_id:
            log.info("Track changed: %s — %s", track.artist, track.title)
            self._current_track_id = track.id
            self._artwork = None
            reason = "track_change"
            self._start_artwork_fetch(state)
        elif state.kind is StateKind.EMPTY and self._current_track_id is not None:
            log.info("Nothing playing")
            self._current_track_id = None
            self._artwork = None
            reason = "stopped"
        elif state.kind is StateKind.ERROR:
            reason = "error"

        await self.broadcast(self.current_state(), reason)

    def _start_artwork_fetch(self, state: WidgetState):
        if self._artwork_task and not self._artwork_task.done():
            self._artwork_task.cancel()
        if state.now_playing.album_art_path:
            self._artwork_task = asyncio.get_running_loop().create_task(
                self._fetch_artwork(state.now_playing))

    async def _fetch_artwork(self, now_playing):
        artwork = await self.session_client.fetch_artwork(now_playing)
        if artwork is None or now_playing.id != self._current_track_id:
            return
        self._artwork = artwork.data_url
        await self.broadcast(self.current_state(), "artwork")

    async def broadcast(self, state: WidgetState, reason: str = "update"):
        """Push the widget state to all connected WebSocket clients."""
        if not self._ws_clients:
            return

        message = json.dumps({
            "type": "widget_state",
            "reason": reason,
            "data": state.to_dict(),
        })

        disconnected = set()
        for ws in self._ws_clients:
            try:
                await ws.send_str(message)
            except (ConnectionError, RuntimeError):
                disconnected.add(ws)

        self._ws_clients -= disconnected
        log.debug("Broadcast widget state to %d clients: %s",
                  len(self._ws_clients), reason)

    # ── HTTP handlers ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._ws_clients.add(ws)
        log.info("WebSocket client connected (%d total)", len(self._ws_clients))

        try:
            await ws.send_json({
                "type": "widget_state",
                "reason": "client_connect",
                "data": self.current_state().to_dict(),
            })
            # Push-only — incoming messages are ignored
            async for _ in ws:
                pass
        finally:
            self._ws_clients.discard(ws)
            log.info("WebSocket client disconnected (%d remaining)",
                     len(self._ws_clients))

        return ws

    async def _handle_state(self, request: web.Request) -> web.Response:
        return web.json_response(self.current_state().to_dict())

    async def _handle_command(self, request: web.Request) -> web.Response:
        command = COMMAND_ROUTES[request.path.rsplit("/", 1)[-1]]
        return await self._dispatch(command)

    async def _handle_toggle(self, request: web.Request) -> web.Response:
        return await self._dispatch(None)

    async def _dispatch(self, command: PlayerCommand | None) -> web.Response:
        now_playing = self.controller.state.now_playing
        if now_playing is None:
            return web.json_response(
                {"status": "error", "error": "Nothing is playing"}, status=409)

        if command is None:
            result = await self.dispatcher.toggle(now_playing)
        else:
            result = await self.dispatcher.send(command, now_playing.player)

        if self.refresh_after_command == "immediate":
            self.controller.refresh()
        elif self.refresh_after_command == "delayed":
            self.controller.refresh_soon(REFRESH_DELAY)

        if not result.ok:
            return web.json_response(
                {"status": "error", "error": result.error.to_dict()}, status=502)
        return web.json_response({"status": "ok"})

    async def _handle_artwork(self, request: web.Request) -> web.Response:
        now_playing = self.controller.state.now_playing
        if now_playing is None or not now_playing.album_art_path:
            raise web.HTTPNotFound(text="No album art")
        artwork = await self.session_client.fetch_artwork(now_playing)
        if artwork is None:
            raise web.HTTPNotFound(text="No album art")
        return web.Response(body=artwork.jpeg, content_type="image/jpeg",
                            headers={"Cache-Control": "no-store"})

    async def _handle_status(self, request: web.Request) -> web.Response:
        state = self.controller.state
        return web.json_response({
            "server_url": self.credentials.server_url,
            "running": self.controller.running,
            "interval": self.controller.interval,
            "ticks": self.controller.tick_count,
            "skipped_ticks": self.controller.skipped_ticks,
            "state": state.kind.value,
            "ws_clients": len(self._ws_clients),
            "last_command_id": self.dispatcher.last_command_id,
            "plex_app_running": self.app_monitor.is_running,
        })


# ── CLI ──

async def _fetch_once(credentials: Credentials, artist_priority: str) -> int:
    async with aiohttp.ClientSession() as session:
        client = SessionClient(session, credentials, artist_priority=artist_priority)
        result = await client.fetch_now_playing()
    if result.error:
        print(json.dumps({"error": result.error.to_dict()}, indent=2))
        return 1
    if result.now_playing is None:
        print(json.dumps({"now_playing": None}, indent=2))
        return 2
    print(json.dumps({"now_playing": result.now_playing.to_dict()}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plex-now-playing",
        description="Show what Plex is playing and control the player")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--config", help="config file (default ~/.plex-widget/config.json)")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="run the widget service (default)")
    run.add_argument("--interval", type=float, help="poll interval in seconds")
    run.add_argument("--port", type=int, help="HTTP/WebSocket port")
    run.add_argument("--host", help="listen address")

    configure = sub.add_parser("configure", help="save Plex server URL and token")
    configure.add_argument("--server-url", required=True)
    configure.add_argument("--token", required=True)

    sub.add_parser("once", help="fetch now playing once and print it as JSON")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    if args.config:
        os.environ["PLEX_WIDGET_CONFIG"] = args.config
    store = ConfigStore(args.config)

    if args.command == "configure":
        return 0 if store.save(args.server_url, args.token) else 1

    if args.command == "once":
        credentials = store.load()
        if credentials is None:
            return 1
        priority = cfg("widget", "artist_priority", default="original_title")
        return asyncio.run(_fetch_once(credentials, priority))

    service = WidgetService.from_config(
        store,
        interval=getattr(args, "interval", None),
        port=getattr(args, "port", None),
        host=getattr(args, "host", None),
    )
    if service is None:
        return 1
    asyncio.run(service.run())
    return 0


if __name__ == "__main__":
    sys.exit(main())
