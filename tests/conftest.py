import asyncio
from io import BytesIO

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from PIL import Image

from nowplaying.lib import config
from nowplaying.lib.models import Credentials

TOKEN = "secret-token"


class FakePlex:
    """A Plex media server + player that records what it was asked."""

    def __init__(self):
        self.sessions_status = 200
        self.sessions_body = {"MediaContainer": {"size": 0}}
        self.sessions_raw = None
        self.art = b""
        self.requests = []
        self.commands = []
        self.command_status = 200
        self.sessions_delay = 0
        self.command_delay = 0

    def app(self):
        app = web.Application()
        app.router.add_get("/status/sessions", self._sessions)
        app.router.add_get("/library/metadata/{key}/thumb/{ts}", self._thumb)
        app.router.add_get("/player/playback/{command}", self._command)
        return app

    async def _sessions(self, request):
        self.requests.append(request)
        if self.sessions_delay:
            await asyncio.sleep(self.sessions_delay)
        if self.sessions_raw is not None:
            return web.Response(status=self.sessions_status, text=self.sessions_raw,
                                content_type="application/json")
        return web.json_response(self.sessions_body, status=self.sessions_status)

    async def _thumb(self, request):
        self.requests.append(request)
        if request.headers.get("X-Plex-Token") != TOKEN:
            return web.Response(status=401)
        return web.Response(body=self.art, content_type="image/png")

    async def _command(self, request):
        self.commands.append(request)
        if self.command_delay:
            await asyncio.sleep(self.command_delay)
        return web.Response(status=self.command_status, text="")


@pytest.fixture(autouse=True)
def clean_config(monkeypatch, tmp_path):
    for var in ("PLEX_TOKEN", "PLEX_SERVER_URL", "PLEX_WIDGET_CONFIG"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(config, "USER_CONFIG_PATH", str(tmp_path / "user" / "config.json"))
    monkeypatch.chdir(tmp_path)
    config._config = None
    yield
    config._config = None


@pytest.fixture
def fake_plex():
    return FakePlex()


@pytest.fixture
async def plex_server(fake_plex):
    server = TestServer(fake_plex.app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def credentials(plex_server):
    return Credentials(server_url=str(plex_server.make_url("")), token=TOKEN)


@pytest.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


def png(size=(4, 4)):
    buf = BytesIO()
    Image.new("RGBA", size, (255, 0, 0, 255)).save(buf, "PNG")
    return buf.getvalue()


def track(**overrides):
    entry = {
        "type": "track",
        "ratingKey": "1234",
        "title": "Song A",
        "originalTitle": "Guest Artist",
        "grandparentTitle": "Album Artist",
        "parentTitle": "Album A",
        "thumb": "/library/metadata/1234/thumb/1700000000",
        "parentThumb": "/library/metadata/1200/thumb/1700000000",
        "grandparentThumb": "/library/metadata/1100/thumb/1700000000",
        "duration": 215000,
        "viewOffset": 42000,
        "sessionKey": "17",
        "Player": {
            "state": "playing",
            "address": "192.168.1.20",
            "port": "32500",
            "protocol": "plex",
            "machineIdentifier": "abc123",
        },
    }
    entry.update(overrides)
    return entry


def sessions(*entries):
    return {"MediaContainer": {"size": len(entries), "Metadata": list(entries)}}
