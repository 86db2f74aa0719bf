import pytest
from aiohttp.test_utils import unused_port

from nowplaying.lib.models import ErrorKind, NowPlaying, PlaybackState, PlayerLocation
from nowplaying.plex import commands
from nowplaying.plex.commands import PlayerCommand, PlayerCommandDispatcher


class CountingSession:
    """Stands in for aiohttp.ClientSession and fails the test if used."""

    def __init__(self):
        self.calls = 0

    def get(self, *args, **kwargs):
        self.calls += 1
        raise AssertionError("no network call expected")


@pytest.fixture
def player_port(monkeypatch, plex_server):
    monkeypatch.setattr(commands, "PLAYER_PORT", plex_server.port)
    return plex_server.port


@pytest.fixture
def target():
    return PlayerLocation(address="127.0.0.1", port="32500", protocol="plex")


@pytest.mark.parametrize("location", [None, PlayerLocation(), PlayerLocation(address="")])
async def test_no_address_fails_without_network_call(location):
    session = CountingSession()
    dispatcher = PlayerCommandDispatcher(session, "widget-1")

    result = await dispatcher.send(PlayerCommand.PLAY, location)

    assert not result.ok
    assert result.error.kind is ErrorKind.NO_PLAYER_TARGET
    assert session.calls == 0
    assert dispatcher.last_command_id == 0


async def test_send_hits_player_playback_endpoint(fake_plex, player_port, target, http_session):
    dispatcher = PlayerCommandDispatcher(http_session, "widget-1")

    result = await dispatcher.send(PlayerCommand.SKIP_NEXT, target)

    assert result.ok
    request = fake_plex.commands[-1]
    assert request.path == "/player/playback/skipNext"
    assert request.query["commandID"] == "1"
    assert request.headers["X-Plex-Client-Identifier"] == "widget-1"
    assert request.headers["X-Plex-Device-Name"] == "Plex Desktop Widget"


async def test_command_ids_increase(fake_plex, player_port, target, http_session):
    dispatcher = PlayerCommandDispatcher(http_session, "widget-1")

    await dispatcher.play(target)
    await dispatcher.pause(target)
    await dispatcher.skip_previous(target)

    assert [r.query["commandID"] for r in fake_plex.commands] == ["1", "2", "3"]
    assert [r.match_info["command"] for r in fake_plex.commands] == \
        ["play", "pause", "skipPrevious"]


async def test_string_commands_are_accepted(fake_plex, player_port, target, http_session):
    dispatcher = PlayerCommandDispatcher(http_session, "widget-1")
    assert (await dispatcher.send("pause", target)).ok
    assert fake_plex.commands[-1].path == "/player/playback/pause"


async def test_non_2xx_is_reported(fake_plex, player_port, target, http_session):
    fake_plex.command_status = 500
    dispatcher = PlayerCommandDispatcher(http_session, "widget-1")

    result = await dispatcher.send(PlayerCommand.PLAY, target)

    assert result.error.kind is ErrorKind.SERVER_ERROR
    assert result.error.status == 500
    assert len(fake_plex.commands) == 1


async def test_unreachable_player_is_connection_failed(monkeypatch, target, http_session):
    monkeypatch.setattr(commands, "PLAYER_PORT", unused_port())
    dispatcher = PlayerCommandDispatcher(http_session, "widget-1")

    result = await dispatcher.send(PlayerCommand.PLAY, target)

    assert result.error.kind is ErrorKind.CONNECTION_FAILED


@pytest.mark.parametrize("state,expected", [
    (PlaybackState.PAUSED, "play"),
    (PlaybackState.PLAYING, "pause"),
])
async def test_toggle(fake_plex, player_port, target, http_session, state, expected):
    dispatcher = PlayerCommandDispatcher(http_session, "widget-1")
    now_playing = NowPlaying(id="1", state=state, player=target)

    assert (await dispatcher.toggle(now_playing)).ok
    assert fake_plex.commands[-1].match_info["command"] == expected


async def test_slow_player_times_out(fake_plex, player_port, target, http_session):
    fake_plex.command_delay = 1
    dispatcher = PlayerCommandDispatcher(http_session, "widget-1", timeout=0.1)

    result = await dispatcher.send(PlayerCommand.PAUSE, target)

    assert result.error.kind is ErrorKind.CONNECTION_FAILED
    assert result.error.cause == "timeout"
