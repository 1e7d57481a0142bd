"""Tests for the host-side match server client.

HTTP calls are replaced with AsyncMock/fake sessions; coroutines are driven
with asyncio.run.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import aiohttp

from match_client import MatchServerClient, MatchServerConfig


class FakeResponse:
    def __init__(self, status, payload=None):
        self.status = status
        self._payload = payload or {}

    async def json(self):
        return self._payload

    async def text(self):
        return str(self._payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def make_client(**config):
    config.setdefault("retry_delay", 0)
    return MatchServerClient(MatchServerConfig(**config))


def test_register_match_stores_id():
    client = make_client()
    client._make_request = AsyncMock(return_value={"id": "m1", "proxyUrl": "10.0.0.5:7777"})

    match_id = asyncio.run(client.register_match("Alice", "10.0.0.5", 7777, "de_dust2"))

    assert match_id == "m1"
    assert client.match_id == "m1"
    client._make_request.assert_awaited_once_with(
        "POST",
        "/api/matches/register",
        {"hostName": "Alice", "proxyAddress": "10.0.0.5", "proxyPort": 7777, "map": "de_dust2"},
    )


def test_register_match_sends_max_players_when_given():
    client = make_client()
    client._make_request = AsyncMock(return_value={"id": "m1"})

    asyncio.run(client.register_match("Alice", "10.0.0.5", 7777, "de_dust2", max_players=4))

    payload = client._make_request.await_args.args[2]
    assert payload["maxPlayers"] == 4


def test_register_match_failure_returns_none():
    client = make_client()
    client._make_request = AsyncMock(return_value=None)

    assert asyncio.run(client.register_match("Alice", "10.0.0.5", 7777, "de_dust2")) is None
    assert client.match_id is None


def test_send_heartbeat():
    client = make_client()
    client.match_id = "m1"
    client._make_request = AsyncMock(return_value={"ok": True, "message": "Heartbeat OK"})

    assert asyncio.run(client.send_heartbeat()) is True
    client._make_request.assert_awaited_once_with(
        "POST", "/api/matches/heartbeat", {"id": "m1"}, retry=False
    )


def test_send_heartbeat_unknown_match():
    client = make_client()
    client._make_request = AsyncMock(return_value=None)

    assert asyncio.run(client.send_heartbeat("gone")) is False


def test_send_heartbeat_without_id_skips_request():
    client = make_client()
    client._make_request = AsyncMock()

    assert asyncio.run(client.send_heartbeat()) is False
    client._make_request.assert_not_awaited()


def test_unregister_clears_stored_id():
    client = make_client()
    client.match_id = "m1"
    client._make_request = AsyncMock(return_value={"ok": True})

    assert asyncio.run(client.unregister_match()) is True
    assert client.match_id is None
    client._make_request.assert_awaited_once_with(
        "POST", "/api/matches/unregister", {"id": "m1"}, retry=False
    )


def test_unregister_without_id():
    client = make_client()
    client._make_request = AsyncMock()

    assert asyncio.run(client.unregister_match()) is False
    client._make_request.assert_not_awaited()


def test_fetch_match_list():
    client = make_client()
    matches = [{"id": "m1", "hostName": "Alice"}]
    client._make_request = AsyncMock(return_value={"matches": matches, "total": 1, "timestamp": 0})

    assert asyncio.run(client.fetch_match_list()) == matches


def test_fetch_match_list_failure_is_empty():
    client = make_client()
    client._make_request = AsyncMock(return_value=None)

    assert asyncio.run(client.fetch_match_list()) == []


def test_check_health():
    client = make_client()
    client._make_request = AsyncMock(return_value={"status": "ok", "uptime": "0min"})
    assert asyncio.run(client.check_health()) is True

    client._make_request = AsyncMock(return_value=None)
    assert asyncio.run(client.check_health()) is False


def test_heartbeat_loop_starts_and_stops():
    client = make_client(heartbeat_interval=3600)
    client._make_request = AsyncMock(return_value={"ok": True})

    async def scenario():
        await client.start_heartbeat("m1")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await client.stop_heartbeat()

    asyncio.run(scenario())

    assert client.heartbeat_task is None
    client._make_request.assert_awaited_with(
        "POST", "/api/matches/heartbeat", {"id": "m1"}, retry=False
    )


def test_disconnect_unregisters_match():
    client = make_client()
    client.match_id = "m1"
    client._make_request = AsyncMock(return_value={"ok": True})

    asyncio.run(client.disconnect())

    assert client.match_id is None
    client._make_request.assert_awaited_once()


def test_make_request_retries_after_rate_limit():
    client = make_client(retry_attempts=3)
    client.session = Mock()
    client.session.request = Mock(side_effect=[
        FakeResponse(429, {"error": "Rate limit exceeded. Slow down!"}),
        FakeResponse(200, {"status": "ok"}),
    ])

    result = asyncio.run(client._make_request("GET", "/health"))

    assert result == {"status": "ok"}
    assert client.session.request.call_count == 2


def test_make_request_does_not_retry_client_errors():
    client = make_client(retry_attempts=3)
    client.session = Mock()
    client.session.request = Mock(return_value=FakeResponse(400, {"error": "Missing fields"}))

    assert asyncio.run(client._make_request("POST", "/api/matches/register", {})) is None
    assert client.session.request.call_count == 1


def test_make_request_not_found_returns_none():
    client = make_client(retry_attempts=3)
    client.session = Mock()
    client.session.request = Mock(return_value=FakeResponse(404))

    assert asyncio.run(client._make_request("POST", "/api/matches/heartbeat", {"id": "x"})) is None
    assert client.session.request.call_count == 1


def test_make_request_gives_up_after_network_errors():
    client = make_client(retry_attempts=2)
    client.session = Mock()
    client.session.request = Mock(side_effect=aiohttp.ClientConnectionError("refused"))

    assert asyncio.run(client._make_request("GET", "/api/matches/list")) is None
    assert client.session.request.call_count == 2
