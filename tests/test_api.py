import asyncio
import json
import logging
from logging.handlers import RotatingFileHandler
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio
import uvicorn
from fastapi import FastAPI

from conftest import PROFILE, drain
from linebot_mcp import __version__
from linebot_mcp.errors import RemoteAPIFailure
from linebot_mcp.main import create_app
from linebot_mcp.models import SessionState
from linebot_mcp.services.coordinator import ConnectionCoordinator


@pytest.fixture
def app(settings, coordinator: ConnectionCoordinator) -> FastAPI:
    return create_app(settings, coordinator=coordinator)


@pytest_asyncio.fixture
async def client(app: FastAPI):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def _call(tool: str, arguments: dict, request_id: int = 1) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": tool, "arguments": arguments},
    }


@pytest.mark.asyncio
async def test_health(client: httpx.AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": __version__}


@pytest.mark.asyncio
async def test_welcome_page(client: httpx.AsyncClient) -> None:
    resp = await client.get("/")
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert "<code>/sse</code>" in resp.text
    assert __version__ in resp.text


@pytest.mark.asyncio
async def test_post_unknown_session_is_400(client: httpx.AsyncClient, coordinator: ConnectionCoordinator) -> None:
    resp = await client.post("/messages", params={"sessionId": "nope"}, json=_call("get_profile", {}))
    assert resp.status_code == 400
    assert resp.json()["detail"] == "No transport found for sessionId"

    resp = await client.post("/messages", json=_call("get_profile", {}))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_post_invalid_json_is_400(client: httpx.AsyncClient, coordinator: ConnectionCoordinator) -> None:
    session_id, channel = coordinator.open_session()
    resp = await client.post(
        "/messages",
        params={"sessionId": session_id},
        content=b"{broken",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400
    assert drain(channel) == []


@pytest.mark.asyncio
async def test_get_profile_round_trip(
    client: httpx.AsyncClient, coordinator: ConnectionCoordinator, line_client: MagicMock
) -> None:
    """The POST completes with 200 only after the profile is on the channel."""
    session_id, channel = coordinator.open_session()

    resp = await client.post(
        "/messages",
        params={"session": session_id},
        json={"tool": "get_profile", "arguments": {"userId": "U1"}},
    )

    assert resp.status_code == 200
    assert resp.json() == {"status": "completed", "sessionId": session_id}
    (message,) = drain(channel)
    assert json.loads(message["content"][0]["text"]) == PROFILE


@pytest.mark.asyncio
async def test_remote_failure_still_returns_200(
    client: httpx.AsyncClient, coordinator: ConnectionCoordinator, line_client: MagicMock
) -> None:
    """Tool-level failure is recorded in the payload; the transport succeeds."""
    line_client.send_message.side_effect = RemoteAPIFailure("Invalid reply token (HTTP 400)", 400)
    session_id, channel = coordinator.open_session()

    resp = await client.post(
        "/messages",
        params={"sessionId": session_id},
        json=_call("push_text_message", {"message": {"type": "text", "text": "hi"}}),
    )

    assert resp.status_code == 200
    (message,) = drain(channel)
    assert message["id"] == 1
    assert message["result"] == {
        "isError": True,
        "content": [{"type": "text", "text": "Error: Invalid reply token (HTTP 400)"}],
    }


@pytest.mark.asyncio
async def test_non_call_messages_are_accepted(client: httpx.AsyncClient, coordinator: ConnectionCoordinator) -> None:
    session_id, channel = coordinator.open_session()
    resp = await client.post(
        "/messages",
        params={"sessionId": session_id},
        json={"jsonrpc": "2.0", "id": 0, "method": "ping"},
    )
    assert resp.status_code == 202
    assert drain(channel) == [{"jsonrpc": "2.0", "id": 0, "result": {}}]


@pytest.mark.asyncio
async def test_busy_session_is_409(
    client: httpx.AsyncClient, coordinator: ConnectionCoordinator, line_client: MagicMock
) -> None:
    release = asyncio.Event()

    async def slow_profile(user_id: str) -> dict:
        await release.wait()
        return PROFILE

    line_client.get_profile.side_effect = slow_profile
    session_id, channel = coordinator.open_session()
    params = {"sessionId": session_id}

    first = asyncio.create_task(client.post("/messages", params=params, json=_call("get_profile", {}, 1)))
    await asyncio.sleep(0.05)
    second = await client.post("/messages", params=params, json=_call("get_profile", {}, 2))
    assert second.status_code == 409

    release.set()
    assert (await first).status_code == 200
    assert line_client.get_profile.await_count == 1


@pytest.mark.asyncio
async def test_channel_close_releases_post_with_410(
    client: httpx.AsyncClient, coordinator: ConnectionCoordinator, line_client: MagicMock
) -> None:
    never = asyncio.Event()

    async def hang(user_id: str) -> dict:
        await never.wait()
        return PROFILE

    line_client.get_profile.side_effect = hang
    session_id, _ = coordinator.open_session()

    held = asyncio.create_task(
        client.post("/messages", params={"sessionId": session_id}, json=_call("get_profile", {}))
    )
    await asyncio.sleep(0.05)
    coordinator.close_session(session_id)

    resp = await asyncio.wait_for(held, timeout=1.0)
    assert resp.status_code == 410
    assert session_id not in coordinator.sessions
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_timeout_is_500(
    client: httpx.AsyncClient, coordinator: ConnectionCoordinator, line_client: MagicMock
) -> None:
    coordinator.completion_timeout = 0.05
    never = asyncio.Event()

    async def hang(user_id: str) -> dict:
        await never.wait()
        return PROFILE

    line_client.get_profile.side_effect = hang
    session_id, _ = coordinator.open_session()

    resp = await client.post("/messages", params={"sessionId": session_id}, json=_call("get_profile", {}))
    assert resp.status_code == 500
    assert resp.json()["status"] == "timed_out"


@pytest.mark.asyncio
async def test_lifespan_builds_and_tears_down_coordinator(settings, caplog) -> None:
    """Without an injected coordinator the lifespan builds one and closes its sessions on exit."""
    settings.destination_user_id = ""
    app = create_app(settings)
    assert app.state.coordinator is None

    with caplog.at_level("WARNING", logger="linebot_mcp"):
        async with app.router.lifespan_context(app):
            coordinator = app.state.coordinator
            assert isinstance(coordinator, ConnectionCoordinator)
            session_id, channel = coordinator.open_session()

    assert "DESTINATION_USER_ID is not set" in caplog.text
    assert session_id not in coordinator.sessions
    assert channel.closed


@pytest.mark.asyncio
@pytest.mark.parametrize("arguments", [[], "", 0, False])
async def test_non_object_arguments_are_400(
    client: httpx.AsyncClient, coordinator: ConnectionCoordinator, line_client: MagicMock, arguments
) -> None:
    """Malformed arguments are rejected before any tool runs or anything reaches the channel."""
    session_id, channel = coordinator.open_session()
    resp = await client.post(
        "/messages",
        params={"sessionId": session_id},
        json={"tool": "get_profile", "arguments": arguments},
    )
    assert resp.status_code == 400
    line_client.get_profile.assert_not_awaited()
    assert drain(channel) == []
    assert coordinator.sessions.get(session_id).pending is None


@pytest.mark.asyncio
async def test_tool_call_without_id_is_400(
    client: httpx.AsyncClient, coordinator: ConnectionCoordinator, line_client: MagicMock
) -> None:
    session_id, channel = coordinator.open_session()
    body = {"jsonrpc": "2.0", "method": "tools/call", "params": {"name": "get_profile", "arguments": {}}}
    resp = await client.post("/messages", params={"sessionId": session_id}, json=body)
    assert resp.status_code == 400
    line_client.get_profile.assert_not_awaited()
    assert drain(channel) == []


def test_logging_follows_settings_of_each_app(settings, tmp_path) -> None:
    """A later app with another log_dir/log_level reconfigures the package logger."""
    create_app(settings)
    other = settings.model_copy(update={"log_dir": tmp_path / "other", "log_level": "DEBUG"})
    create_app(other)

    logger = logging.getLogger("linebot_mcp")
    assert logger.level == logging.DEBUG
    files = [h.baseFilename for h in logger.handlers if isinstance(h, RotatingFileHandler)]
    assert files == [str((tmp_path / "other" / "server.log").resolve())]
    assert (tmp_path / "other").is_dir()


@pytest.mark.asyncio
async def test_sse_disconnect_releases_held_post_with_410(
    settings, coordinator: ConnectionCoordinator, line_client: MagicMock
) -> None:
    """Over a real socket: the endpoint event names the session, and dropping the stream releases the POST."""
    never = asyncio.Event()

    async def hang(user_id: str) -> dict:
        await never.wait()
        return PROFILE

    line_client.get_profile.side_effect = hang

    config = uvicorn.Config(
        create_app(settings, coordinator=coordinator),
        host="127.0.0.1",
        port=0,
        log_level="warning",
        lifespan="off",
    )
    server = uvicorn.Server(config)
    serve = asyncio.create_task(server.serve())
    try:
        for _ in range(200):
            if server.started:
                break
            await asyncio.sleep(0.01)
        assert server.started
        port = server.servers[0].sockets[0].getsockname()[1]

        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}", timeout=5.0) as client:
            async with client.stream("GET", "/sse") as stream:
                assert stream.status_code == 200
                endpoint = None
                event = None
                async for line in stream.aiter_lines():
                    if line.startswith("event:"):
                        event = line.split(":", 1)[1].strip()
                    elif line.startswith("data:") and event == "endpoint":
                        endpoint = line.split(":", 1)[1].strip()
                        break

                assert endpoint is not None
                assert endpoint.startswith("/messages?sessionId=")
                session_id = endpoint.split("=", 1)[1]
                assert session_id in coordinator.sessions

                held = asyncio.create_task(client.post(endpoint, json=_call("get_profile", {})))
                for _ in range(100):
                    if coordinator.session_state(session_id) is SessionState.AWAITING_RESULT:
                        break
                    await asyncio.sleep(0.01)
                assert coordinator.session_state(session_id) is SessionState.AWAITING_RESULT

            resp = await asyncio.wait_for(held, timeout=3.0)
            assert resp.status_code == 410
            assert resp.json() == {"status": "closed", "sessionId": session_id}
            assert session_id not in coordinator.sessions
    finally:
        await coordinator.shutdown()
        server.should_exit = True
        await asyncio.wait_for(serve, timeout=5.0)
