import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from linebot_mcp.services.coordinator import ConnectionCoordinator  # noqa: E402
from linebot_mcp.services.line_client import LineMessagingClient  # noqa: E402
from linebot_mcp.services.session_table import SessionTable  # noqa: E402
from linebot_mcp.settings import Settings  # noqa: E402
from linebot_mcp.tools import build_line_registry  # noqa: E402

PROFILE = {
    "displayName": "LINE taro",
    "userId": "U1",
    "language": "en",
    "pictureUrl": "https://profile.line-scdn.net/abcdefghijklmn",
    "statusMessage": "Hello, LINE!",
}
PUSH_RESPONSE = {"sentMessages": [{"id": "461230966842064897", "quoteToken": "IStG5h1Tz7b"}]}


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with credentials set and logs under tmp_path."""
    return Settings(
        channel_access_token="test-token",
        destination_user_id="Udefault",
        log_dir=tmp_path / "logs",
        completion_timeout_seconds=2.0,
    )


@pytest.fixture
def line_client() -> MagicMock:
    """Mock LINE API client with async send_message/get_profile."""
    m = MagicMock(spec=LineMessagingClient)
    m.send_message = AsyncMock(return_value=PUSH_RESPONSE)
    m.get_profile = AsyncMock(return_value=PROFILE)
    m.aclose = AsyncMock(return_value=None)
    return m


@pytest.fixture
def session_table() -> SessionTable:
    return SessionTable()


@pytest.fixture
def coordinator(session_table: SessionTable, line_client: MagicMock) -> ConnectionCoordinator:
    """Coordinator over the real LINE tool registry with a mocked client."""
    registry = build_line_registry(line_client, "Udefault")
    return ConnectionCoordinator(session_table, registry, completion_timeout=2.0)


def drain(channel) -> list:
    """Return every message currently queued on a SessionChannel."""
    items = []
    while not channel._queue.empty():
        items.append(channel._queue.get_nowait())
    return items
