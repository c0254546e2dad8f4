import logging
from typing import Any, Dict

import httpx

from .. import __version__
from ..errors import RemoteAPIFailure
from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)

PUSH_MESSAGE_PATH = "/v2/bot/message/push"
PROFILE_PATH = "/v2/bot/profile/{user_id}"


class LineMessagingClient:
    """Async client for the subset of the LINE Messaging API used by the tools."""

    def __init__(
        self,
        channel_access_token: str,
        base_url: str = "https://api.line.me",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = channel_access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def user_agent(self) -> str:
        return f"linebot-mcp/{__version__}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"User-Agent": self.user_agent},
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client. Idempotent."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("LINE API client closed")

    async def send_message(self, target: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Push a single message object to `target` and return the API response body."""
        body = {"to": target, "messages": [payload]}
        return await self._request("POST", PUSH_MESSAGE_PATH, json=body)

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        """Return the profile of `user_id` as returned by the API."""
        return await self._request("GET", PROFILE_PATH.format(user_id=user_id))

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        if not self._token:
            raise RemoteAPIFailure("CHANNEL_ACCESS_TOKEN is not set")

        headers = {"Authorization": f"Bearer {self._token}"}
        try:
            resp = await self._get_client().request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("LINE API %s %s timed out: %s", method, path, e)
            raise RemoteAPIFailure(f"LINE API request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("LINE API %s %s failed: %s", method, path, e)
            raise RemoteAPIFailure(f"LINE API request failed: {e}") from e

        if resp.is_error:
            message = _error_message(resp)
            logger.warning("LINE API %s %s -> %s: %s", method, path, resp.status_code, message)
            raise RemoteAPIFailure(message, status_code=resp.status_code)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteAPIFailure(f"LINE API returned invalid JSON: {e}") from e


def _error_message(resp: httpx.Response) -> str:
    """Extract the platform's `message` field, falling back to the raw body."""
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("message"):
        return f"{data['message']} (HTTP {resp.status_code})"
    text = resp.text[:200] if resp.text else resp.reason_phrase
    return f"LINE API returned {resp.status_code}: {text}"


def get_line_client(settings: Settings | None = None) -> LineMessagingClient:
    """Build a LINE API client from settings."""
    settings = settings or get_settings()
    return LineMessagingClient(
        channel_access_token=settings.channel_access_token,
        base_url=settings.line_api_base_url,
        timeout=settings.line_request_timeout_seconds,
    )
