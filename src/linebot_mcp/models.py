import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from mcp.types import CallToolResult, TextContent


class SessionState(str, enum.Enum):
    """Lifecycle of one duplex channel: OPEN <-> AWAITING_RESULT, then CLOSED."""

    OPEN = "open"
    AWAITING_RESULT = "awaiting_result"
    CLOSED = "closed"


class CompletionOutcome(str, enum.Enum):
    """How a pending completion was released."""

    DONE = "done"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class ToolInvocation:
    """One tool call routed to a session. `request_id` is None for bare envelopes."""

    session_id: str
    tool: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    request_id: Optional[Union[str, int]] = None


@dataclass
class ToolResult:
    """Either a success payload or a failure description, serialised as an MCP tool result."""

    text: str
    is_error: bool = False

    @classmethod
    def success(cls, text: str) -> "ToolResult":
        return cls(text=text)

    @classmethod
    def failure(cls, message: str) -> "ToolResult":
        return cls(text=f"Error: {message}", is_error=True)

    def to_payload(self) -> Dict[str, Any]:
        result = CallToolResult(
            content=[TextContent(type="text", text=self.text)],
            isError=self.is_error,
        )
        payload = result.model_dump(by_alias=True, exclude_none=True)
        if not self.is_error:
            payload.pop("isError", None)
        return payload
