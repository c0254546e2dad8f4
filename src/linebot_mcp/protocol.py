"""MCP JSON-RPC envelopes exchanged over the SSE channel.

Inbound POST bodies are either JSON-RPC 2.0 messages or a bare
``{"tool": ..., "arguments": {...}}`` invocation envelope.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    Implementation,
    InitializeResult,
    ServerCapabilities,
    Tool,
    ToolsCapability,
)

from .errors import ProtocolError
from .models import ToolInvocation, ToolResult

JSONRPC_VERSION = "2.0"


@dataclass
class InboundMessage:
    """A parsed POST body."""

    method: str
    request_id: Optional[Union[str, int]] = None
    params: Dict[str, Any] = field(default_factory=dict)
    invocation: Optional[ToolInvocation] = None

    @property
    def is_notification(self) -> bool:
        return self.request_id is None and self.invocation is None

    @property
    def is_tool_call(self) -> bool:
        return self.invocation is not None


def parse_message(body: Union[bytes, str, Dict[str, Any]], session_id: str) -> InboundMessage:
    """Parse a POST body into an InboundMessage, raising ProtocolError if malformed."""
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(body, dict):
        raise ProtocolError("Message must be a JSON object")

    if "jsonrpc" not in body and "tool" in body:
        return _parse_envelope(body, session_id)

    if body.get("jsonrpc") != JSONRPC_VERSION:
        raise ProtocolError("Unsupported message: expected JSON-RPC 2.0")
    method = body.get("method")
    if not isinstance(method, str) or not method:
        raise ProtocolError("JSON-RPC message has no method")
    request_id = body.get("id")
    if request_id is not None and not isinstance(request_id, (str, int)):
        raise ProtocolError("JSON-RPC id must be a string or integer")
    params = body.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise ProtocolError("JSON-RPC params must be an object")

    message = InboundMessage(method=method, request_id=request_id, params=params)
    if method == "tools/call":
        if request_id is None:
            raise ProtocolError("tools/call must carry a JSON-RPC id")
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise ProtocolError("tools/call requires params.name")
        arguments = _arguments(params.get("arguments"))
        message.invocation = ToolInvocation(
            session_id=session_id,
            tool=name,
            arguments=arguments,
            request_id=request_id,
        )
    return message


def _parse_envelope(body: Dict[str, Any], session_id: str) -> InboundMessage:
    tool = body.get("tool")
    if not isinstance(tool, str) or not tool:
        raise ProtocolError("Invocation envelope requires a tool name")
    arguments = _arguments(body.get("arguments"))
    invocation = ToolInvocation(session_id=session_id, tool=tool, arguments=arguments)
    return InboundMessage(method="tools/call", invocation=invocation)


def _arguments(arguments: Any) -> Dict[str, Any]:
    """Only a missing or null `arguments` defaults to an empty object."""
    if arguments is None:
        return {}
    if not isinstance(arguments, dict):
        raise ProtocolError("Tool arguments must be an object")
    return arguments


def result_message(request_id: Union[str, int], result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_message(request_id: Union[str, int], code: int, message: str) -> Dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def tool_result_message(invocation: ToolInvocation, result: ToolResult) -> Dict[str, Any]:
    """Wrap a Tool Result for the channel; bare envelopes get the payload alone."""
    payload = result.to_payload()
    if invocation.request_id is None:
        return payload
    return result_message(invocation.request_id, payload)


def initialize_result(params: Dict[str, Any], name: str, version: str) -> Dict[str, Any]:
    requested = params.get("protocolVersion")
    if requested not in SUPPORTED_PROTOCOL_VERSIONS:
        requested = LATEST_PROTOCOL_VERSION
    result = InitializeResult(
        protocolVersion=requested,
        capabilities=ServerCapabilities(tools=ToolsCapability()),
        serverInfo=Implementation(name=name, version=version),
    )
    return result.model_dump(by_alias=True, exclude_none=True)


def tools_list_result(tools: List[Tool]) -> Dict[str, Any]:
    return {"tools": [t.model_dump(by_alias=True, exclude_none=True) for t in tools]}


def method_not_found(request_id: Union[str, int], method: str) -> Dict[str, Any]:
    return error_message(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")
