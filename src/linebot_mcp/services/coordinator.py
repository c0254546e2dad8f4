import asyncio
import enum
import logging
from typing import Any, Dict, Optional, Set, Tuple, Union

from .. import SERVER_NAME, __version__
from ..errors import AlreadyPending, ChannelClosed, InvalidArguments, NoSuchSession, UnknownTool
from ..models import CompletionOutcome, SessionState, ToolInvocation, ToolResult
from ..protocol import (
    InboundMessage,
    initialize_result,
    method_not_found,
    parse_message,
    result_message,
    tool_result_message,
    tools_list_result,
)
from ..tools.registry import ToolDef, ToolRegistry
from .channel import SessionChannel
from .session_table import SessionTable

logger = logging.getLogger(__name__)


class Disposition(str, enum.Enum):
    """What happened to a posted message, for the front door to map onto HTTP."""

    ACCEPTED = "accepted"
    COMPLETED = "completed"
    BUSY = "busy"
    CLOSED = "closed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class ConnectionCoordinator:
    """Owns channel lifecycles and the invocation/completion handshake.

    A POST carrying a tool call registers a one-shot completion on the
    session, runs the tool in a background task and waits on the completion.
    The task pushes the Tool Result onto the channel and then resolves the
    completion; closing the channel resolves it too, so the POST is always
    released.
    """

    def __init__(
        self,
        sessions: SessionTable,
        registry: ToolRegistry,
        completion_timeout: float = 120.0,
        message_endpoint: str = "/messages",
    ) -> None:
        self.sessions = sessions
        self.registry = registry
        self.completion_timeout = completion_timeout
        self.message_endpoint = message_endpoint
        self._tasks: Set[asyncio.Task] = set()

    # channel lifecycle

    def open_session(self) -> Tuple[str, SessionChannel]:
        """Allocate a session for a new channel and return (session_id, channel)."""
        channel = SessionChannel()
        session_id = self.sessions.open(channel)
        channel.endpoint = f"{self.message_endpoint}?sessionId={session_id}"
        logger.info("Created new transport with sessionId: %s", session_id)
        return session_id, channel

    def close_session(self, session_id: str) -> None:
        """Close event for a channel. Releases any held invocation request."""
        entry = self.sessions.close(session_id)
        if entry is not None:
            logger.info("Connection closed for sessionId: %s", session_id)
            logger.debug("Active connections: %d", len(self.sessions))

    def session_state(self, session_id: str) -> SessionState:
        try:
            return self.sessions.get(session_id).state
        except NoSuchSession:
            return SessionState.CLOSED

    async def shutdown(self) -> None:
        """Cancel in-flight tool tasks and close every session."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        closed = self.sessions.close_all()
        logger.info("Coordinator shut down (%d sessions closed)", closed)

    # inbound messages

    async def handle_message(
        self,
        session_id: Optional[str],
        body: Union[bytes, str, Dict[str, Any]],
    ) -> Disposition:
        """Route a POSTed message for `session_id`.

        Raises NoSuchSession before any completion state is touched, and
        ProtocolError for a malformed body.
        """
        self.sessions.lookup(session_id)
        message = parse_message(body, session_id)

        if message.is_tool_call:
            return await self.submit(message.invocation)

        if message.is_notification:
            logger.debug("Notification %s for sessionId: %s", message.method, session_id)
            return Disposition.ACCEPTED

        await self._send(session_id, self._reply(message))
        return Disposition.ACCEPTED

    def _reply(self, message: InboundMessage) -> Dict[str, Any]:
        if message.method == "initialize":
            return result_message(
                message.request_id,
                initialize_result(message.params, SERVER_NAME, __version__),
            )
        if message.method == "ping":
            return result_message(message.request_id, {})
        if message.method == "tools/list":
            return result_message(message.request_id, tools_list_result(self.registry.list_tools()))
        logger.warning("Unsupported method: %s", message.method)
        return method_not_found(message.request_id, message.method)

    async def submit(self, invocation: ToolInvocation) -> Disposition:
        """Run one tool invocation and wait until its result is on the channel."""
        session_id = invocation.session_id
        logger.debug("Processing %s for sessionId: %s", invocation.tool, session_id)

        try:
            tool, arguments = self.registry.validate(invocation.tool, invocation.arguments)
        except (UnknownTool, InvalidArguments) as e:
            logger.warning("Rejected tool call for sessionId %s: %s", session_id, e)
            await self._push(invocation, ToolResult.failure(str(e)))
            return Disposition.COMPLETED

        try:
            handle = self.sessions.register_pending_completion(session_id)
        except AlreadyPending as e:
            logger.warning("%s", e)
            await self._push(invocation, ToolResult.failure(str(e)))
            return Disposition.BUSY

        task = asyncio.create_task(self._execute(invocation, tool, arguments, handle))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.debug("Waiting for tool execution to complete for sessionId: %s", session_id)
        try:
            outcome = await asyncio.wait_for(asyncio.shield(handle), self.completion_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Tool %s for sessionId %s did not complete within %.1fs",
                invocation.tool,
                session_id,
                self.completion_timeout,
            )
            task.cancel()
            self.sessions.discard_pending_completion(session_id, handle)
            await self._push(
                invocation,
                ToolResult.failure(f"tool execution timed out after {self.completion_timeout:g}s"),
            )
            return Disposition.TIMED_OUT

        logger.debug("Tool execution %s for sessionId: %s", outcome.value, session_id)
        if outcome is CompletionOutcome.CLOSED:
            return Disposition.CLOSED
        if outcome is CompletionOutcome.FAILED:
            return Disposition.FAILED
        return Disposition.COMPLETED

    async def _execute(
        self,
        invocation: ToolInvocation,
        tool: ToolDef,
        arguments: Any,
        handle: "asyncio.Future[CompletionOutcome]",
    ) -> None:
        outcome = CompletionOutcome.DONE
        try:
            result = await self.registry.invoke(tool, arguments)
            await self._push(invocation, result)
        except asyncio.CancelledError:
            outcome = CompletionOutcome.CLOSED
            raise
        except Exception:
            logger.exception(
                "Error processing %s for sessionId: %s", invocation.tool, invocation.session_id
            )
            outcome = CompletionOutcome.FAILED
        finally:
            self.sessions.resolve_pending_completion(invocation.session_id, handle, outcome)

    async def _push(self, invocation: ToolInvocation, result: ToolResult) -> bool:
        return await self._send(invocation.session_id, tool_result_message(invocation, result))

    async def _send(self, session_id: str, message: Dict[str, Any]) -> bool:
        """Write to the session's channel; a failed write closes the session."""
        try:
            channel = self.sessions.lookup(session_id)
        except NoSuchSession:
            logger.debug("Dropping message for closed sessionId: %s", session_id)
            return False
        try:
            await channel.send(message)
        except ChannelClosed:
            logger.warning("Write to closed channel for sessionId: %s", session_id)
            self.close_session(session_id)
            return False
        return True
