"""Error taxonomy for tool dispatch and session coordination."""


class LineBotMcpError(Exception):
    """Base class for all errors raised by this package."""


class UnknownTool(LineBotMcpError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class InvalidArguments(LineBotMcpError):
    def __init__(self, tool: str, detail: str) -> None:
        super().__init__(f"Invalid arguments for tool {tool}: {detail}")
        self.tool = tool
        self.detail = detail


class RemoteAPIFailure(LineBotMcpError):
    """Network, auth or platform error from the LINE Messaging API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NoSuchSession(LineBotMcpError):
    def __init__(self, session_id: str | None) -> None:
        super().__init__(f"No transport found for sessionId: {session_id}")
        self.session_id = session_id


class AlreadyPending(LineBotMcpError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"session {session_id} is busy: another tool invocation is still running"
        )
        self.session_id = session_id


class ChannelClosed(LineBotMcpError):
    """Raised when writing to a channel whose close event already fired."""


class ProtocolError(LineBotMcpError):
    """Malformed message body posted to the invocation endpoint."""
