"""LINE Bot MCP server.

Exposes LINE Messaging API tools to MCP clients over an SSE channel, with
tool invocations posted on short-lived requests that are held open until
the result has been pushed to the channel.
"""

__version__ = "0.1.0"

SERVER_NAME = "line-bot"
