import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Type

from mcp.types import Tool
from pydantic import BaseModel, ValidationError

from ..errors import InvalidArguments, UnknownTool
from ..models import ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[BaseModel], Awaitable[ToolResult]]


@dataclass
class ToolDef:
    name: str
    description: str
    input_model: Type[BaseModel]
    handler: ToolHandler

    def to_mcp_tool(self) -> Tool:
        return Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_model.model_json_schema(),
        )


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolRegistry:
    """Maps a tool name to its pydantic input model and async handler."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDef] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(
        self,
        name: str,
        description: str,
        input_model: Type[BaseModel],
        handler: ToolHandler,
    ) -> ToolDef:
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        tool = ToolDef(name=name, description=description, input_model=input_model, handler=handler)
        self._tools[name] = tool
        logger.debug("Registered tool: %s", name)
        return tool

    def list_tools(self) -> List[Tool]:
        return [t.to_mcp_tool() for t in self._tools.values()]

    def validate(self, name: str, arguments: Dict[str, Any]) -> tuple[ToolDef, BaseModel]:
        """Resolve the tool and validate `arguments` against its input model.

        Raises UnknownTool or InvalidArguments.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownTool(name)
        try:
            parsed = tool.input_model.model_validate(arguments)
        except ValidationError as e:
            raise InvalidArguments(name, _format_validation_error(e)) from e
        return tool, parsed

    async def invoke(self, tool: ToolDef, arguments: BaseModel) -> ToolResult:
        """Run the handler; any exception becomes a failure ToolResult."""
        t0 = time.monotonic()
        try:
            result = await tool.handler(arguments)
        except Exception as e:
            logger.error("Tool %s failed: %s", tool.name, e, exc_info=True)
            result = ToolResult.failure(str(e) or type(e).__name__)
        logger.info(
            "Tool %s: %.2fs -> %s",
            tool.name,
            time.monotonic() - t0,
            "error" if result.is_error else "ok",
        )
        return result

    async def dispatch(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        """Validate then invoke. Never raises for tool-level failures."""
        try:
            tool, parsed = self.validate(name, arguments)
        except (UnknownTool, InvalidArguments) as e:
            logger.warning("Rejected tool call %s: %s", name, e)
            return ToolResult.failure(str(e))
        return await self.invoke(tool, parsed)
