"""Tool system: registry and the LINE Messaging API tools."""

from .line_tools import LineTools, build_line_registry
from .registry import ToolDef, ToolRegistry

__all__ = [
    "LineTools",
    "ToolDef",
    "ToolRegistry",
    "build_line_registry",
]
