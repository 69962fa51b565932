"""Agent tools: contract, registry and the built-in tools."""

from .base import AgentTool, ToolArgumentError, ToolContext, tool_error, tool_ok
from .category_spending import GetCategorySpendingTool
from .registry import ToolRegistry, build_registry, discover_tools
from .search_transactions import SearchTransactionsTool

__all__ = [
    "AgentTool",
    "ToolArgumentError",
    "ToolContext",
    "tool_error",
    "tool_ok",
    "GetCategorySpendingTool",
    "SearchTransactionsTool",
    "ToolRegistry",
    "build_registry",
    "discover_tools",
]
