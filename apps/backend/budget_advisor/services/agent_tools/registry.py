"""Tool registry and discovery.

Tools are gathered once (built-ins plus any factory advertised under the
``budget_advisor.agent_tools`` entry-point group) into an immutable
name -> tool mapping. The agent dispatches by name through the registry, so
a new tool only needs a factory and a registration.
"""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import category_spending, search_transactions
from .base import AgentTool, ToolContext

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "budget_advisor.agent_tools"

ToolFactory = Callable[[ToolContext], AgentTool]

BUILTIN_TOOL_FACTORIES: List[ToolFactory] = [
    search_transactions.create,
    category_spending.create,
]


class ToolRegistry:
    def __init__(self, tools: Iterable[AgentTool]):
        by_name: Dict[str, AgentTool] = {}
        for tool in tools:
            if not tool.name:
                raise ValueError(f"tool {tool!r} has no name")
            if tool.name in by_name:
                raise ValueError(f"duplicate tool name: {tool.name}")
            by_name[tool.name] = tool
        self._tools = MappingProxyType(by_name)

    def get_all_tools(self) -> List[AgentTool]:
        return list(self._tools.values())

    def get_tool(self, name: str) -> Optional[AgentTool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def to_provider_tools(self) -> List[Dict[str, Any]]:
        """Function-calling tool list in the chat provider's shape."""
        return [tool.to_provider_tool() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def _plugin_factories() -> List[ToolFactory]:
    factories: List[ToolFactory] = []
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            factories.append(ep.load())
        except Exception as e:
            logger.warning("agent tool plugin %s failed to load: %s", ep.name, e)
    return factories


def discover_tools(context: ToolContext) -> List[AgentTool]:
    tools = [factory(context) for factory in BUILTIN_TOOL_FACTORIES + _plugin_factories()]
    logger.info("discovered agent tools: %s", ", ".join(t.name for t in tools))
    return tools


def build_registry(context: ToolContext) -> ToolRegistry:
    return ToolRegistry(discover_tools(context))
