from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from ...utils.time import utc_now

logger = logging.getLogger(__name__)


class ToolArgumentError(ValueError):
    """The model supplied missing or malformed tool arguments."""


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return str(value)


def tool_ok(**fields: Any) -> str:
    """Serialized success payload handed back to the model."""
    return json.dumps({"success": True, **fields}, default=_json_default)


def tool_error(message: str, **fields: Any) -> str:
    """Serialized failure payload; the model sees it and can adapt."""
    return json.dumps({"success": False, "error": message, **fields}, default=_json_default)


@dataclass
class ToolContext:
    """Dependencies handed to tool factories at registry construction time."""

    session_factory: sessionmaker
    search: Optional[Any] = None  # SemanticSearchService
    clock: Callable[[], datetime] = field(default=utc_now)


class AgentTool(ABC):
    """A capability the model can call by name mid-conversation.

    Subclasses set ``name``, ``description`` and ``parameters`` (JSON schema)
    and implement ``run``. Callers use ``execute``, which never raises: any
    exception from ``run`` is turned into a ``tool_error`` payload.
    """

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {"type": "object", "properties": {}}

    async def execute(self, user_id: str, arguments: Optional[Dict[str, Any]]) -> str:
        try:
            return await self.run(user_id, arguments or {})
        except ToolArgumentError as e:
            logger.info("tool %s rejected arguments: %s", self.name, e)
            return tool_error(str(e))
        except Exception as e:
            logger.exception("tool %s failed for user %s", self.name, user_id)
            return tool_error(str(e) or e.__class__.__name__)

    @abstractmethod
    async def run(self, user_id: str, arguments: Dict[str, Any]) -> str:
        ...

    def to_provider_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
