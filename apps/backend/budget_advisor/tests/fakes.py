"""Scripted chat providers, a keyword embedder and completion builders for tests."""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from budget_advisor.providers.chat import ChatCompletion, StopReason, ToolCall

# Fixed "now" for every clock-dependent test: Wednesday 2025-09-17 12:00 UTC
NOW = datetime(2025, 9, 17, 12, 0, 0)

VOCAB = ("coffee", "netflix", "spotify", "grocery", "restaurant", "uber", "amazon")


def keyword_vector(text: str) -> List[float]:
    t = (text or "").lower()
    return [1.0 if kw in t else 0.0 for kw in VOCAB] + [0.05]


async def fake_embed(texts, input_type="passage"):
    return [keyword_vector(t) for t in texts]


async def failing_embed(texts, input_type="passage"):
    raise RuntimeError("embedding service down")


def tool_call(name: str, arguments: Optional[Dict[str, Any]] = None, call_id: Optional[str] = None) -> ToolCall:
    return ToolCall(
        id=call_id or f"call_{uuid.uuid4().hex[:8]}",
        name=name,
        arguments=json.dumps(arguments or {}),
    )


def tool_calls_turn(*calls: ToolCall) -> ChatCompletion:
    return ChatCompletion(
        stop_reason=StopReason.TOOL_CALLS,
        tool_calls=list(calls),
        raw_finish_reason="tool_calls",
    )


def final_turn(recommendations: List[Dict[str, Any]]) -> ChatCompletion:
    return ChatCompletion(
        stop_reason=StopReason.STOP,
        content=json.dumps({"recommendations": recommendations}),
        raw_finish_reason="stop",
    )


SAMPLE_RECS = [
    {
        "title": "Coffee adds up",
        "message": "You spent $42.50 at coffee shops this month.",
        "type": "SpendingAlert",
        "priority": "High",
    },
    {
        "title": "Two streaming services",
        "message": "Netflix and Spotify cost $25.98 a month together.",
        "type": "SavingsOpportunity",
        "priority": "Medium",
    },
]


class ScriptedChat:
    """Chat provider that replays a fixed list of completions.

    Records a snapshot of the messages sent on every turn.
    """

    def __init__(self, turns: List[ChatCompletion]):
        self.turns = list(turns)
        self.requests: List[List[Dict[str, Any]]] = []
        self.tools_sent: List[Any] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def complete(self, messages, tools=None) -> ChatCompletion:
        self.requests.append([dict(m) for m in messages])
        self.tools_sent.append(tools)
        if not self.turns:
            raise AssertionError("ScriptedChat ran out of turns")
        return self.turns.pop(0)


class AlwaysToolCallsChat(ScriptedChat):
    """Never finishes: every turn asks for another search."""

    def __init__(self):
        super().__init__([])

    async def complete(self, messages, tools=None) -> ChatCompletion:
        self.requests.append([dict(m) for m in messages])
        self.tools_sent.append(tools)
        return tool_calls_turn(tool_call("SearchTransactions", {"query": "coffee"}))
