"""Autonomous recommendation agent.

For one user the agent runs a bounded, multi-turn tool-calling conversation
with the chat provider. Each turn is dispatched on the provider's explicit
stop reason:

- ``stop``: the final answer; parse the recommendations JSON and finish.
- ``tool_calls``: run every requested tool in order, append one tool result
  per call, then ask the provider again.
- ``length``: truncated output; answer any tool calls it carried with an
  error result, ask for a shorter answer and keep going.
- ``content_filter`` and anything unrecognized: abort with no output.

The loop is capped at ``max_iterations`` provider turns. A run that ends
without a parsed answer produces no recommendations and leaves the store
untouched.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..metrics import (
    agent_iterations_total,
    agent_stop_reasons_total,
    agent_tool_calls_total,
    agent_tool_latency_seconds,
    recommendation_runs_total,
)
from ..orm_models import Recommendation
from ..providers.chat import ChatCompletion, ChatProvider, StopReason, ToolCall
from ..schemas import RecommendationPriority, RecommendationType
from ..utils.time import to_naive_utc, utc_now
from . import recommendation_store as store
from .agent_tools import ToolArgumentError, ToolRegistry, tool_error
from .txns_store import count_transactions, last_imported_at

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    COMPLETED = "completed"
    CONTENT_FILTERED = "content_filtered"
    MAX_ITERATIONS = "max_iterations"
    UNEXPECTED_STOP = "unexpected_stop"


@dataclass
class AgentRun:
    status: RunStatus
    recommendations: List[store.GeneratedRecommendation] = field(default_factory=list)
    iterations: int = 0


class Conversation:
    """Append-only message history for a single agent run.

    Tracks tool calls requested by the latest assistant message; the history
    cannot be sent to the provider, nor another assistant message appended,
    until each of them has exactly one tool result.
    """

    def __init__(self) -> None:
        self._messages: List[Dict[str, Any]] = []
        self._pending: List[str] = []

    def add_system(self, content: str) -> None:
        self._messages.append({"role": "system", "content": content})

    def add_user(self, content: str) -> None:
        self._messages.append({"role": "user", "content": content})

    def add_assistant(self, completion: ChatCompletion) -> None:
        if self._pending:
            raise RuntimeError(f"unanswered tool calls: {self._pending}")
        self._messages.append(completion.to_message())
        self._pending = [tc.id for tc in completion.tool_calls]

    def add_tool_result(self, tool_call_id: str, content: str) -> None:
        if tool_call_id not in self._pending:
            raise ValueError(f"no pending tool call with id {tool_call_id!r}")
        self._pending.remove(tool_call_id)
        self._messages.append(
            {"role": "tool", "tool_call_id": tool_call_id, "content": content}
        )

    @property
    def pending_tool_calls(self) -> List[str]:
        return list(self._pending)

    def as_payload(self) -> List[Dict[str, Any]]:
        if self._pending:
            raise RuntimeError(f"unanswered tool calls: {self._pending}")
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)


def build_system_prompt(registry: ToolRegistry) -> str:
    tool_lines = "\n".join(
        f"- {t.name}: {t.description}" for t in registry.get_all_tools()
    )
    return f"""You are an autonomous financial analysis agent with access to transaction data tools.

Your goal is to investigate spending patterns and generate 3-5 highly specific, actionable recommendations.

AVAILABLE TOOLS:
{tool_lines}

ANALYSIS STRATEGY:
1. Start with SearchTransactions to discover patterns and categories of interest
2. Use GetCategorySpending to quantify the spending you found
3. Compare time periods (thisMonth vs lastMonth) to identify trends
4. Focus on the most impactful opportunities with concrete dollar amounts

RECOMMENDATION CRITERIA:
- SPECIFIC: Include exact amounts, percentages, and merchants
- ACTIONABLE: Clear next steps the user can take
- IMPACTFUL: Focus on changes that make a real difference
- EVIDENCE-BASED: Reference both the transactions found and the total amounts spent

When you've completed your analysis (after 3-5 tool calls), respond with JSON in this format:
{{
  "recommendations": [
    {{
      "title": "Brief, attention-grabbing title",
      "message": "Specific recommendation with evidence from your tool calls",
      "type": "SpendingAlert|SavingsOpportunity|BehavioralInsight|BudgetWarning",
      "priority": "Low|Medium|High|Critical"
    }}
  ]
}}

Think step-by-step. Search first, then aggregate to quantify what you find."""


INITIAL_USER_PROMPT = """Analyze this user's transaction data to generate proactive financial recommendations.

Use the SearchTransactions tool to investigate:
1. Recurring charges and subscriptions
2. Frequent spending patterns
3. Unusual or concerning transactions
4. Optimization opportunities

Make 2-4 targeted searches, then provide 3-5 specific recommendations based on what you find."""

TRUNCATION_NOTE = (
    "Your previous response was cut off because it was too long. "
    "Any tool calls in it were not executed. Keep the next response short: "
    "either request fewer tool calls or return the final recommendations JSON."
)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_DECODER = json.JSONDecoder()


def _is_payload(obj: Any) -> bool:
    return isinstance(obj, dict) and "recommendations" in obj


def extract_recommendations_object(text: str) -> Optional[Dict[str, Any]]:
    """First JSON object in a model reply that has a ``recommendations`` key.

    Fenced ```json blocks are tried first. Otherwise every ``{`` is decoded
    in place, so braces in surrounding prose are skipped over.
    """
    for m in _FENCE_RE.finditer(text):
        try:
            obj = json.loads(m.group(1).strip())
        except ValueError:
            continue
        if _is_payload(obj):
            return obj
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = _DECODER.raw_decode(text, start)
        except ValueError:
            obj = None
        if _is_payload(obj):
            return obj
        start = text.find("{", start + 1)
    return None


def parse_recommendations(
    text: Optional[str], limit: int = 5
) -> List[store.GeneratedRecommendation]:
    """Parse the terminal payload; malformed input yields an empty list."""
    if not text or not text.strip():
        logger.warning("agent final message has no content")
        return []
    payload = extract_recommendations_object(text)
    if payload is None:
        logger.warning("failed to parse recommendations from agent output")
        return []
    if not isinstance(payload.get("recommendations"), list):
        logger.warning("agent output has no recommendations list")
        return []

    out: List[store.GeneratedRecommendation] = []
    for item in payload["recommendations"]:
        if not isinstance(item, dict):
            continue
        title, message = item.get("title"), item.get("message")
        if not isinstance(title, str) or not isinstance(message, str):
            continue
        if not title.strip() or not message.strip():
            continue
        if "type" not in item or "priority" not in item:
            continue
        out.append(
            store.GeneratedRecommendation(
                title=title[:200],
                message=message,
                type=RecommendationType.parse(item["type"]),
                priority=RecommendationPriority.parse(item["priority"]),
            )
        )
    return out[:limit]


def parse_tool_arguments(raw: Optional[str]) -> Dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        args = json.loads(raw)
    except ValueError as e:
        raise ToolArgumentError(f"invalid tool arguments: {e}") from e
    if not isinstance(args, dict):
        raise ToolArgumentError("tool arguments must be a JSON object")
    return args


def _tool_succeeded(result: str) -> bool:
    try:
        return bool(json.loads(result).get("success", True))
    except (ValueError, AttributeError):
        return True


class RecommendationAgent:
    def __init__(
        self,
        db: Session,
        chat: ChatProvider,
        registry: ToolRegistry,
        *,
        max_iterations: Optional[int] = None,
        min_transactions: Optional[int] = None,
        ttl_days: Optional[int] = None,
        max_recommendations: Optional[int] = None,
        staleness_grace_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.chat = chat
        self.registry = registry
        self.max_iterations = (
            settings.AGENT_MAX_ITERATIONS if max_iterations is None else max_iterations
        )
        self.min_transactions = (
            settings.RECOMMENDATION_MIN_TRANSACTIONS if min_transactions is None else min_transactions
        )
        self.ttl_days = settings.RECOMMENDATION_TTL_DAYS if ttl_days is None else ttl_days
        self.max_recommendations = (
            settings.RECOMMENDATION_MAX if max_recommendations is None else max_recommendations
        )
        self.staleness_grace = timedelta(
            minutes=settings.STALENESS_GRACE_MINUTES
            if staleness_grace_minutes is None
            else staleness_grace_minutes
        )
        self.clock = clock

    def get_active_recommendations(self, user_id: str) -> List[Recommendation]:
        return store.get_active_recommendations(
            self.db, user_id, self.clock(), limit=self.max_recommendations
        )

    def has_new_data(self, user_id: str) -> bool:
        """False when nothing was imported since the last generation for ``user_id``."""
        generated = store.last_generated_at(self.db, user_id)
        if generated is None:
            return True
        imported = last_imported_at(self.db, user_id)
        if imported is None:
            return False
        return to_naive_utc(generated) <= to_naive_utc(imported) - self.staleness_grace

    async def generate_recommendations(self, user_id: str) -> List[Recommendation]:
        """Run the agent for ``user_id`` and store its batch.

        Returns the stored rows; empty when skipped or when the run produced
        nothing. Provider transport errors propagate to the caller.
        """
        count = count_transactions(self.db, user_id)
        if count < self.min_transactions:
            logger.info(
                "insufficient transaction data for user %s (%s < %s)",
                user_id,
                count,
                self.min_transactions,
            )
            recommendation_runs_total.labels(outcome="skipped_insufficient_data").inc()
            return []

        if not self.has_new_data(user_id):
            logger.info("skipping generation - no new data for user %s", user_id)
            recommendation_runs_total.labels(outcome="skipped_no_new_data").inc()
            return []

        run = await self.run_agent(user_id)
        if not run.recommendations:
            logger.info(
                "agent generated no recommendations for user %s (status=%s, iterations=%s)",
                user_id,
                run.status.value,
                run.iterations,
            )
            recommendation_runs_total.labels(outcome="empty").inc()
            return []

        rows = store.replace_active_batch(
            self.db, user_id, run.recommendations, self.clock(), self.ttl_days
        )
        recommendation_runs_total.labels(outcome="stored").inc()
        logger.info("generated %s recommendations for user %s", len(rows), user_id)
        return rows

    async def run_agent(self, user_id: str) -> AgentRun:
        conversation = Conversation()
        conversation.add_system(build_system_prompt(self.registry))
        conversation.add_user(INITIAL_USER_PROMPT)
        tools = self.registry.to_provider_tools()

        logger.info("agent started for user %s", user_id)
        for iteration in range(1, self.max_iterations + 1):
            logger.info(
                "agent iteration %s/%s for user %s", iteration, self.max_iterations, user_id
            )
            completion = await self.chat.complete(conversation.as_payload(), tools=tools)
            agent_iterations_total.inc()
            agent_stop_reasons_total.labels(reason=completion.stop_reason.value).inc()
            conversation.add_assistant(completion)

            reason = completion.stop_reason
            if reason is StopReason.STOP:
                logger.info("agent completed after %s iterations", iteration)
                recs = parse_recommendations(completion.content, limit=self.max_recommendations)
                return AgentRun(RunStatus.COMPLETED, recs, iteration)

            if reason is StopReason.TOOL_CALLS:
                if not completion.tool_calls:
                    logger.warning("finish reason is tool_calls but no tool calls present")
                    return AgentRun(RunStatus.UNEXPECTED_STOP, [], iteration)
                await self._execute_tool_calls(user_id, conversation, completion.tool_calls)
                continue

            if reason is StopReason.LENGTH:
                logger.warning("max tokens reached at iteration %s - continuing", iteration)
                self._recover_truncated(conversation, completion)
                continue

            if reason is StopReason.CONTENT_FILTER:
                logger.warning(
                    "content filtered at iteration %s for user %s", iteration, user_id
                )
                return AgentRun(RunStatus.CONTENT_FILTERED, [], iteration)

            logger.warning("unexpected finish reason: %r", completion.raw_finish_reason)
            return AgentRun(RunStatus.UNEXPECTED_STOP, [], iteration)

        logger.warning(
            "agent reached max iterations (%s) without completion", self.max_iterations
        )
        return AgentRun(RunStatus.MAX_ITERATIONS, [], self.max_iterations)

    async def _execute_tool_calls(
        self, user_id: str, conversation: Conversation, calls: List[ToolCall]
    ) -> None:
        logger.info("executing %s tool call(s)", len(calls))
        for call in calls:
            tool = self.registry.get_tool(call.name)
            if tool is None:
                logger.warning("tool not found: %s", call.name)
                agent_tool_calls_total.labels(tool=call.name or "?", result="not_found").inc()
                conversation.add_tool_result(call.id, tool_error(f"Tool not found: {call.name}"))
                continue

            started = time.perf_counter()
            try:
                args = parse_tool_arguments(call.arguments)
                result = await tool.execute(user_id, args)
            except ToolArgumentError as e:
                result = tool_error(str(e))
            except Exception as e:
                logger.exception("error executing tool %s", call.name)
                result = tool_error(str(e) or e.__class__.__name__)
            elapsed = time.perf_counter() - started

            ok = _tool_succeeded(result)
            agent_tool_calls_total.labels(tool=tool.name, result="ok" if ok else "error").inc()
            agent_tool_latency_seconds.labels(tool=tool.name).observe(elapsed)
            logger.info("tool %s executed in %.0fms (success=%s)", tool.name, elapsed * 1000, ok)
            conversation.add_tool_result(call.id, result)

    def _recover_truncated(self, conversation: Conversation, completion: ChatCompletion) -> None:
        for call in completion.tool_calls:
            agent_tool_calls_total.labels(tool=call.name or "?", result="truncated").inc()
            conversation.add_tool_result(
                call.id, tool_error("not executed: response was truncated")
            )
        conversation.add_user(TRUNCATION_NOTE)
