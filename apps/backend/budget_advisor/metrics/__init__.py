"""Prometheus metrics modules."""

from __future__ import annotations

from budget_advisor.metrics.agent import (
    agent_iterations_total,
    agent_stop_reasons_total,
    agent_tool_calls_total,
    agent_tool_latency_seconds,
    recommendation_runs_total,
    recommendation_scheduler_users_total,
    embedding_backfill_total,
)

__all__ = [
    "agent_iterations_total",
    "agent_stop_reasons_total",
    "agent_tool_calls_total",
    "agent_tool_latency_seconds",
    "recommendation_runs_total",
    "recommendation_scheduler_users_total",
    "embedding_backfill_total",
]
