"""Prometheus metrics for the recommendation agent and its background loops."""

from prometheus_client import Counter, Histogram

# One increment per provider turn
agent_iterations_total = Counter(
    "agent_iterations_total",
    "Chat provider turns issued by the recommendation agent",
)

agent_stop_reasons_total = Counter(
    "agent_stop_reasons_total",
    "Provider stop reasons observed by the recommendation agent",
    ["reason"],  # stop | tool_calls | length | content_filter | other
)

agent_tool_calls_total = Counter(
    "agent_tool_calls_total",
    "Tool calls requested by the model",
    ["tool", "result"],  # result: ok | error | not_found | truncated
)

agent_tool_latency_seconds = Histogram(
    "agent_tool_latency_seconds",
    "Wall time spent executing a single tool call",
    ["tool"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)

recommendation_runs_total = Counter(
    "recommendation_runs_total",
    "Recommendation generation attempts by outcome",
    # outcome: stored | empty | skipped_insufficient_data | skipped_no_new_data
    ["outcome"],
)

recommendation_scheduler_users_total = Counter(
    "recommendation_scheduler_users_total",
    "Users processed by the recommendation scheduler",
    ["result"],  # ok | failed
)

embedding_backfill_total = Counter(
    "embedding_backfill_total",
    "Transactions processed by the embedding backfill",
    ["result"],  # ok | error
)
