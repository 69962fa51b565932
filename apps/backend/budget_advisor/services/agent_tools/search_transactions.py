from __future__ import annotations

import logging
from typing import Any, Dict

from .base import AgentTool, ToolArgumentError, ToolContext, tool_ok

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 10
MAX_RESULTS_CAP = 20


def clamp_max_results(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return DEFAULT_MAX_RESULTS
    try:
        n = int(value)
    except (TypeError, ValueError):
        return DEFAULT_MAX_RESULTS
    return max(1, min(n, MAX_RESULTS_CAP))


class SearchTransactionsTool(AgentTool):
    name = "SearchTransactions"
    description = (
        "Search the user's transactions using natural language. Matches by meaning, "
        "not exact keywords (e.g. 'coffee shops', 'streaming subscriptions', "
        "'large electronics purchases'). Use this to discover spending patterns, "
        "recurring charges and unusual transactions. Returns id, date, description, "
        "amount, category and account for each match."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Natural language description of the transactions to find",
            },
            "maxResults": {
                "type": "integer",
                "description": f"Maximum number of results (default {DEFAULT_MAX_RESULTS}, max {MAX_RESULTS_CAP})",
                "default": DEFAULT_MAX_RESULTS,
                "minimum": 1,
                "maximum": MAX_RESULTS_CAP,
            },
        },
        "required": ["query"],
    }

    def __init__(self, search):
        self.search = search

    async def run(self, user_id: str, arguments: Dict[str, Any]) -> str:
        query = arguments.get("query")
        if not isinstance(query, str) or not query.strip():
            raise ToolArgumentError("query is required")
        query = query.strip()
        max_results = clamp_max_results(arguments.get("maxResults"))

        logger.info("SearchTransactions called: query=%r maxResults=%s", query, max_results)
        hits = (await self.search.search(user_id, query, max_results))[:max_results]
        if not hits:
            return tool_ok(
                query=query,
                resultCount=0,
                transactions=[],
                message=f"No transactions found matching '{query}'.",
            )
        return tool_ok(
            query=query,
            resultCount=len(hits),
            transactions=[h.to_dict() for h in hits],
        )


def create(context: ToolContext) -> SearchTransactionsTool:
    if context.search is None:
        from ..semantic_search import SemanticSearchService

        context.search = SemanticSearchService(context.session_factory)
    return SearchTransactionsTool(context.search)
