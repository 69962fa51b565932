import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from budget_advisor.orm_models import Recommendation
from budget_advisor.providers.chat import (
    ChatCompletion,
    LLMUnavailableError,
    StopReason,
    ToolCall,
)
from budget_advisor.schemas import RecommendationPriority, RecommendationType
from budget_advisor.services import recommendation_store as store
from budget_advisor.services.recommendation_agent import (
    TRUNCATION_NOTE,
    Conversation,
    RecommendationAgent,
    RunStatus,
    build_system_prompt,
    parse_recommendations,
)
from budget_advisor.tests.fakes import (
    NOW,
    SAMPLE_RECS,
    AlwaysToolCallsChat,
    ScriptedChat,
    final_turn,
    tool_call,
    tool_calls_turn,
)


def _seed(add_txn, n=6, user_id="u1", **kw):
    for i in range(n):
        add_txn(
            user_id=user_id,
            description=f"Coffee Shop #{i}",
            amount=-4.0 - i,
            category="Dining",
            date=datetime(2025, 9, 1 + i),
            **kw,
        )


def _agent(db, chat, registry, **kw):
    kw.setdefault("clock", lambda: NOW)
    return RecommendationAgent(db, chat, registry, **kw)


def _statuses(db, user_id="u1"):
    db.expire_all()
    rows = db.execute(select(Recommendation).where(Recommendation.user_id == user_id)).scalars()
    return sorted((r.title, r.status) for r in rows)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


def test_conversation_blocks_until_every_tool_call_is_answered():
    conv = Conversation()
    conv.add_system("sys")
    conv.add_user("go")
    conv.add_assistant(
        tool_calls_turn(tool_call("SearchTransactions", call_id="a"), tool_call("GetCategorySpending", call_id="b"))
    )
    assert conv.pending_tool_calls == ["a", "b"]
    with pytest.raises(RuntimeError):
        conv.as_payload()

    conv.add_tool_result("a", "{}")
    with pytest.raises(RuntimeError):
        conv.add_assistant(final_turn([]))
    with pytest.raises(ValueError):
        conv.add_tool_result("a", "{}")

    conv.add_tool_result("b", "{}")
    payload = conv.as_payload()
    assert [m["role"] for m in payload] == ["system", "user", "assistant", "tool", "tool"]
    assert [m.get("tool_call_id") for m in payload[3:]] == ["a", "b"]


def test_conversation_rejects_unknown_tool_call_id():
    conv = Conversation()
    with pytest.raises(ValueError):
        conv.add_tool_result("nope", "{}")


def test_system_prompt_lists_registered_tools(registry):
    prompt = build_system_prompt(registry)
    for name in registry.names():
        assert name in prompt
    assert '"recommendations"' in prompt


# ---------------------------------------------------------------------------
# Parsing the final answer
# ---------------------------------------------------------------------------


def test_parse_recommendations_round_trip():
    recs = parse_recommendations(json.dumps({"recommendations": SAMPLE_RECS}))
    assert [(r.title, r.message) for r in recs] == [(s["title"], s["message"]) for s in SAMPLE_RECS]
    assert recs[0].type is RecommendationType.SPENDING_ALERT
    assert recs[0].priority is RecommendationPriority.HIGH
    assert recs[1].type is RecommendationType.SAVINGS_OPPORTUNITY
    assert recs[1].priority is RecommendationPriority.MEDIUM


def test_parse_recommendations_accepts_fenced_and_prefixed_json():
    body = json.dumps({"recommendations": SAMPLE_RECS[:1]})
    assert len(parse_recommendations(f"Here you go:\n```json\n{body}\n```")) == 1
    assert len(parse_recommendations(f"Analysis complete. {body} Thanks!")) == 1


def test_parse_recommendations_skips_braces_in_surrounding_prose():
    body = json.dumps({"recommendations": SAMPLE_RECS})
    text = f'I used {{SearchTransactions}} twice and saw {{"category": "Dining"}}. {body} Done {{ok}}.'
    recs = parse_recommendations(text)
    assert [r.title for r in recs] == [s["title"] for s in SAMPLE_RECS]

    fenced = f"```json\n{{\"note\": 1}}\n```\n```json\n{body}\n```"
    assert len(parse_recommendations(fenced)) == len(SAMPLE_RECS)


def test_parse_recommendations_unknown_enums_fall_back():
    text = json.dumps(
        {
            "recommendations": [
                {"title": "T", "message": "M", "type": "Horoscope", "priority": "Urgent!!"},
                {"title": "T2", "message": "M2", "type": "budgetwarning", "priority": "critical"},
            ]
        }
    )
    a, b = parse_recommendations(text)
    assert a.type is RecommendationType.BEHAVIORAL_INSIGHT
    assert a.priority is RecommendationPriority.MEDIUM
    assert b.type is RecommendationType.BUDGET_WARNING
    assert b.priority is RecommendationPriority.CRITICAL


def test_parse_recommendations_skips_incomplete_items_and_caps():
    items = [{"title": f"T{i}", "message": "M", "type": "SpendingAlert", "priority": "Low"} for i in range(7)]
    items.insert(0, {"title": "no message", "type": "SpendingAlert", "priority": "Low"})
    items.insert(1, {"title": "no type", "message": "M", "priority": "Low"})
    recs = parse_recommendations(json.dumps({"recommendations": items}), limit=5)
    assert [r.title for r in recs] == ["T0", "T1", "T2", "T3", "T4"]


@pytest.mark.parametrize("text", [None, "", "   ", "not json at all", "{broken", "[]", '{"recommendations": "x"}'])
def test_parse_recommendations_malformed_is_empty(text):
    assert parse_recommendations(text) == []


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_natural_stop_stores_parsed_recommendations(db, registry, add_txn):
    _seed(add_txn)
    call = tool_call("SearchTransactions", {"query": "coffee", "maxResults": 5}, call_id="call_1")
    chat = ScriptedChat([tool_calls_turn(call), final_turn(SAMPLE_RECS)])
    agent = _agent(db, chat, registry)

    rows = await agent.generate_recommendations("u1")

    assert chat.calls == 2
    assert {r.title for r in rows} == {s["title"] for s in SAMPLE_RECS}
    assert all(r.generated_at == NOW and r.expires_at == NOW + timedelta(days=7) for r in rows)

    active = agent.get_active_recommendations("u1")
    assert [r.title for r in active] == ["Coffee adds up", "Two streaming services"]
    assert active[0].message == SAMPLE_RECS[0]["message"]

    # second turn carries the tool result for call_1
    second = chat.requests[1]
    assert [m["role"] for m in second] == ["system", "user", "assistant", "tool"]
    assert second[2]["tool_calls"][0]["id"] == "call_1"
    result = json.loads(second[3]["content"])
    assert second[3]["tool_call_id"] == "call_1"
    assert result["success"] is True
    assert result["resultCount"] == 5
    assert chat.tools_sent[0] == registry.to_provider_tools()


@pytest.mark.asyncio
async def test_multiple_tool_calls_answered_in_order(db, registry, add_txn):
    _seed(add_txn)
    calls = [
        tool_call("SearchTransactions", {"query": "coffee"}, call_id="c1"),
        tool_call("GetCategorySpending", {"category": "Dining", "dateRange": "thisMonth"}, call_id="c2"),
    ]
    chat = ScriptedChat([tool_calls_turn(*calls), final_turn(SAMPLE_RECS)])

    run = await _agent(db, chat, registry).run_agent("u1")

    assert run.status is RunStatus.COMPLETED
    assert run.iterations == 2
    tool_msgs = [m for m in chat.requests[1] if m["role"] == "tool"]
    assert [m["tool_call_id"] for m in tool_msgs] == ["c1", "c2"]
    spending = json.loads(tool_msgs[1]["content"])
    assert spending["transactionCount"] == 6


@pytest.mark.asyncio
async def test_max_iterations_bounds_provider_calls(db, registry, add_txn):
    _seed(add_txn)
    chat = AlwaysToolCallsChat()
    agent = _agent(db, chat, registry, max_iterations=3)

    run = await agent.run_agent("u1")
    assert run.status is RunStatus.MAX_ITERATIONS
    assert run.recommendations == []
    assert chat.calls == 3

    assert await agent.generate_recommendations("u1") == []
    assert chat.calls == 6
    assert _statuses(db) == []


@pytest.mark.asyncio
async def test_zero_max_iterations_makes_no_provider_calls(db, registry, add_txn):
    _seed(add_txn)
    chat = ScriptedChat([final_turn(SAMPLE_RECS)])

    run = await _agent(db, chat, registry, max_iterations=0).run_agent("u1")

    assert run.status is RunStatus.MAX_ITERATIONS
    assert run.iterations == 0
    assert chat.calls == 0


@pytest.mark.asyncio
async def test_zero_ttl_expires_batch_at_generation_time(db, registry, add_txn):
    _seed(add_txn)
    chat = ScriptedChat([final_turn(SAMPLE_RECS)])

    rows = await _agent(db, chat, registry, ttl_days=0).generate_recommendations("u1")

    assert rows
    assert all(r.expires_at == r.generated_at == NOW for r in rows)


@pytest.mark.asyncio
async def test_content_filter_leaves_store_untouched(db, registry, add_txn):
    _seed(add_txn)
    previous = store.GeneratedRecommendation("Old", "kept", RecommendationType.BUDGET_WARNING, RecommendationPriority.LOW)
    store.replace_active_batch(db, "u1", [previous], datetime(2025, 8, 20), ttl_days=60)
    chat = ScriptedChat(
        [ChatCompletion(stop_reason=StopReason.CONTENT_FILTER, raw_finish_reason="content_filter")]
    )
    agent = _agent(db, chat, registry)

    run = await agent.run_agent("u1")
    assert run.status is RunStatus.CONTENT_FILTERED
    assert run.recommendations == []

    chat.turns.append(ChatCompletion(stop_reason=StopReason.CONTENT_FILTER, raw_finish_reason="content_filter"))
    assert await agent.generate_recommendations("u1") == []
    assert _statuses(db) == [("Old", "Active")]


@pytest.mark.asyncio
async def test_unknown_tool_gets_error_result_and_loop_continues(db, registry, add_txn):
    _seed(add_txn)
    chat = ScriptedChat(
        [
            tool_calls_turn(tool_call("DeleteEverything", {}, call_id="call_x")),
            final_turn(SAMPLE_RECS[:1]),
        ]
    )
    run = await _agent(db, chat, registry).run_agent("u1")

    assert run.status is RunStatus.COMPLETED
    assert len(run.recommendations) == 1
    last = chat.requests[1][-1]
    assert last["role"] == "tool"
    assert last["tool_call_id"] == "call_x"
    assert json.loads(last["content"]) == {"success": False, "error": "Tool not found: DeleteEverything"}


@pytest.mark.asyncio
async def test_malformed_tool_arguments_become_error_result(db, registry, add_txn):
    _seed(add_txn)
    bad = ToolCall(id="call_bad", name="SearchTransactions", arguments="{not json")
    chat = ScriptedChat([tool_calls_turn(bad), final_turn(SAMPLE_RECS)])

    run = await _agent(db, chat, registry).run_agent("u1")

    assert run.status is RunStatus.COMPLETED
    result = json.loads(chat.requests[1][-1]["content"])
    assert result["success"] is False
    assert "invalid tool arguments" in result["error"]


@pytest.mark.asyncio
async def test_truncated_turn_answers_pending_calls_and_asks_again(db, registry, add_txn):
    _seed(add_txn)
    truncated = ChatCompletion(
        stop_reason=StopReason.LENGTH,
        content="Let me look at",
        tool_calls=[tool_call("SearchTransactions", {"query": "coffee"}, call_id="call_t")],
        raw_finish_reason="length",
    )
    chat = ScriptedChat([truncated, final_turn(SAMPLE_RECS)])

    run = await _agent(db, chat, registry).run_agent("u1")

    assert run.status is RunStatus.COMPLETED
    assert run.iterations == 2
    second = chat.requests[1]
    assert [m["role"] for m in second] == ["system", "user", "assistant", "tool", "user"]
    assert second[2]["content"] == "Let me look at"
    tool_result = json.loads(second[3]["content"])
    assert second[3]["tool_call_id"] == "call_t"
    assert tool_result["success"] is False
    assert "truncated" in tool_result["error"]
    assert second[4]["content"] == TRUNCATION_NOTE


@pytest.mark.asyncio
async def test_truncated_text_only_turn_continues(db, registry, add_txn):
    _seed(add_txn)
    chat = ScriptedChat(
        [
            ChatCompletion(stop_reason=StopReason.LENGTH, content='{"recommendations": [', raw_finish_reason="length"),
            final_turn(SAMPLE_RECS),
        ]
    )
    run = await _agent(db, chat, registry).run_agent("u1")
    assert run.status is RunStatus.COMPLETED
    assert [m["role"] for m in chat.requests[1]][-2:] == ["assistant", "user"]


@pytest.mark.asyncio
async def test_truncated_empty_turn_sends_empty_string_content(db, registry, add_txn):
    _seed(add_txn)
    chat = ScriptedChat(
        [
            ChatCompletion(stop_reason=StopReason.LENGTH, content=None, raw_finish_reason="length"),
            final_turn(SAMPLE_RECS),
        ]
    )
    run = await _agent(db, chat, registry).run_agent("u1")
    assert run.status is RunStatus.COMPLETED
    assistant = chat.requests[1][2]
    assert assistant == {"role": "assistant", "content": ""}


@pytest.mark.asyncio
async def test_tool_calls_stop_without_calls_aborts(db, registry):
    chat = ScriptedChat([ChatCompletion(stop_reason=StopReason.TOOL_CALLS, raw_finish_reason="tool_calls")])
    run = await _agent(db, chat, registry).run_agent("u1")
    assert run.status is RunStatus.UNEXPECTED_STOP
    assert chat.calls == 1


@pytest.mark.asyncio
async def test_unrecognized_stop_reason_aborts(db, registry):
    chat = ScriptedChat([ChatCompletion(stop_reason=StopReason.OTHER, content="?", raw_finish_reason="weird")])
    run = await _agent(db, chat, registry).run_agent("u1")
    assert run.status is RunStatus.UNEXPECTED_STOP
    assert run.recommendations == []


# ---------------------------------------------------------------------------
# Preconditions and lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_insufficient_data_makes_no_provider_calls(db, registry, add_txn):
    _seed(add_txn, n=3)
    chat = ScriptedChat([final_turn(SAMPLE_RECS)])

    assert await _agent(db, chat, registry, min_transactions=5).generate_recommendations("u1") == []
    assert chat.calls == 0


@pytest.mark.asyncio
async def test_no_new_data_skips_second_run(db, registry, add_txn):
    _seed(add_txn)
    chat = ScriptedChat([final_turn(SAMPLE_RECS), final_turn(SAMPLE_RECS)])
    agent = _agent(db, chat, registry)

    assert len(await agent.generate_recommendations("u1")) == 2
    assert chat.calls == 1
    assert agent.has_new_data("u1") is False

    assert await agent.generate_recommendations("u1") == []
    assert chat.calls == 1


@pytest.mark.asyncio
async def test_new_import_replaces_active_batch(db, registry, add_txn):
    _seed(add_txn)
    first = final_turn(SAMPLE_RECS)
    second = final_turn(
        [{"title": "Fresh", "message": "New data", "type": "BudgetWarning", "priority": "Critical"}]
    )
    chat = ScriptedChat([first, second])
    clock_now = [NOW]
    agent = _agent(db, chat, registry, clock=lambda: clock_now[0])

    await agent.generate_recommendations("u1")
    add_txn(description="Uber", amount=-18.0, category="Transport", imported_at=NOW + timedelta(hours=2))
    clock_now[0] = NOW + timedelta(hours=3)
    assert agent.has_new_data("u1") is True

    rows = await agent.generate_recommendations("u1")

    assert [r.title for r in rows] == ["Fresh"]
    assert chat.calls == 2
    assert _statuses(db) == [
        ("Coffee adds up", "Expired"),
        ("Fresh", "Active"),
        ("Two streaming services", "Expired"),
    ]
    assert [r.title for r in agent.get_active_recommendations("u1")] == ["Fresh"]


@pytest.mark.asyncio
async def test_staleness_grace_ignores_imports_just_after_generation(db, registry, add_txn):
    _seed(add_txn)
    chat = ScriptedChat([final_turn(SAMPLE_RECS)])
    agent = _agent(db, chat, registry, staleness_grace_minutes=2)
    await agent.generate_recommendations("u1")

    add_txn(description="Late import", imported_at=NOW + timedelta(minutes=1))
    assert agent.has_new_data("u1") is False

    add_txn(description="Later import", imported_at=NOW + timedelta(minutes=3))
    assert agent.has_new_data("u1") is True


@pytest.mark.asyncio
async def test_provider_errors_propagate(db, registry, add_txn):
    _seed(add_txn)

    class DownChat(ScriptedChat):
        async def complete(self, messages, tools=None):
            raise LLMUnavailableError("rate limited")

    with pytest.raises(LLMUnavailableError):
        await _agent(db, DownChat([]), registry).generate_recommendations("u1")
    assert _statuses(db) == []


@pytest.mark.asyncio
async def test_first_turn_stop_round_trips_payload(db, registry, add_txn):
    _seed(add_txn)
    chat = ScriptedChat([final_turn(SAMPLE_RECS)])

    run = await _agent(db, chat, registry).run_agent("u1")

    assert run.status is RunStatus.COMPLETED
    assert run.iterations == 1
    assert [
        {"title": r.title, "message": r.message, "type": r.type.value, "priority": r.priority.label}
        for r in run.recommendations
    ] == SAMPLE_RECS
