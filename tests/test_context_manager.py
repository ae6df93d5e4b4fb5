from __future__ import annotations

import json

from openclaw.config import AgentConfig
from openclaw.harness.context import INTERRUPTED_TOOL_RESULT, ContextManager
from openclaw.memory.messages import Message


def _manager(budget: int, chars_per_token: float = 1.0) -> ContextManager:
    config = AgentConfig(
        OPENCLAW_CONTEXT_TOKEN_BUDGET=budget,
        chars_per_token=chars_per_token,
    )
    return ContextManager(config)


def test_estimate_tokens_rounds_up():
    manager = _manager(1000, chars_per_token=4.0)
    assert manager.estimate_tokens("") == 0
    assert manager.estimate_tokens("abcd") == 1
    assert manager.estimate_tokens("abcde") == 2


def test_structured_blocks_are_measured_on_json_text():
    manager = _manager(1000)
    blocks = [{"type": "tool_use", "id": "t1", "name": "x", "input": {}}]
    message = Message.assistant_tool_use(blocks)
    assert manager.estimate_message_tokens(message) == len(json.dumps(blocks))


def test_everything_fits_no_notice():
    manager = _manager(1000)
    history = [Message.user("hello"), Message.assistant("hi")]

    context = manager.build_context("sys", history)

    assert context[0].role == "system"
    assert context[0].content == "sys"
    assert context[1:] == history


def test_keeps_newest_suffix_within_budget():
    # 10 (system) + 3 * 10 = 40 fits; a fourth 10-char message would not.
    manager = _manager(40)
    history = [Message.user(f"message-{i:02d}") for i in range(6)]

    context = manager.build_context("s" * 10, history)

    kept = context[2:]
    assert kept == history[-3:]
    assert context[1].role == "user"
    assert context[1].content.startswith("[3 earlier messages omitted")


def test_walk_stops_at_first_message_that_does_not_fit():
    manager = _manager(30)
    history = [
        Message.user("tiny"),
        Message.user("x" * 50),
        Message.user("y" * 10),
    ]
    context = manager.build_context("sys", history)
    # "tiny" would fit on its own, but the walk stops at the 50-char message
    assert context[2:] == history[-1:]
    assert "[2 earlier messages omitted" in context[1].content


def test_singular_notice():
    manager = _manager(20)
    history = [Message.user("x" * 50), Message.user("short")]
    context = manager.build_context("sys", history)
    assert context[1].content.startswith("[1 earlier message omitted")


def test_orphaned_leading_tool_results_are_dropped():
    blocks = [
        {"type": "tool_use", "id": "t1", "name": "read", "input": {"path": "a" * 40}},
        {"type": "tool_use", "id": "t2", "name": "read", "input": {"path": "b" * 40}},
    ]
    history = [
        Message.user("read both"),
        Message.assistant_tool_use(blocks),
        Message.tool_result("t1", "A"),
        Message.tool_result("t2", "B"),
        Message.assistant("done"),
    ]
    # Budget admits the two results and the final answer but not the request.
    manager = _manager(3 + 1 + 1 + 4 + 5)

    context = manager.build_context("sys", history)

    roles = [m.role for m in context]
    assert roles == ["system", "user", "assistant"]
    assert context[1].content.startswith("[4 earlier messages omitted")
    assert context[2].content == "done"


def test_stats_track_truncations():
    manager = _manager(5)
    manager.build_context("sys", [Message.user("far too long for the budget")])
    manager.build_context("sys", [])
    assert manager.stats["builds"] == 2
    assert manager.stats["truncations"] == 1


def _tool_use(*ids: str) -> Message:
    return Message.assistant_tool_use(
        [{"type": "tool_use", "id": tid, "name": "read", "input": {}} for tid in ids]
    )


def test_unanswered_tool_use_gets_interrupted_result():
    manager = _manager(1000)
    history = [Message.user("go"), _tool_use("t1"), Message.user("again")]

    context = manager.build_context("sys", history)

    roles = [m.role for m in context]
    assert roles == ["system", "user", "assistant_tool_use", "tool_result", "user"]
    filler = context[3]
    assert filler.tool_use_id == "t1"
    assert filler.tool_error is True
    assert filler.content == INTERRUPTED_TOOL_RESULT


def test_partially_answered_tool_use_is_completed_in_the_same_run():
    manager = _manager(1000)
    history = [
        Message.user("go"),
        _tool_use("t1", "t2"),
        Message.tool_result("t1", "A"),
    ]

    context = manager.build_context("sys", history)

    results = [m for m in context if m.role == "tool_result"]
    assert [m.tool_use_id for m in results] == ["t1", "t2"]
    assert [m.tool_error for m in results] == [False, True]


def test_answered_tool_use_is_left_alone():
    history = [_tool_use("t1"), Message.tool_result("t1", "A"), Message.assistant("done")]
    assert ContextManager.answer_dangling_tool_use(history) == history
