from __future__ import annotations

import pytest

from agent_ipc.protocol import (
    ContextCompaction,
    ErrorNotice,
    Heartbeat,
    MessageScan,
    ProtocolMessage,
    StatusUpdate,
    TaskHandoff,
    decode,
    encode,
    extract_all,
    is_message,
    message_to_dict,
    utc_timestamp,
)

TIMESTAMP = "2025-12-17T08:00:00.000Z"


def _messages():
    return [
        StatusUpdate(sender="agent-dev", timestamp=TIMESTAMP, seq=1, status="working"),
        StatusUpdate(
            sender="agent-dev",
            timestamp=TIMESTAMP,
            seq=2,
            status="blocked",
            current_task="fix: flaky login test",
            progress="3/5 suites",
        ),
        TaskHandoff(
            sender="agent-dev",
            timestamp=TIMESTAMP,
            task="Review the login module",
            context="",
            priority="high",
        ),
        ErrorNotice(
            sender="agent-tester",
            timestamp=TIMESTAMP,
            seq=0,
            error="pytest crashed",
            recoverable=True,
            needs_assistance=False,
        ),
        Heartbeat(sender="agent-tester", timestamp=TIMESTAMP, seq=9, status="busy", current_task="  indented"),
        ContextCompaction(
            sender="agent",
            timestamp=TIMESTAMP,
            seq=4,
            summary="compacted after long debugging session",
            retained_knowledge=("auth uses JWT", "db is postgres,", " tests live in tests/"),
            current_task_state="",
        ),
        ContextCompaction(sender="agent", timestamp=TIMESTAMP, summary="nothing kept"),
    ]


@pytest.mark.parametrize("message", _messages(), ids=lambda message: message.type)
def test_decode_inverts_encode(message):
    assert decode(encode(message)) == message


def test_encode_status_update_layout():
    message = StatusUpdate(
        sender="agent-dev",
        timestamp=TIMESTAMP,
        seq=3,
        status="working",
        current_task="Testing the parser",
    )
    assert encode(message) == (
        "[PROTOCOL:STATUS_UPDATE] from agent-dev at 2025-12-17T08:00:00.000Z seq=3\n"
        "Status: working\n"
        "Task: Testing the parser"
    )


def test_encode_omits_seq_and_absent_optionals():
    message = Heartbeat(sender="agent-dev", timestamp=TIMESTAMP, status="alive", current_task="")
    assert message.current_task is None
    assert encode(message) == (
        "[PROTOCOL:HEARTBEAT] from agent-dev at 2025-12-17T08:00:00.000Z\nStatus: alive"
    )


def test_encode_task_handoff_and_error_notice_layouts():
    handoff = TaskHandoff(
        sender="agent-dev",
        timestamp=TIMESTAMP,
        seq=3,
        task="Review the login module",
        context="User reported auth issues",
        priority="high",
    )
    assert encode(handoff).split("\n")[1:] == [
        "Task: Review the login module",
        "Priority: high",
        "Context: User reported auth issues",
    ]

    notice = ErrorNotice(
        sender="agent-dev",
        timestamp=TIMESTAMP,
        error="disk full",
        recoverable=False,
        needs_assistance=True,
    )
    assert encode(notice).split("\n")[1:] == [
        "Error: disk full",
        "Recoverable: false",
        "Needs assistance: true",
    ]


def test_encode_context_compaction_layout():
    message = ContextCompaction(
        sender="agent-dev",
        timestamp=TIMESTAMP,
        summary="s",
        retained_knowledge=["a", "b"],
        current_task_state="writing tests",
    )
    assert encode(message).split("\n")[1:] == [
        "Summary: s",
        "Retained: a, b",
        "Current task: writing tests",
    ]


def test_decode_parses_task_handoff_with_second_precision_timestamp():
    text = (
        "[PROTOCOL:TASK_HANDOFF] from claude-dev at 2025-12-17T08:00:00Z seq=3\n"
        "Task: Review the login module\n"
        "Priority: high\n"
        "Context: User reported auth issues"
    )
    message = decode(text)
    assert message == TaskHandoff(
        sender="claude-dev",
        timestamp="2025-12-17T08:00:00Z",
        seq=3,
        task="Review the login module",
        priority="high",
        context="User reported auth issues",
    )
    assert message.type == "task_handoff"


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   \n\n",
        "hello world",
        "> [PROTOCOL:HEARTBEAT] from agent at 2025-12-17T08:00:00Z",
        "[PROTOCOL:UNKNOWN_TYPE] from agent at 2025-12-17T08:00:00Z",
        "[PROTOCOL:heartbeat] from agent at 2025-12-17T08:00:00Z",
        "[PROTOCOL:HEARTBEAT] from agent at 2025-12-17T08:00:00Z seq=-1",
        "[PROTOCOL:HEARTBEAT] from agent",
    ],
)
def test_decode_returns_none_for_non_protocol_text(text):
    assert decode(text) is None
    assert is_message(text) is False


def test_is_message_agrees_with_decode_for_valid_block():
    text = "\n  [PROTOCOL:HEARTBEAT] from agent-dev at 2025-12-17T08:00:00Z seq=5\nStatus: alive\n"
    assert is_message(text) is True
    assert decode(text) is not None


def test_is_message_ignores_body_validity():
    assert is_message("[PROTOCOL:ERROR_NOTICE] from agent at 2025-12-17T08:00:00Z\ngarbage") is True


def test_decode_heartbeat_without_status_defaults_to_idle():
    message = decode("[PROTOCOL:HEARTBEAT] from agent-tester at 2025-12-17T08:00:00Z seq=5")
    assert message == Heartbeat(
        sender="agent-tester",
        timestamp="2025-12-17T08:00:00Z",
        seq=5,
        status="idle",
    )


def test_decode_truncated_blocks_fill_defaults():
    status = decode("[PROTOCOL:STATUS_UPDATE] from a at t1")
    assert status == StatusUpdate(sender="a", timestamp="t1", status="idle")
    assert status.current_task is None and status.progress is None

    handoff = decode("[PROTOCOL:TASK_HANDOFF] from a at t1\nContext: partial")
    assert handoff == TaskHandoff(sender="a", timestamp="t1", task="", priority="medium", context="partial")

    notice = decode("[PROTOCOL:ERROR_NOTICE] from a at t1")
    assert notice == ErrorNotice(sender="a", timestamp="t1", error="", recoverable=False, needs_assistance=False)

    compaction = decode("[PROTOCOL:CONTEXT_COMPACTION] from a at t1")
    assert compaction == ContextCompaction(sender="a", timestamp="t1", summary="")
    assert compaction.retained_knowledge == ()


def test_decode_ignores_unknown_keys_and_noise_lines():
    text = (
        "[PROTOCOL:STATUS_UPDATE] from agent at t1 seq=1\n"
        "Mood: great\n"
        "this line is noise\n"
        "Status: completed\n"
    )
    assert decode(text) == StatusUpdate(sender="agent", timestamp="t1", seq=1, status="completed")


def test_decode_falls_back_on_out_of_range_values():
    text = (
        "[PROTOCOL:TASK_HANDOFF] from agent at t1\n"
        "Task: x\n"
        "Priority: urgent\n"
        "Context: y"
    )
    assert decode(text).priority == "medium"
    assert decode("[PROTOCOL:STATUS_UPDATE] from a at t1\nStatus: sleeping").status == "idle"
    assert decode("[PROTOCOL:ERROR_NOTICE] from a at t1\nRecoverable: yes").recoverable is False


def test_decode_accepts_empty_value_without_trailing_space():
    text = "[PROTOCOL:TASK_HANDOFF] from agent at t1\nTask: ship it\nPriority: low\nContext:"
    assert decode(text) == TaskHandoff(sender="agent", timestamp="t1", task="ship it", priority="low", context="")


def test_decode_stops_at_blank_line():
    text = "[PROTOCOL:HEARTBEAT] from agent at t1\n\nStatus: busy"
    assert decode(text).status == "idle"


def test_decode_keeps_colons_inside_values():
    text = "[PROTOCOL:STATUS_UPDATE] from agent at t1\nStatus: working\nTask: see http://example.com: now"
    assert decode(text).current_task == "see http://example.com: now"


def test_extract_all_finds_blocks_in_terminal_noise():
    capture = "\n".join(
        [
            "$ some shell output",
            "[PROTOCOL:STATUS_UPDATE] from agent-dev at t1 seq=1",
            "Status: working",
            "",
            "random chatter",
            "  [PROTOCOL:HEARTBEAT] from agent-tester at t2 seq=2",
            "Status: busy",
            "Task: running e2e",
            "",
            "> prompt",
        ]
    )
    messages = list(extract_all(capture))
    assert [message.type for message in messages] == ["status_update", "heartbeat"]
    assert messages[0].status == "working"
    assert messages[1].sender == "agent-tester"
    assert messages[1].current_task == "running e2e"


def test_extract_all_splits_on_adjacent_headers_and_keeps_duplicates():
    block = "[PROTOCOL:HEARTBEAT] from agent at t1 seq=1\nStatus: alive"
    capture = f"{block}\n{block}\n[PROTOCOL:ERROR_NOTICE] from agent at t2\nError: boom"
    messages = list(extract_all(capture))
    assert len(messages) == 3
    assert messages[0] == messages[1]
    assert messages[2].error == "boom"


def test_extract_all_is_lazy_and_restartable():
    scan = extract_all("[PROTOCOL:HEARTBEAT] from agent at t1\nStatus: alive\n\n[PROTOCOL:HEARTBEAT] from b at t2")
    assert isinstance(scan, MessageScan)
    first = [message.sender for message in scan]
    second = [message.sender for message in scan]
    assert first == second == ["agent", "b"]


def test_extract_all_without_messages_yields_nothing():
    assert list(extract_all("just a shell prompt\n$ ls\n")) == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"sender": "", "status": "idle"},
        {"sender": "two words", "status": "idle"},
        {"sender": "agent", "status": "sleeping"},
        {"sender": "agent", "status": "idle", "seq": -1},
        {"sender": "agent", "status": "idle", "seq": True},
        {"sender": "agent", "status": "idle", "current_task": "line one\nline two"},
    ],
)
def test_status_update_rejects_unrenderable_fields(kwargs):
    with pytest.raises(ValueError):
        StatusUpdate(**kwargs)


@pytest.mark.parametrize("items", [["a, b"], [""], "not a list"])
def test_context_compaction_rejects_ambiguous_retained_items(items):
    with pytest.raises(ValueError):
        ContextCompaction(sender="agent", summary="s", retained_knowledge=items)


def test_error_notice_requires_bool_flags():
    with pytest.raises(ValueError):
        ErrorNotice(sender="agent", error="x", recoverable="true")


def test_messages_are_immutable():
    message = Heartbeat(sender="agent")
    with pytest.raises(AttributeError):
        message.status = "busy"


def test_default_timestamp_is_utc_with_milliseconds():
    stamp = utc_timestamp()
    assert stamp.endswith("Z")
    assert len(stamp) == len("2025-12-17T08:00:00.000Z")
    assert Heartbeat(sender="agent").timestamp.endswith("Z")


def test_message_to_dict_uses_wire_names():
    message = ContextCompaction(
        sender="agent",
        timestamp=TIMESTAMP,
        seq=2,
        summary="s",
        retained_knowledge=("a",),
    )
    assert message_to_dict(message) == {
        "type": "context_compaction",
        "from": "agent",
        "timestamp": TIMESTAMP,
        "seq": 2,
        "summary": "s",
        "retained_knowledge": ["a"],
        "current_task_state": "",
    }


def test_base_message_cannot_be_built_directly():
    with pytest.raises(TypeError, match="not a protocol message variant"):
        ProtocolMessage(sender="agent", timestamp=TIMESTAMP)
