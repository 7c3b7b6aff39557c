"""Protocol message codec for agent_ipc.

Protocol messages travel as plain text typed into a peer's terminal, so the
format is meant to be readable by the agent on the other side as well as by
this parser:

    [PROTOCOL:STATUS_UPDATE] from agent-dev at 2025-12-17T08:00:00.000Z seq=3
    Status: working
    Task: review the login module

A blank line or the next header line ends a block. Decoding never raises:
text that is not a protocol message decodes to None, and a truncated block
decodes with defaults for whatever is missing.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Iterator

from .constants import PROTOCOL_TYPES

STATUS_UPDATE_STATES = ("idle", "working", "blocked", "completed")
HEARTBEAT_STATES = ("alive", "busy", "idle")
PRIORITIES = ("low", "medium", "high")
RETAINED_SEPARATOR = ", "

HEADER_PATTERN = re.compile(
    r"^\[PROTOCOL:(?P<type>"
    + "|".join(protocol_type.upper() for protocol_type in PROTOCOL_TYPES)
    + r")\] from (?P<sender>\S+) at (?P<timestamp>\S+)(?: seq=(?P<seq>\d+))?$"
)
BODY_LINE_PATTERN = re.compile(r"^\s*(?P<label>[A-Za-z][A-Za-z ]*?):(?: (?P<value>.*))?$")


def utc_timestamp() -> str:
    """Return the current UTC instant with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _require_token(value: Any, name: str) -> None:
    if not isinstance(value, str) or not value or any(char.isspace() for char in value):
        raise ValueError(f"{name} must be a non-empty string without whitespace")


def _require_choice(value: Any, choices: tuple[str, ...], name: str) -> None:
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}; got {value!r}")


def _require_line(value: Any, name: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    if "\n" in value or "\r" in value:
        raise ValueError(f"{name} must fit on one line")


def _require_flag(value: Any, name: str) -> None:
    if not isinstance(value, bool):
        raise ValueError(f"{name} must be a bool")


def _normalize_optional(message: ProtocolMessage, name: str) -> None:
    """Validate an optional text field, treating "" as absent."""
    value = getattr(message, name)
    if value is None:
        return
    _require_line(value, name)
    if value == "":
        object.__setattr__(message, name, None)


@dataclass(frozen=True, kw_only=True)
class ProtocolMessage:
    """Fields shared by every protocol message.

    Attributes:
        sender: Session that produced the message (``from`` on the wire).
        timestamp: ISO 8601 instant, stamped at construction by default.
        seq: Optional per-sender sequence number; advisory only.
    """

    type: ClassVar[str] = ""

    sender: str
    timestamp: str = field(default_factory=utc_timestamp)
    seq: int | None = None

    def __post_init__(self) -> None:
        if self.type not in PROTOCOL_TYPES:
            raise TypeError(f"{type(self).__name__} is not a protocol message variant")
        _require_token(self.sender, "sender")
        _require_token(self.timestamp, "timestamp")
        if self.seq is not None:
            if isinstance(self.seq, bool) or not isinstance(self.seq, int) or self.seq < 0:
                raise ValueError("seq must be a non-negative integer")

    def header(self) -> str:
        """Render the header line."""
        seq_text = f" seq={self.seq}" if self.seq is not None else ""
        return f"[PROTOCOL:{self.type.upper()}] from {self.sender} at {self.timestamp}{seq_text}"

    def body_lines(self) -> list[tuple[str, str]]:
        """Return ``(label, value)`` pairs in wire order."""
        raise NotImplementedError


@dataclass(frozen=True, kw_only=True)
class StatusUpdate(ProtocolMessage):
    type: ClassVar[str] = "status_update"

    status: str
    current_task: str | None = None
    progress: str | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        _require_choice(self.status, STATUS_UPDATE_STATES, "status")
        _normalize_optional(self, "current_task")
        _normalize_optional(self, "progress")

    def body_lines(self) -> list[tuple[str, str]]:
        lines = [("Status", self.status)]
        if self.current_task is not None:
            lines.append(("Task", self.current_task))
        if self.progress is not None:
            lines.append(("Progress", self.progress))
        return lines


@dataclass(frozen=True, kw_only=True)
class TaskHandoff(ProtocolMessage):
    """Hand a task to one peer.

    ``task`` may be empty only on decoded messages whose Task line was lost;
    senders go through ``AgentIPC.handoff_task``, which rejects empty tasks.
    """

    type: ClassVar[str] = "task_handoff"

    task: str
    context: str = ""
    priority: str = "medium"

    def __post_init__(self) -> None:
        super().__post_init__()
        _require_line(self.task, "task")
        _require_line(self.context, "context")
        _require_choice(self.priority, PRIORITIES, "priority")

    def body_lines(self) -> list[tuple[str, str]]:
        return [
            ("Task", self.task),
            ("Priority", self.priority),
            ("Context", self.context),
        ]


@dataclass(frozen=True, kw_only=True)
class ErrorNotice(ProtocolMessage):
    type: ClassVar[str] = "error_notice"

    error: str
    recoverable: bool = False
    needs_assistance: bool = False

    def __post_init__(self) -> None:
        super().__post_init__()
        _require_line(self.error, "error")
        _require_flag(self.recoverable, "recoverable")
        _require_flag(self.needs_assistance, "needs_assistance")

    def body_lines(self) -> list[tuple[str, str]]:
        return [
            ("Error", self.error),
            ("Recoverable", _render_flag(self.recoverable)),
            ("Needs assistance", _render_flag(self.needs_assistance)),
        ]


@dataclass(frozen=True, kw_only=True)
class Heartbeat(ProtocolMessage):
    type: ClassVar[str] = "heartbeat"

    status: str = "alive"
    current_task: str | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        _require_choice(self.status, HEARTBEAT_STATES, "status")
        _normalize_optional(self, "current_task")

    def body_lines(self) -> list[tuple[str, str]]:
        lines = [("Status", self.status)]
        if self.current_task is not None:
            lines.append(("Task", self.current_task))
        return lines


@dataclass(frozen=True, kw_only=True)
class ContextCompaction(ProtocolMessage):
    """Tell peers this session compacted its context and what survived."""

    type: ClassVar[str] = "context_compaction"

    summary: str
    retained_knowledge: tuple[str, ...] = ()
    current_task_state: str = ""

    def __post_init__(self) -> None:
        super().__post_init__()
        _require_line(self.summary, "summary")
        _require_line(self.current_task_state, "current_task_state")
        if isinstance(self.retained_knowledge, str):
            raise ValueError("retained_knowledge must be a sequence of strings")
        items = tuple(self.retained_knowledge)
        for item in items:
            _require_line(item, "retained_knowledge item")
            if not item or RETAINED_SEPARATOR in item:
                raise ValueError(
                    f"retained_knowledge items must be non-empty and not contain {RETAINED_SEPARATOR!r}"
                )
        object.__setattr__(self, "retained_knowledge", items)

    def body_lines(self) -> list[tuple[str, str]]:
        return [
            ("Summary", self.summary),
            ("Retained", RETAINED_SEPARATOR.join(self.retained_knowledge)),
            ("Current task", self.current_task_state),
        ]


def _render_flag(value: bool) -> str:
    return "true" if value else "false"


def encode(message: ProtocolMessage) -> str:
    """Render a message as its wire text.

    Args:
        message: Message to render.

    Returns:
        Header line followed by one ``Label: value`` line per populated field.
    """
    lines = [message.header()]
    lines.extend(f"{label}: {value}" for label, value in message.body_lines())
    return "\n".join(lines)


def _match_header(line: str) -> re.Match[str] | None:
    return HEADER_PATTERN.match(line.strip())


def _parse_body_line(line: str) -> tuple[str, str] | None:
    """Split a ``Label: value`` line into a normalized key and raw value."""
    match = BODY_LINE_PATTERN.match(line)
    if match is None:
        return None
    key = re.sub(r"\s+", "_", match.group("label").strip().lower())
    return key, match.group("value") or ""


def _choice(value: str | None, choices: tuple[str, ...], default: str) -> str:
    return value if value in choices else default


def _build_message(
    message_type: str,
    sender: str,
    timestamp: str,
    seq: int | None,
    body: dict[str, str],
) -> ProtocolMessage:
    """Construct the variant for a header type from parsed body fields."""
    if message_type == "status_update":
        return StatusUpdate(
            sender=sender,
            timestamp=timestamp,
            seq=seq,
            status=_choice(body.get("status"), STATUS_UPDATE_STATES, "idle"),
            current_task=body.get("task"),
            progress=body.get("progress"),
        )
    if message_type == "task_handoff":
        return TaskHandoff(
            sender=sender,
            timestamp=timestamp,
            seq=seq,
            task=body.get("task", ""),
            priority=_choice(body.get("priority"), PRIORITIES, "medium"),
            context=body.get("context", ""),
        )
    if message_type == "error_notice":
        return ErrorNotice(
            sender=sender,
            timestamp=timestamp,
            seq=seq,
            error=body.get("error", ""),
            recoverable=body.get("recoverable") == "true",
            needs_assistance=body.get("needs_assistance") == "true",
        )
    if message_type == "heartbeat":
        return Heartbeat(
            sender=sender,
            timestamp=timestamp,
            seq=seq,
            status=_choice(body.get("status"), HEARTBEAT_STATES, "idle"),
            current_task=body.get("task"),
        )
    # header pattern only admits known types, so this is context_compaction
    retained = body.get("retained", "")
    return ContextCompaction(
        sender=sender,
        timestamp=timestamp,
        seq=seq,
        summary=body.get("summary", ""),
        retained_knowledge=tuple(item for item in retained.split(RETAINED_SEPARATOR) if item),
        current_task_state=body.get("current_task", ""),
    )


def decode(text: str) -> ProtocolMessage | None:
    """Parse one protocol block.

    Leading blank lines are skipped. The block ends at the first blank line or
    the next header line; body lines that are not ``Label: value`` are
    ignored, as are unknown labels.

    Args:
        text: Candidate block text.

    Returns:
        Decoded message, or None when the first line is not a protocol header.
    """
    lines = [line.rstrip("\r") for line in text.split("\n")]
    index = 0
    while index < len(lines) and not lines[index].strip():
        index += 1
    if index == len(lines):
        return None

    header = _match_header(lines[index])
    if header is None:
        return None

    body: dict[str, str] = {}
    for line in lines[index + 1 :]:
        if not line.strip() or _match_header(line) is not None:
            break
        parsed = _parse_body_line(line)
        if parsed is None:
            continue
        key, value = parsed
        body[key] = value

    seq_text = header.group("seq")
    return _build_message(
        message_type=header.group("type").lower(),
        sender=header.group("sender"),
        timestamp=header.group("timestamp"),
        seq=int(seq_text) if seq_text is not None else None,
        body=body,
    )


def is_message(text: str) -> bool:
    """Return true if the first line of trimmed text is a protocol header."""
    first_line = text.strip().split("\n", 1)[0]
    return _match_header(first_line) is not None


class MessageScan:
    """Lazy scan over every protocol block in a terminal capture.

    Iterating starts a fresh scan each time, so one scan object can be walked
    more than once. Duplicate blocks (e.g. from overlapping scrollback) are
    yielded as they appear; dedupe on ``(sender, seq, timestamp)`` if needed.
    """

    def __init__(self, text: str) -> None:
        self.text = text

    def __iter__(self) -> Iterator[ProtocolMessage]:
        block: list[str] | None = None
        for raw_line in self.text.split("\n"):
            line = raw_line.rstrip("\r")
            if _match_header(line) is not None:
                if block:
                    yield from self._decode_block(block)
                block = [line]
                continue
            if block is None:
                continue
            if not line.strip():
                yield from self._decode_block(block)
                block = None
                continue
            block.append(line)

        if block:
            yield from self._decode_block(block)

    @staticmethod
    def _decode_block(block: list[str]) -> Iterator[ProtocolMessage]:
        message = decode("\n".join(block))
        if message is not None:
            yield message


def extract_all(text: str) -> MessageScan:
    """Return a restartable scan of all protocol messages in text."""
    return MessageScan(text)


def message_to_dict(message: ProtocolMessage) -> dict[str, Any]:
    """Return a JSON-ready mapping for a message, keyed like the wire format."""
    payload = asdict(message)
    retained = payload.get("retained_knowledge")
    if retained is not None:
        payload["retained_knowledge"] = list(retained)
    return {
        "type": message.type,
        "from": payload.pop("sender"),
        **payload,
    }
