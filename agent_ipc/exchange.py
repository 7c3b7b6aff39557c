"""Send-and-await exchanges between agent sessions over tmux."""

from __future__ import annotations

import os
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

from . import tmux_ops
from .constants import (
    AGENT_SESSION_PREFIX,
    COMPOSING_MARKERS,
    DEFAULT_CAPTURE_LINES,
    DEFAULT_PING_TIMEOUT_SECONDS,
    DEFAULT_POLL_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    ENV_CAPTURE_LINES,
    ENV_COMPOSING_MARKERS,
    ENV_LOGS_DIR,
    ENV_POLL_SECONDS,
    ENV_SESSION,
    ENV_TIMEOUT_SECONDS,
    MIN_POLL_SECONDS,
    PROMPT_MARKER,
)
from .errors import ExchangeTimeoutError, IPCError, SessionNotFoundError, TransmitError
from .protocol import (
    ContextCompaction,
    ErrorNotice,
    Heartbeat,
    ProtocolMessage,
    StatusUpdate,
    TaskHandoff,
    encode,
    extract_all,
)
from .session_log import SessionLogger
from .tmux_ops import TmuxSession


@dataclass
class ExchangeConfig:
    """Runtime tuning values for exchanges."""

    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    poll_seconds: float = DEFAULT_POLL_SECONDS
    capture_lines: int = DEFAULT_CAPTURE_LINES
    composing_markers: tuple[str, ...] = COMPOSING_MARKERS
    prompt_marker: str = PROMPT_MARKER

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ExchangeConfig:
        """Build config from AGENT_IPC_* environment overrides.

        Args:
            environ: Environment mapping; defaults to `os.environ`.

        Returns:
            Config with defaults for any unset variable.
        """
        env = os.environ if environ is None else environ
        config = cls()
        if ENV_TIMEOUT_SECONDS in env:
            config.timeout_seconds = _parse_positive(env[ENV_TIMEOUT_SECONDS], ENV_TIMEOUT_SECONDS)
        if ENV_POLL_SECONDS in env:
            config.poll_seconds = _parse_positive(env[ENV_POLL_SECONDS], ENV_POLL_SECONDS)
        if ENV_CAPTURE_LINES in env:
            raw = env[ENV_CAPTURE_LINES].strip()
            if not raw.isdigit() or int(raw) <= 0:
                raise IPCError(f"invalid {ENV_CAPTURE_LINES}: {raw!r} (must be a positive integer)")
            config.capture_lines = int(raw)
        if ENV_COMPOSING_MARKERS in env:
            config.composing_markers = tuple(
                marker.strip() for marker in env[ENV_COMPOSING_MARKERS].split(",") if marker.strip()
            )
        return config


def _parse_positive(raw: str, name: str) -> float:
    try:
        value = float(raw)
    except (ValueError, OverflowError):
        value = float("nan")
    if not (0 < value < float("inf")):
        raise IPCError(f"invalid {name}: {raw!r} (must be a positive number)")
    return value


def effective_poll_seconds(poll_seconds: float) -> float:
    """Clamp a poll interval to the capture floor."""
    return max(poll_seconds, MIN_POLL_SECONDS)


@dataclass(frozen=True)
class SessionChannel:
    """External primitives an exchange runs over.

    `send_text` and `send_submit` are always issued as two separate calls.
    `create_session` and `kill_session` are only needed for session
    management.
    """

    list_sessions: Callable[[], list[TmuxSession]]
    exists: Callable[[str], bool]
    send_text: Callable[[str, str], None]
    send_submit: Callable[[str], None]
    capture: Callable[[str, int], str]
    create_session: Callable[[str], None] | None = None
    kill_session: Callable[[str], bool] | None = None


def tmux_channel() -> SessionChannel:
    """Return a channel bound to the local tmux server."""
    return SessionChannel(
        list_sessions=tmux_ops.list_agent_sessions,
        exists=tmux_ops.session_exists,
        send_text=tmux_ops.send_text,
        send_submit=tmux_ops.send_submit,
        capture=tmux_ops.capture_pane,
        create_session=tmux_ops.create_agent_session,
        kill_session=tmux_ops.kill_session,
    )


@dataclass
class SendResult:
    """Outcome of one fire-and-forget send."""

    target: str
    success: bool
    message: str


def is_composing(capture: str, markers: tuple[str, ...] = COMPOSING_MARKERS) -> bool:
    """Return true when a capture shows the remote side still generating."""
    return any(marker and marker in capture for marker in markers)


def extract_new_content(before: str, after: str, prompt_marker: str = PROMPT_MARKER) -> str:
    """Return lines of `after` that were not on screen in `before`.

    Leading blank lines and echoes of the typed prompt (lines starting with
    the prompt marker) are dropped.

    Args:
        before: Baseline capture taken before sending.
        after: Later capture.
        prompt_marker: Prefix of prompt-echo lines.

    Returns:
        New content, trimmed; empty when nothing new appeared.
    """
    before_lines = set(before.split("\n"))
    response_lines: list[str] = []
    for line in after.split("\n"):
        if line in before_lines:
            continue
        if not response_lines and not line.strip():
            continue
        if prompt_marker and line.startswith(prompt_marker):
            continue
        response_lines.append(line)
    return "\n".join(response_lines).strip()


def _message_key(message: ProtocolMessage) -> tuple[str, int | None, str]:
    return message.sender, message.seq, message.timestamp


class AgentIPC:
    """Coordinates messages between this session and its peers.

    One instance owns the per-process sequence counter and, unless logging
    is disabled, a SessionLogger. Use it as a context manager, or call
    `close()`, to record the session end.
    """

    def __init__(
        self,
        session_name: str | None = None,
        *,
        channel: SessionChannel | None = None,
        config: ExchangeConfig | None = None,
        logging_enabled: bool = True,
        logs_dir: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        warning_callback: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            session_name: This session's name; defaults to AGENT_IPC_SESSION,
                then the current tmux session, then `unknown`.
            channel: External primitives; defaults to tmux.
            config: Timeouts and capture tuning.
            logging_enabled: When false, no session log is written.
            logs_dir: Session log directory; defaults to AGENT_IPC_LOGS_DIR or `./logs`.
            clock: Monotonic clock in seconds.
            sleep: Sleep primitive used between polls.
            warning_callback: Optional callback for non-fatal warnings.
        """
        self._channel = channel or tmux_channel()
        self.config = config or ExchangeConfig()
        self._clock = clock
        self._sleep = sleep
        self._seq = 0
        self._seq_lock = threading.Lock()
        self._closed = False

        self._session_name = (
            session_name
            or os.environ.get(ENV_SESSION)
            or tmux_ops.current_session()
            or "unknown"
        )

        self._logger: SessionLogger | None = None
        if logging_enabled:
            env_logs_dir = os.environ.get(ENV_LOGS_DIR)
            self._logger = SessionLogger(
                self._session_name,
                logs_dir or (Path(env_logs_dir) if env_logs_dir else None),
                warning_callback=warning_callback,
            )
            self._logger.log_session_start()

    @property
    def session(self) -> str:
        """Name of this session, used as the sender of protocol messages."""
        return self._session_name

    @property
    def descriptor(self) -> str | None:
        return self._logger.descriptor if self._logger is not None else None

    @property
    def logging_enabled(self) -> bool:
        return self._logger is not None

    def close(self, reason: str | None = None) -> None:
        """Record session end. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._logger is not None:
            self._logger.log_session_end(reason)

    def __enter__(self) -> AgentIPC:
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:
        self.close("error" if exc_type is not None else None)

    def next_seq(self) -> int:
        """Return the next sequence number for this instance."""
        with self._seq_lock:
            self._seq += 1
            return self._seq

    # ===== sessions =====

    def list_sessions(self) -> list[TmuxSession]:
        return self._channel.list_sessions()

    def session_exists(self, name: str) -> bool:
        return self._channel.exists(name)

    def create_session(self) -> str:
        """Create the next free `agent-<n>` session and return its name."""
        if self._channel.create_session is None:
            raise IPCError("session creation is not supported by this channel")
        pattern = re.compile(rf"^{AGENT_SESSION_PREFIX}-(\d+)$")
        highest = 0
        for session in self.list_sessions():
            match = pattern.match(session.name)
            if match:
                highest = max(highest, int(match.group(1)))
        name = f"{AGENT_SESSION_PREFIX}-{highest + 1}"
        self._channel.create_session(name)
        return name

    def kill_session(self, name: str) -> bool:
        if self._channel.kill_session is None:
            raise IPCError("session removal is not supported by this channel")
        return self._channel.kill_session(name)

    def kill_others(self) -> int:
        """Kill every agent session except this one; return how many died."""
        return sum(
            1
            for session in self.list_sessions()
            if session.name != self.session and self.kill_session(session.name)
        )

    def kill_all(self) -> int:
        return sum(1 for session in self.list_sessions() if self.kill_session(session.name))

    # ===== messaging =====

    def _transmit(self, target: str, text: str) -> None:
        """Type text into a target and submit it as two separate calls.

        Raises:
            TransmitError: If either keystroke call fails.
        """
        try:
            self._channel.send_text(target, text)
            self._channel.send_submit(target)
        # subprocess raises ValueError for payloads it cannot pass, e.g. NUL bytes
        except (IPCError, OSError, ValueError) as exc:
            raise TransmitError(target, str(exc)) from exc

    def send(self, target: str, message: str) -> SendResult:
        """Send text to a target without waiting for a reply.

        Args:
            target: Target session name.
            message: Text to type and submit.

        Returns:
            Result naming the target; failures are reported, not raised.
        """
        if not self.session_exists(target):
            return SendResult(target=target, success=False, message=f"session '{target}' not found")
        try:
            self._transmit(target, message)
        except TransmitError as exc:
            return SendResult(target=target, success=False, message=str(exc))

        if self._logger is not None:
            self._logger.log_message_sent(target, message)
        return SendResult(target=target, success=True, message=f"sent to {target}")

    def broadcast(self, message: str) -> dict[str, SendResult]:
        """Send text to every known session except this one.

        One failed target does not stop delivery to the rest.

        Returns:
            One result per target, keyed by session name.
        """
        results: dict[str, SendResult] = {}
        for session in self.list_sessions():
            if session.name == self.session:
                continue
            results[session.name] = self.send(session.name, message)
        return results

    def read(self, target: str, lines: int | None = None) -> str | None:
        """Capture a target's current output.

        Returns:
            Captured text, an empty string when the target shows nothing, or
            None when the target does not exist.
        """
        if not self.session_exists(target):
            return None
        line_count = lines or self.config.capture_lines
        content = self._channel.capture(target, line_count)
        if content and self._logger is not None:
            self._logger.log_message_received(target, content, line_count)
        return content

    def send_and_wait(
        self,
        target: str,
        message: str,
        *,
        timeout_seconds: float | None = None,
        poll_seconds: float | None = None,
        lines: int | None = None,
    ) -> str:
        """Send text and poll the target's screen until a reply appears.

        A capture that still shows a composing marker never completes the
        exchange. Otherwise, once the capture changes, lines that were not in
        the pre-send baseline are the reply.

        Args:
            target: Target session name.
            message: Text to type and submit.
            timeout_seconds: Overall deadline; defaults to config.
            poll_seconds: Delay between captures; clamped to MIN_POLL_SECONDS.
            lines: Capture window; defaults to config.

        Returns:
            Extracted reply text.

        Raises:
            SessionNotFoundError: Target does not exist at call time.
            TransmitError: Typing or submitting failed.
            ExchangeTimeoutError: No reply before the deadline.
        """
        timeout = self.config.timeout_seconds if timeout_seconds is None else timeout_seconds
        poll = effective_poll_seconds(self.config.poll_seconds if poll_seconds is None else poll_seconds)
        line_count = lines or self.config.capture_lines

        if not self.session_exists(target):
            raise SessionNotFoundError(target)

        baseline = self._channel.capture(target, line_count)
        self._transmit(target, message)
        if self._logger is not None:
            self._logger.log_message_sent(target, message)

        deadline = self._clock() + timeout
        last_capture = baseline
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ExchangeTimeoutError(target, timeout)
            self._sleep(min(poll, remaining))

            current = self._channel.capture(target, line_count)
            if current == last_capture:
                continue
            last_capture = current
            if is_composing(current, self.config.composing_markers):
                continue

            response = extract_new_content(baseline, current, self.config.prompt_marker)
            if response:
                if self._logger is not None:
                    self._logger.log_message_received(target, response, line_count)
                return response

    def ping(self, target: str, timeout_seconds: float = DEFAULT_PING_TIMEOUT_SECONDS) -> float:
        """Send a heartbeat to one target and wait for any protocol reply from it.

        Messages from the target that were already on screen before the ping
        do not count.

        Returns:
            Seconds between sending and seeing the reply.

        Raises:
            SessionNotFoundError: Target does not exist.
            TransmitError: The heartbeat could not be typed.
            ExchangeTimeoutError: No reply before the deadline.
        """
        if not self.session_exists(target):
            raise SessionNotFoundError(target)

        baseline = self._channel.capture(target, self.config.capture_lines)
        seen = {_message_key(message) for message in extract_all(baseline)}

        heartbeat = Heartbeat(
            sender=self.session,
            seq=self.next_seq(),
            status="alive",
            current_task="ping check",
        )
        self._transmit(target, encode(heartbeat))

        started = self._clock()
        deadline = started + timeout_seconds
        poll = effective_poll_seconds(self.config.poll_seconds)
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ExchangeTimeoutError(target, timeout_seconds)
            self._sleep(min(poll, remaining))

            current = self._channel.capture(target, self.config.capture_lines)
            for message in extract_all(current):
                if message.sender == target and _message_key(message) not in seen:
                    return self._clock() - started

    # ===== protocol =====

    def _log_protocol(self, message: ProtocolMessage, content: dict, target: str | None = None) -> None:
        if self._logger is not None:
            self._logger.log(message.type, content, target=target)

    def notify_compaction(
        self,
        summary: str,
        retained_knowledge: list[str] | tuple[str, ...],
        current_task_state: str,
    ) -> dict[str, SendResult]:
        """Broadcast a context compaction notice to every peer."""
        notice = ContextCompaction(
            sender=self.session,
            seq=self.next_seq(),
            summary=summary,
            retained_knowledge=tuple(retained_knowledge),
            current_task_state=current_task_state,
        )
        self._log_protocol(
            notice,
            {
                "summary": summary,
                "retainedKnowledge": list(notice.retained_knowledge),
                "currentTaskState": current_task_state,
            },
        )
        return self.broadcast(encode(notice))

    def notify_status(
        self,
        status: str,
        current_task: str | None = None,
        progress: str | None = None,
    ) -> dict[str, SendResult]:
        """Broadcast a status update to every peer."""
        update = StatusUpdate(
            sender=self.session,
            seq=self.next_seq(),
            status=status,
            current_task=current_task,
            progress=progress,
        )
        self._log_protocol(
            update,
            {"status": status, "currentTask": update.current_task, "progress": update.progress},
        )
        return self.broadcast(encode(update))

    def handoff_task(
        self,
        target: str,
        task: str,
        context: str,
        priority: str = "medium",
    ) -> SendResult:
        """Send a task handoff to one peer."""
        if not task.strip():
            raise ValueError("task must not be empty")
        handoff = TaskHandoff(
            sender=self.session,
            seq=self.next_seq(),
            task=task,
            context=context,
            priority=priority,
        )
        self._log_protocol(
            handoff,
            {"task": task, "context": context, "priority": priority},
            target=target,
        )
        return self.send(target, encode(handoff))

    def notify_error(
        self,
        error: str,
        recoverable: bool,
        needs_assistance: bool,
    ) -> dict[str, SendResult]:
        """Broadcast an error notice to every peer."""
        notice = ErrorNotice(
            sender=self.session,
            seq=self.next_seq(),
            error=error,
            recoverable=recoverable,
            needs_assistance=needs_assistance,
        )
        self._log_protocol(
            notice,
            {"error": error, "recoverable": recoverable, "needsAssistance": needs_assistance},
        )
        return self.broadcast(encode(notice))

    def send_heartbeat(
        self,
        status: str = "alive",
        current_task: str | None = None,
    ) -> dict[str, SendResult]:
        """Broadcast a heartbeat; call periodically to signal liveness."""
        heartbeat = Heartbeat(
            sender=self.session,
            seq=self.next_seq(),
            status=status,
            current_task=current_task,
        )
        self._log_protocol(heartbeat, {"status": status, "currentTask": heartbeat.current_task})
        return self.broadcast(encode(heartbeat))
