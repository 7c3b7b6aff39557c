"""tmux command helpers for agent_ipc."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass

from .constants import (
    AGENT_SESSION_RE,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_CAPTURE_LINES,
    ENV_AGENT_COMMAND,
    ENV_SUBMIT_DELAY_SECONDS,
    ENV_SUBMIT_KEY,
    SUBMIT_KEY,
)
from .errors import IPCError

_AGENT_SESSION_PATTERN = re.compile(AGENT_SESSION_RE)


@dataclass(frozen=True)
class TmuxSession:
    """One row of `tmux list-sessions`."""

    name: str
    windows: int
    attached: bool


def _run_tmux(args: list[str], *, capture_output: bool = True, check: bool = True) -> subprocess.CompletedProcess:
    """Run a tmux command.

    Args:
        args: tmux subcommand argv.
        capture_output: When true, capture stdout/stderr.
        check: When true, raise on non-zero return code.

    Returns:
        Completed subprocess result.
    """
    result = subprocess.run(
        ["tmux", *args],
        text=True,
        capture_output=capture_output,
        check=False,
    )
    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise IPCError(stderr or f"tmux command failed: {' '.join(args)}")
    return result


def ensure_dependencies() -> None:
    """Fail fast when tmux is missing."""
    if shutil.which("tmux") is None:
        raise IPCError("missing dependency: tmux")


def session_exists(session_name: str) -> bool:
    """Return true if a tmux session name exists."""
    # `=` forces an exact match; plain -t also accepts name prefixes
    result = _run_tmux(["has-session", "-t", f"={session_name}"], check=False)
    return result.returncode == 0


def list_sessions() -> list[TmuxSession]:
    """Return every tmux session, or an empty list when no server runs."""
    result = _run_tmux(
        [
            "list-sessions",
            "-F",
            "#{session_name}\t#{session_windows}\t#{session_attached}",
        ],
        check=False,
    )
    if result.returncode != 0:
        return []

    sessions: list[TmuxSession] = []
    for row in result.stdout.splitlines():
        parts = row.split("\t")
        if len(parts) != 3:
            continue
        name, windows, attached = parts
        sessions.append(
            TmuxSession(
                name=name,
                windows=int(windows) if windows.isdigit() else 0,
                attached=attached not in ("", "0"),
            )
        )
    return sessions


def is_agent_session(name: str) -> bool:
    """Return true for agent session names (`agent`, `agent-2`, `agent-dev-2`)."""
    return _AGENT_SESSION_PATTERN.match(name) is not None


def list_agent_sessions() -> list[TmuxSession]:
    """Return tmux sessions whose names follow the agent naming scheme."""
    return [session for session in list_sessions() if is_agent_session(session.name)]


def current_session() -> str | None:
    """Return the tmux session this process runs in, or None outside tmux."""
    if not os.environ.get("TMUX"):
        return None
    result = _run_tmux(["display-message", "-p", "#{session_name}"], check=False)
    name = result.stdout.strip() if result.returncode == 0 else ""
    return name or None


def _submit_delay(content: str) -> float:
    """Compute the settle delay between typing text and submitting it.

    Agent TUIs need time to process literal keystrokes before they accept the
    submit key. Small payloads settle in 0.3s; larger ones get 0.1s per extra
    1000 chars, capped at 2s.

    Override with AGENT_IPC_SUBMIT_DELAY_SECONDS to force a fixed value.

    Args:
        content: Payload that was just typed.

    Returns:
        Delay in seconds.
    """
    override = os.environ.get(ENV_SUBMIT_DELAY_SECONDS)
    if override is not None:
        try:
            value = float(override)
        except (ValueError, OverflowError):
            value = float("nan")
        if not (0 <= value <= 10):
            raise IPCError(
                f"invalid {ENV_SUBMIT_DELAY_SECONDS}: {override!r} "
                f"(must be a number between 0 and 10)"
            )
        return value

    base = 0.3
    extra = max(0, len(content) - 2000) / 1000 * 0.1
    return min(base + extra, 2.0)


def send_text(session_name: str, content: str) -> None:
    """Type content into a session as literal keystrokes, without submitting.

    Waits for the TUI to settle before returning so a following submit is
    not swallowed.

    Args:
        session_name: Target session.
        content: Text to inject.
    """
    # `--` keeps payloads that start with `-` from being parsed as flags
    _run_tmux(["send-keys", "-t", session_name, "-l", "--", content])
    time.sleep(_submit_delay(content))


def send_submit(session_name: str) -> None:
    """Send the submit key to a session."""
    key = os.environ.get(ENV_SUBMIT_KEY, SUBMIT_KEY)
    _run_tmux(["send-keys", "-t", session_name, key])


def capture_pane(session_name: str, lines: int = DEFAULT_CAPTURE_LINES) -> str:
    """Capture the last lines of a session's visible output and scrollback.

    Args:
        session_name: Target session.
        lines: How many lines of history to include.

    Returns:
        Captured text, or an empty string when capture fails.
    """
    result = _run_tmux(
        ["capture-pane", "-t", session_name, "-p", "-S", f"-{lines}"],
        check=False,
    )
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def create_agent_session(session_name: str, command: str | None = None) -> None:
    """Create a detached session running an agent CLI.

    Args:
        session_name: New session name.
        command: Command to run; defaults to AGENT_IPC_AGENT_COMMAND or `claude`.
    """
    if session_exists(session_name):
        raise IPCError(f"tmux session '{session_name}' already exists")
    agent_command = command or os.environ.get(ENV_AGENT_COMMAND, DEFAULT_AGENT_COMMAND)
    _run_tmux(["new-session", "-d", "-s", session_name, agent_command])


def kill_session(session_name: str) -> bool:
    """Kill a tmux session.

    Returns:
        True when tmux reported success.
    """
    result = _run_tmux(["kill-session", "-t", f"={session_name}"], check=False)
    return result.returncode == 0
