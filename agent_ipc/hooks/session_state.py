"""Agent hook that persists per-session IPC state.

Install as a SessionStart and Stop hook. On SessionStart inside an IPC
session (`agent-dev`, `agent-tester`, optionally with `-<n>`) it writes
`logs/.session-<session>` with a descriptor generated once for the whole
session, so every later process appends to the same log. On Stop it removes
that file. Every invocation appends one line to `logs/events.jsonl`.

Run it as `agent-ipc-hook` or `python -m agent_ipc.hooks.session_state`.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

from ..constants import ENV_LOGS_DIR, HOOK_EVENTS_FILE_NAME, LOGS_DIR
from ..session_log import generate_descriptor, session_state_file
from ..tmux_ops import current_session

ROLE_PATTERNS = (
    (re.compile(r"^agent-dev(-\d+)?$"), "developer"),
    (re.compile(r"^agent-tester(-\d+)?$"), "tester"),
)


def resolve_role(tmux_session: str | None) -> str | None:
    """Return the IPC role for a session name, or None outside IPC mode."""
    if not tmux_session:
        return None
    for pattern, role in ROLE_PATTERNS:
        if pattern.match(tmux_session):
            return role
    return None


def read_hook_input(stream: TextIO) -> dict:
    """Read the hook payload, treating empty or malformed input as empty."""
    raw = stream.read()
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def write_session_state(
    logs_dir: Path,
    tmux_session: str,
    role: str,
    session_id: str,
    started_at: str,
) -> Path:
    """Write the session state file read by SessionLogger.

    Returns:
        Written state file path.
    """
    payload = {
        "tmux_session": tmux_session,
        "role": role,
        "ipc_mode": True,
        "descriptor": generate_descriptor(),
        "started_at": started_at,
        "session_id": session_id,
    }
    path = session_state_file(logs_dir, tmux_session)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    return path


def handle_event(payload: dict, logs_dir: Path, tmux_session: str | None) -> dict:
    """Apply one hook event and append it to the event log.

    Args:
        payload: Hook input (`session_id`, `hook_event_name`).
        logs_dir: Log directory.
        tmux_session: Current tmux session, if any.

    Returns:
        The appended event record.
    """
    session_id = payload.get("session_id") or "unknown"
    event_type = payload.get("hook_event_name") or "unknown"
    timestamp = datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    role = resolve_role(tmux_session)

    logs_dir.mkdir(parents=True, exist_ok=True)

    if event_type == "SessionStart" and role is not None:
        write_session_state(logs_dir, tmux_session, role, str(session_id), timestamp)

    if event_type == "Stop" and tmux_session:
        session_state_file(logs_dir, tmux_session).unlink(missing_ok=True)

    record = {
        "event": event_type,
        "tmux_session": tmux_session or "",
        "role": role or "",
        "ipc_mode": role is not None,
        "timestamp": timestamp,
    }
    with (logs_dir / HOOK_EVENTS_FILE_NAME).open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, ensure_ascii=False) + "\n")
    return record


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser.

    Returns:
        Configured parser.
    """
    parser = argparse.ArgumentParser(prog="agent-ipc-hook", description="agent-ipc session state hook")
    parser.add_argument("--logs-dir", type=Path, default=None)
    return parser


def main(argv: list[str] | None = None, stdin: TextIO | None = None) -> int:
    """Run the hook.

    Args:
        argv: Optional argv vector.
        stdin: Hook input stream; defaults to sys.stdin.

    Returns:
        Exit status code.
    """
    args = build_parser().parse_args(argv)
    env_logs_dir = os.environ.get(ENV_LOGS_DIR)
    logs_dir = args.logs_dir or (Path(env_logs_dir) if env_logs_dir else Path.cwd() / LOGS_DIR)

    payload = read_hook_input(stdin or sys.stdin)
    handle_event(payload, logs_dir, current_session())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
