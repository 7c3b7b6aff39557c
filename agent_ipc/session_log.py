"""Per-session descriptor and JSONL log store."""

from __future__ import annotations

import json
import os
import random
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .constants import ACTIVE_FILE_NAME, LOGS_DIR, SESSION_STATE_PREFIX
from .errors import IPCError

ADJECTIVES = (
    "brave", "calm", "dark", "eager", "fair", "gentle", "happy", "idle", "jolly", "keen",
    "lively", "merry", "noble", "odd", "proud", "quick", "rare", "sharp", "tall", "urgent",
    "vivid", "warm", "young", "zesty", "bold", "crisp", "deft", "fine", "grand", "hale",
)
COLORS = (
    "amber", "blue", "coral", "dusk", "ember", "frost", "gold", "haze", "iris", "jade",
    "khaki", "lime", "mint", "navy", "olive", "pearl", "quartz", "rose", "sage", "teal",
    "umber", "violet", "wine", "azure", "brass", "cedar", "denim", "fern", "grape", "ivory",
)
ANIMALS = (
    "ant", "bear", "crow", "deer", "eagle", "fox", "goat", "hawk", "ibis", "jay",
    "kite", "lion", "moth", "newt", "owl", "puma", "quail", "raven", "seal", "tiger",
    "urchin", "viper", "wolf", "yak", "zebra", "badger", "crane", "dove", "finch", "gull",
)

LOG_ENTRY_TYPES = frozenset(
    {
        "session_start",
        "session_end",
        "message_sent",
        "message_received",
        "status_update",
        "task_handoff",
        "error_notice",
        "heartbeat",
        "context_compaction",
        "custom",
    }
)


def generate_descriptor(rng: random.Random | None = None) -> str:
    """Return a three-word descriptor like `brave-amber-fox`."""
    chooser = rng or random
    return f"{chooser.choice(ADJECTIVES)}-{chooser.choice(COLORS)}-{chooser.choice(ANIMALS)}"


def default_logs_dir() -> Path:
    """Return the logs directory for the current working directory."""
    return Path.cwd() / LOGS_DIR


def session_state_file(logs_dir: Path, session_name: str) -> Path:
    """Return the hook-written state file for one session."""
    return logs_dir / f"{SESSION_STATE_PREFIX}{session_name}"


def active_file(logs_dir: Path) -> Path:
    """Return the active-session registry path."""
    return logs_dir / ACTIVE_FILE_NAME


def _iso_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _read_active_list(path: Path) -> list[dict]:
    """Read the active registry, treating a missing or unreadable file as empty."""
    if not path.exists():
        return []
    try:
        payload = json.loads(path.read_text(encoding="utf-8", errors="replace"))
    except json.JSONDecodeError:
        return []
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


def _write_active_list(path: Path, entries: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(entries, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


class SessionLogger:
    """Thread-safe JSONL writer for one session's IPC activity.

    The descriptor is reused from the hook-written `.session-<name>` state
    file when one exists so that every process in the same session appends
    to the same log; otherwise a fresh descriptor is generated.
    """

    def __init__(
        self,
        session_name: str,
        logs_dir: Path | None = None,
        *,
        now_provider: Callable[[], datetime] | None = None,
        warning_callback: Callable[[str], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Resolve the descriptor and log file for a session.

        Args:
            session_name: tmux session name of this process.
            logs_dir: Log directory; defaults to `./logs`.
            now_provider: Optional timestamp provider for deterministic tests.
            warning_callback: Optional callback for non-fatal warnings.
            rng: Optional random source for descriptor generation.
        """
        self.logs_dir = logs_dir or default_logs_dir()
        self._now = now_provider or (lambda: datetime.now(timezone.utc))
        self._warning_callback = warning_callback
        self._lock = threading.Lock()
        self.logs_dir.mkdir(parents=True, exist_ok=True)

        self.session_state_file = session_state_file(self.logs_dir, session_name)
        state = self.read_session_state()
        if state and isinstance(state.get("descriptor"), str) and state["descriptor"]:
            self.descriptor = state["descriptor"]
            tmux_session = state.get("tmux_session")
            self.session_name = tmux_session if isinstance(tmux_session, str) and tmux_session else session_name
        else:
            self.session_name = session_name
            self.descriptor = generate_descriptor(rng)

        self.log_file = self.logs_dir / f"{self.descriptor}.jsonl"

    def _emit_warning(self, message: str) -> None:
        if self._warning_callback is not None:
            self._warning_callback(message)

    def read_session_state(self) -> dict | None:
        """Return the hook-written session state, or None when absent or malformed."""
        if not self.session_state_file.exists():
            return None
        try:
            payload = json.loads(self.session_state_file.read_text(encoding="utf-8", errors="replace"))
        except json.JSONDecodeError:
            self._emit_warning(f"warning: malformed session state file: {self.session_state_file}")
            return None
        if not isinstance(payload, dict):
            self._emit_warning(f"warning: malformed session state file: {self.session_state_file}")
            return None
        return payload

    def log(
        self,
        entry_type: str,
        content: dict[str, Any],
        *,
        target: str | None = None,
    ) -> dict[str, Any]:
        """Append one entry to the session log.

        Args:
            entry_type: One of LOG_ENTRY_TYPES.
            content: Entry-specific payload.
            target: Optional peer session the entry concerns.

        Returns:
            The entry as written.
        """
        if entry_type not in LOG_ENTRY_TYPES:
            raise IPCError(f"validation error: unsupported log entry type: {entry_type}")

        entry: dict[str, Any] = {
            "timestamp": _iso_timestamp(self._now()),
            "type": entry_type,
            "session": self.session_name,
            "descriptor": self.descriptor,
        }
        if target:
            entry["target"] = target
        entry["content"] = content

        line = json.dumps(entry, ensure_ascii=False) + "\n"
        with self._lock:
            with self.log_file.open("a", encoding="utf-8") as handle:
                handle.write(line)
        return entry

    def log_session_start(self) -> None:
        """Record session start and register this session as active."""
        self.log("session_start", {"pid": os.getpid(), "cwd": str(Path.cwd())})
        self._register_active()

    def log_session_end(self, reason: str | None = None) -> None:
        """Record session end and remove this session from the active registry."""
        self.log("session_end", {"reason": reason or "normal"})
        self._unregister_active()

    def log_message_sent(self, target: str, message: str, channel: str = "tmux") -> None:
        self.log(
            "message_sent",
            {
                "message": message,
                "protocol": channel,
                "byteLength": len(message.encode("utf-8")),
            },
            target=target,
        )

    def log_message_received(self, source: str, message: str, lines: int | None = None) -> None:
        self.log(
            "message_received",
            {
                "message": message,
                "lines": lines or len(message.split("\n")),
                "byteLength": len(message.encode("utf-8")),
            },
            target=source,
        )

    def log_custom(self, name: str, data: dict[str, Any], target: str | None = None) -> None:
        self.log("custom", {"name": name, **data}, target=target)

    def _register_active(self) -> None:
        path = active_file(self.logs_dir)
        with self._lock:
            entries = [
                item for item in _read_active_list(path) if item.get("session") != self.session_name
            ]
            entries.append(
                {
                    "session": self.session_name,
                    "descriptor": self.descriptor,
                    "startedAt": _iso_timestamp(self._now()),
                    "pid": os.getpid(),
                }
            )
            _write_active_list(path, entries)

    def _unregister_active(self) -> None:
        path = active_file(self.logs_dir)
        with self._lock:
            if not path.exists():
                return
            entries = [
                item for item in _read_active_list(path) if item.get("session") != self.session_name
            ]
            _write_active_list(path, entries)

    @staticmethod
    def active_sessions(logs_dir: Path | None = None) -> list[dict]:
        """Return registered active sessions."""
        return _read_active_list(active_file(logs_dir or default_logs_dir()))

    @staticmethod
    def read_log(descriptor: str, logs_dir: Path | None = None, limit: int | None = None) -> list[dict]:
        """Read entries from one descriptor's log.

        Args:
            descriptor: Session descriptor.
            logs_dir: Log directory; defaults to `./logs`.
            limit: When positive, keep only the last `limit` entries.

        Returns:
            Parsed entries in file order. Malformed lines are skipped.
        """
        path = (logs_dir or default_logs_dir()) / f"{descriptor}.jsonl"
        if not path.exists():
            return []

        entries: list[dict] = []
        with path.open(encoding="utf-8", errors="replace") as handle:
            for raw_line in handle:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                try:
                    payload = json.loads(raw_line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    entries.append(payload)

        if limit and limit > 0:
            return entries[-limit:]
        return entries

    @staticmethod
    def find_descriptor(session_name: str, logs_dir: Path | None = None) -> str | None:
        """Return the descriptor of an active session, if registered."""
        for item in SessionLogger.active_sessions(logs_dir):
            if item.get("session") == session_name:
                descriptor = item.get("descriptor")
                return descriptor if isinstance(descriptor, str) else None
        return None
