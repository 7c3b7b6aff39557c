"""Constants used across agent_ipc modules."""

from pathlib import Path

PROTOCOL_TYPES = (
    "status_update",
    "context_compaction",
    "task_handoff",
    "error_notice",
    "heartbeat",
)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_POLL_SECONDS = 1.0
DEFAULT_CAPTURE_LINES = 50
# floor for the poll interval so capture-pane is not hammered
MIN_POLL_SECONDS = 0.1

DEFAULT_PING_TIMEOUT_SECONDS = 10.0

# substrings shown by an agent TUI while it is still generating output
COMPOSING_MARKERS = ("Wrangling", "Thinking")
# lines starting with this are echoes of the prompt we typed
PROMPT_MARKER = ">"

SUBMIT_KEY = "C-m"
DEFAULT_AGENT_COMMAND = "claude"

# agent, agent-2, agent-dev, agent-tester-2
AGENT_SESSION_RE = r"^agent(-\d+|-[a-z]+(-\d+)?)?$"
AGENT_SESSION_PREFIX = "agent"

LOGS_DIR = Path("logs")
ACTIVE_FILE_NAME = ".active"
SESSION_STATE_PREFIX = ".session-"
HOOK_EVENTS_FILE_NAME = "events.jsonl"

ENV_TIMEOUT_SECONDS = "AGENT_IPC_TIMEOUT_SECONDS"
ENV_POLL_SECONDS = "AGENT_IPC_POLL_SECONDS"
ENV_CAPTURE_LINES = "AGENT_IPC_CAPTURE_LINES"
ENV_COMPOSING_MARKERS = "AGENT_IPC_COMPOSING_MARKERS"
ENV_SUBMIT_DELAY_SECONDS = "AGENT_IPC_SUBMIT_DELAY_SECONDS"
ENV_SUBMIT_KEY = "AGENT_IPC_SUBMIT_KEY"
ENV_AGENT_COMMAND = "AGENT_IPC_AGENT_COMMAND"
ENV_LOGS_DIR = "AGENT_IPC_LOGS_DIR"
ENV_SESSION = "AGENT_IPC_SESSION"
