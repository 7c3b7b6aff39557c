"""Message agent sessions running in tmux by typing into and reading their panes."""

from .errors import ExchangeTimeoutError, IPCError, SessionNotFoundError, TransmitError
from .exchange import AgentIPC, ExchangeConfig, SendResult, SessionChannel, extract_new_content
from .protocol import (
    ContextCompaction,
    ErrorNotice,
    Heartbeat,
    ProtocolMessage,
    StatusUpdate,
    TaskHandoff,
    decode,
    encode,
    extract_all,
    is_message,
)
from .session_log import SessionLogger

__all__ = [
    "AgentIPC",
    "ContextCompaction",
    "ErrorNotice",
    "ExchangeConfig",
    "ExchangeTimeoutError",
    "Heartbeat",
    "IPCError",
    "ProtocolMessage",
    "SendResult",
    "SessionChannel",
    "SessionLogger",
    "SessionNotFoundError",
    "StatusUpdate",
    "TaskHandoff",
    "TransmitError",
    "decode",
    "encode",
    "extract_all",
    "extract_new_content",
    "is_message",
]
