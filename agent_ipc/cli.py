"""agent-ipc command-line entrypoint."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Callable, TextIO

from .constants import DEFAULT_PING_TIMEOUT_SECONDS, ENV_LOGS_DIR
from .errors import IPCError
from .exchange import AgentIPC, ExchangeConfig
from .protocol import extract_all, message_to_dict
from .session_log import SessionLogger
from .tmux_ops import ensure_dependencies


def _milliseconds(value: str) -> float:
    """argparse type: positive milliseconds, returned as seconds."""
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected milliseconds, got {value!r}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("milliseconds must be positive")
    return parsed / 1000


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("value must be positive")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser.

    Returns:
        Configured parser.
    """
    parser = argparse.ArgumentParser(
        prog="agent-ipc",
        description="message agent sessions running in tmux",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("list", aliases=["ls"], help="list agent sessions")

    send = commands.add_parser("send", help="send a message to a session")
    send.add_argument("target")
    send.add_argument("message", nargs="+")

    read = commands.add_parser("read", help="print a session's recent output")
    read.add_argument("target")
    read.add_argument("-n", "--lines", type=_positive_int, default=None)

    ask = commands.add_parser("ask", help="send a message and wait for the reply")
    ask.add_argument("target")
    ask.add_argument("message", nargs="+")
    ask.add_argument("-t", "--timeout", type=_milliseconds, default=None, help="timeout in ms")
    ask.add_argument("-p", "--poll", type=_milliseconds, default=None, help="poll interval in ms")

    broadcast = commands.add_parser("broadcast", help="send a message to every other session")
    broadcast.add_argument("message", nargs="+")

    commands.add_parser("create", help="create the next agent-<n> session")

    kill = commands.add_parser("kill", help="kill one session")
    kill.add_argument("target")

    commands.add_parser("kill-others", help="kill every agent session except this one")
    commands.add_parser("kill-all", help="kill every agent session")
    commands.add_parser("current", help="print this session's name")
    commands.add_parser("status", help="list sessions with their log descriptors")

    ping = commands.add_parser("ping", help="check whether a session answers a heartbeat")
    ping.add_argument("target")
    ping.add_argument(
        "-t",
        "--timeout",
        type=_milliseconds,
        default=DEFAULT_PING_TIMEOUT_SECONDS,
        help="timeout in ms",
    )

    parse = commands.add_parser("parse", help="decode protocol messages from stdin or a file")
    parse.add_argument("-f", "--file", type=Path, default=None)

    return parser


def _tmux_ipc(config: ExchangeConfig) -> AgentIPC:
    ensure_dependencies()
    return AgentIPC(config=config, logging_enabled=False)


class IPCApplication:
    """Dispatches parsed commands to a stateless AgentIPC instance."""

    def __init__(
        self,
        ipc_factory: Callable[[ExchangeConfig], AgentIPC] | None = None,
        *,
        stdin: TextIO | None = None,
    ) -> None:
        """Initialize application.

        Args:
            ipc_factory: Builds the coordinator; defaults to a tmux-backed
                AgentIPC with logging disabled.
            stdin: Input stream for `parse`; defaults to sys.stdin.
        """
        self._ipc_factory = ipc_factory or _tmux_ipc
        self._stdin = stdin

    def run(self, argv: list[str]) -> int:
        """Run one command.

        Args:
            argv: CLI args excluding program name.

        Returns:
            Exit status code.
        """
        args = build_parser().parse_args(argv)
        command = "list" if args.command == "ls" else args.command
        handler = getattr(self, "_cmd_" + command.replace("-", "_"))

        try:
            if command == "parse":
                return handler(args)
            ipc = self._ipc_factory(ExchangeConfig.from_env())
            return handler(ipc, args)
        except IPCError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        except ValueError as exc:
            print(f"validation error: {exc}", file=sys.stderr)
            return 1

    def _cmd_list(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        sessions = ipc.list_sessions()
        if not sessions:
            print("no agent sessions found")
            return 0
        for session in sessions:
            flags = []
            if session.attached:
                flags.append("attached")
            if session.name == ipc.session:
                flags.append("current")
            suffix = f"  ({', '.join(flags)})" if flags else ""
            print(f"{session.name}  windows={session.windows}{suffix}")
        return 0

    def _cmd_send(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        result = ipc.send(args.target, " ".join(args.message))
        if not result.success:
            print(f"error: {result.message}", file=sys.stderr)
            return 1
        print(f"[sent] -> {args.target}")
        return 0

    def _cmd_read(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        output = ipc.read(args.target, args.lines)
        if output is None:
            print(f"error: session '{args.target}' not found", file=sys.stderr)
            return 1
        print(output)
        return 0

    def _cmd_ask(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        response = ipc.send_and_wait(
            args.target,
            " ".join(args.message),
            timeout_seconds=args.timeout,
            poll_seconds=args.poll,
        )
        print(response)
        return 0

    def _cmd_broadcast(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        results = ipc.broadcast(" ".join(args.message))
        if not results:
            print("no other agent sessions to broadcast to")
            return 0
        failed = 0
        for name, result in results.items():
            if result.success:
                print(f"[sent] -> {name}")
            else:
                failed += 1
                print(f"[failed] -> {name}: {result.message}", file=sys.stderr)
        return 1 if failed else 0

    def _cmd_create(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        print(f"created {ipc.create_session()}")
        return 0

    def _cmd_kill(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        if not ipc.kill_session(args.target):
            print(f"error: failed to kill session '{args.target}'", file=sys.stderr)
            return 1
        print(f"killed {args.target}")
        return 0

    def _cmd_kill_others(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        print(f"killed {ipc.kill_others()} sessions")
        return 0

    def _cmd_kill_all(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        print(f"killed {ipc.kill_all()} sessions")
        return 0

    def _cmd_current(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        print(ipc.session)
        return 0

    def _cmd_status(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        sessions = ipc.list_sessions()
        if not sessions:
            print("no agent sessions found")
            return 0

        env_logs_dir = os.environ.get(ENV_LOGS_DIR)
        active = {
            item.get("session"): item
            for item in SessionLogger.active_sessions(Path(env_logs_dir) if env_logs_dir else None)
        }
        for session in sessions:
            info = active.get(session.name, {})
            descriptor = info.get("descriptor") or "no-descriptor"
            attached = "attached" if session.attached else "detached"
            line = f"{session.name}  descriptor={descriptor}  windows={session.windows}  {attached}"
            if session.name == ipc.session:
                line += "  current"
            if info.get("startedAt"):
                line += f"  started={info['startedAt']}"
            print(line)
        return 0

    def _cmd_ping(self, ipc: AgentIPC, args: argparse.Namespace) -> int:
        print(f"pinging {args.target}...")
        latency = ipc.ping(args.target, timeout_seconds=args.timeout)
        print(f"{args.target} is responsive ({latency * 1000:.0f}ms)")
        return 0

    def _cmd_parse(self, args: argparse.Namespace) -> int:
        if args.file is not None:
            try:
                text = args.file.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                raise IPCError(f"cannot read {args.file}: {exc.strerror}") from exc
        else:
            text = (self._stdin or sys.stdin).read()

        messages = list(extract_all(text))
        if not messages:
            print("no protocol messages found")
            return 0
        for message in messages:
            print(json.dumps(message_to_dict(message), ensure_ascii=False, indent=2))
        return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint.

    Args:
        argv: Optional argv vector.

    Returns:
        Exit status code.
    """
    application = IPCApplication()
    return application.run(argv if argv is not None else sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
