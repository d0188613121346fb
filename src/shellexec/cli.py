"""Command-line interface for shellexec."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO, cast

from .config import AppConfig
from .coordinator import ExecutionCoordinator
from .models import NEW_SESSION, ExecutionRequest, ExecutionResult

LOGGER = logging.getLogger(__name__)


class CLIArgs(argparse.Namespace):
    command_name: str
    log_level: str
    working_directory: str | None
    security_level: str | None
    command: str
    args: list[str]
    session: str | None
    timeout_ms: int | None
    env: list[str]
    confirm: str | None
    intent: str | None
    json_output: bool


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shellexec",
        description="Policy-checked shell command execution",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity written to stderr.",
    )
    parser.add_argument(
        "--cwd",
        dest="working_directory",
        help=(
            "Override the starting working directory for command execution. "
            "Takes precedence over config/env cwd values."
        ),
    )
    parser.add_argument(
        "--security-level",
        choices=["strict", "moderate", "permissive"],
        help="Override the configured security level.",
    )
    subparsers = parser.add_subparsers(dest="command_name", required=True)

    run = subparsers.add_parser("run", help="Execute a single request and print the result")
    run.add_argument("command", help="Command text to execute")
    run.add_argument("args", nargs=argparse.REMAINDER, help="Arguments appended to the command")
    run.add_argument(
        "--session",
        help=f"Target session id, or '{NEW_SESSION}' to start a session",
    )
    run.add_argument("--timeout-ms", type=int, help="One-shot timeout in milliseconds")
    run.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Environment override (repeatable)",
    )
    run.add_argument("--confirm", help="Confirmation id issued for a previous attempt")
    run.add_argument("--intent", help="Free-form note recorded with the command")
    run.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Print the result as JSON",
    )

    subparsers.add_parser("serve", help="Read JSON requests from stdin, one per line")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    config = AppConfig.from_env()
    if args.security_level:
        config.security_level = args.security_level  # type: ignore[assignment]

    configured_working_directory = (
        args.working_directory if args.working_directory is not None else config.working_directory
    )
    if configured_working_directory is not None:
        resolved_working_directory = Path(configured_working_directory).expanduser().resolve()
        if not resolved_working_directory.exists() or not resolved_working_directory.is_dir():
            print(f"Invalid configured cwd directory: {configured_working_directory}")
            return 1
        config.working_directory = str(resolved_working_directory)

    coordinator = ExecutionCoordinator.from_config(config)
    try:
        if args.command_name == "serve":
            return serve(coordinator, sys.stdin, sys.stdout)
        return _run_once(coordinator, args)
    finally:
        coordinator.shutdown()


def _run_once(coordinator: ExecutionCoordinator, args: CLIArgs) -> int:
    try:
        env = _parse_env(args.env)
    except ValueError as exc:
        print(str(exc))
        return 2

    result = coordinator.execute(
        ExecutionRequest(
            command=args.command,
            args=tuple(args.args),
            env=env or None,
            timeout_ms=args.timeout_ms,
            session_id=args.session,
            intent=args.intent,
            confirmation_id=args.confirm,
        )
    )
    if args.json_output:
        print(json.dumps(result.to_dict()))
    else:
        print(render_result(result))
    return result.exit_code


def serve(coordinator: ExecutionCoordinator, stdin: TextIO, stdout: TextIO) -> int:
    """Answer one JSON object per input line until EOF or a ``shutdown`` op."""
    for raw_line in stdin:
        line = raw_line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            _write(stdout, {"ok": False, "error": f"invalid json: {exc}"})
            continue
        if not isinstance(message, dict):
            _write(stdout, {"ok": False, "error": "request must be a JSON object"})
            continue

        op = message.get("op", "execute")
        if op == "shutdown":
            _write(stdout, {"ok": True, "op": op})
            break
        try:
            payload = _dispatch(coordinator, op, message)
        except (KeyError, TypeError, ValueError) as exc:
            _write(stdout, {"ok": False, "op": op, "error": f"bad request: {exc}"})
            continue
        _write(stdout, {"ok": True, "op": op, "result": payload})
    return 0


def _dispatch(coordinator: ExecutionCoordinator, op: str, message: dict[str, object]) -> object:
    if op == "execute":
        return coordinator.execute(_request_from_message(message)).to_dict()
    if op == "read_session":
        return coordinator.read_session(str(message["session_id"])).to_dict()
    if op == "kill_session":
        return coordinator.kill_session(str(message["session_id"])).to_dict()
    if op == "list_sessions":
        return [info.to_dict() for info in coordinator.list_sessions()]
    if op == "context":
        return coordinator.context().to_dict()
    if op == "history":
        limit = message.get("limit")
        pattern = message.get("filter")
        return [
            entry.to_dict()
            for entry in coordinator.history(
                int(limit) if limit is not None else None,
                str(pattern) if pattern is not None else None,
            )
        ]
    if op == "set_working_directory":
        return {"changed": coordinator.set_working_directory(str(message["path"]))}
    if op == "pending_confirmations":
        return [item.to_dict() for item in coordinator.pending_confirmations()]
    raise ValueError(f"unknown op: {op}")


def _request_from_message(message: dict[str, object]) -> ExecutionRequest:
    command = message["command"]
    if not isinstance(command, str):
        raise TypeError("command must be a string")
    raw_args = message.get("args") or []
    if not isinstance(raw_args, list):
        raise TypeError("args must be a list")
    raw_env = message.get("env")
    if raw_env is not None and not isinstance(raw_env, dict):
        raise TypeError("env must be an object")
    timeout_ms = message.get("timeout_ms")
    return ExecutionRequest(
        command=command,
        args=tuple(str(item) for item in raw_args),
        cwd=_optional_str(message.get("cwd")),
        env={str(key): str(value) for key, value in raw_env.items()} if raw_env else None,
        timeout_ms=int(timeout_ms) if timeout_ms is not None else None,
        session_id=_optional_str(message.get("session_id")),
        intent=_optional_str(message.get("intent")),
        confirmation_id=_optional_str(message.get("confirmation_id")),
    )


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _parse_env(pairs: Sequence[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid --env value (expected KEY=VALUE): {pair}")
        env[key] = value
    return env


def _write(stdout: TextIO, payload: dict[str, object]) -> None:
    stdout.write(json.dumps(payload) + "\n")
    stdout.flush()


def _render_status(result: ExecutionResult) -> str:
    if result.error_kind:
        return result.error_kind.replace("_", " ")
    session_status = result.metadata.get("session_status")
    if isinstance(session_status, str):
        return f"session {session_status}"
    return "ok" if result.success else f"exit {result.exit_code}"


def render_result(result: ExecutionResult) -> str:
    """Render a result as readable sectioned text."""
    lines = [f"=== Result ({_render_status(result)}) ==="]

    if result.command:
        lines.append("[command]")
        lines.append(result.command)

    stdout = result.stdout.rstrip()
    if stdout:
        lines.append("[stdout]")
        lines.append(stdout)

    stderr = result.stderr.rstrip()
    if stderr:
        lines.append("[stderr]")
        lines.append(stderr)

    if result.side_effects:
        lines.append("[side effects]")
        lines.extend(f"- {effect}" for effect in result.side_effects)

    if result.session_id:
        lines.append("[session]")
        lines.append(result.session_id)

    confirmation_id = result.metadata.get("confirmation_id")
    if confirmation_id:
        lines.append("[confirmation]")
        lines.append(f"Re-run with --confirm {confirmation_id} to proceed.")

    lines.append(
        f"exit_code={result.exit_code} risk={result.risk_level} duration={result.duration:.3f}s"
    )
    return "\n".join(lines)


if __name__ == "__main__":
    raise SystemExit(main())
