# -----------------------------------------------------------------------------
# THE HANDSHAKE - STDIO SMOKE TEST
# -----------------------------------------------------------------------------
# Responsibility: Prove each configured server speaks MCP over stdio.
#
# Three JSON-RPC 2.0 lines are written to the server's stdin:
#   1. initialize               (id 1)
#   2. notifications/initialized
#   3. tools/list               (id 2)
# stdin is then closed and output is collected until exit or timeout.
#
# Verdict: PASS only if stdout holds a JSON-RPC result for id 2.
# A failed handshake is recorded, never raised: the config is already
# committed by the time validation runs.
# -----------------------------------------------------------------------------

import json
import os
from dataclasses import dataclass

from rich.console import Console

from mcpstack import __version__
from mcpstack.domain.models import ServerDefinition, ValidationOutcome
from mcpstack.infra.process_client import run_bounded

console = Console()

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "mcpstack"
INITIALIZE_ID = 1
TOOLS_LIST_ID = 2

# Bytes of stderr kept in the log
STDERR_TAIL_CHARS = 500


def build_handshake(client_version: str = __version__) -> bytes:
    """The three newline-terminated handshake messages."""
    messages = [
        {
            "jsonrpc": "2.0",
            "id": INITIALIZE_ID,
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": CLIENT_NAME, "version": client_version},
            },
        },
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        {"jsonrpc": "2.0", "id": TOOLS_LIST_ID, "method": "tools/list", "params": {}},
    ]
    return "".join(json.dumps(m, separators=(",", ":")) + "\n" for m in messages).encode("utf-8")


@dataclass
class HandshakeVerdict:
    """Parsed view of a server's stdout."""

    passed: bool
    tool_count: int | None = None
    reason: str | None = None


def parse_tools_list_response(stdout: str) -> HandshakeVerdict:
    """
    Look for the tools/list result among newline-delimited JSON messages.

    Non-JSON lines (banners, logs) are ignored.
    """
    if not stdout.strip():
        return HandshakeVerdict(passed=False, reason="no output")

    parsed_any = False
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(message, dict):
            continue
        parsed_any = True

        if message.get("jsonrpc") != "2.0":
            continue
        msg_id = message.get("id")
        if type(msg_id) is not int or msg_id != TOOLS_LIST_ID:
            continue

        if "result" in message:
            result = message["result"]
            tools = result.get("tools") if isinstance(result, dict) else None
            return HandshakeVerdict(
                passed=True, tool_count=len(tools) if isinstance(tools, list) else None
            )
        if "error" in message:
            error = message["error"]
            detail = error.get("message") if isinstance(error, dict) else error
            return HandshakeVerdict(passed=False, reason=f"tools/list error: {detail}")

    if not parsed_any:
        return HandshakeVerdict(passed=False, reason="malformed output (no JSON-RPC messages)")
    return HandshakeVerdict(passed=False, reason="no tools/list result")


class HandshakeValidator:
    """
    Runs the stdio handshake against servers one at a time.
    """

    def __init__(self, timeout: float = 15.0) -> None:
        self._timeout = timeout
        self._payload = build_handshake()

    def validate(self, name: str, definition: ServerDefinition) -> ValidationOutcome:
        """Handshake a single server. Never raises for server misbehaviour."""
        console.print(f"[cyan][HANDSHAKE] {name}: spawning (timeout {self._timeout}s)[/cyan]")
        env = os.environ.copy()
        env.update(definition.env or {})

        try:
            result = run_bounded(
                definition.command,
                definition.args,
                input_bytes=self._payload,
                timeout=self._timeout,
                env=env,
            )
        except OSError as e:
            console.print(f"[red][HANDSHAKE] {name}: cannot spawn: {e}[/red]")
            return ValidationOutcome(name=name, passed=False, reason=f"spawn failed: {e}")

        verdict = parse_tools_list_response(result.stdout_text())
        reason = verdict.reason
        if not verdict.passed and result.timed_out:
            reason = f"timed out after {self._timeout}s ({verdict.reason})"

        outcome = ValidationOutcome(
            name=name,
            passed=verdict.passed,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            tool_count=verdict.tool_count,
            reason=reason,
            stderr_tail=result.stderr_text()[-STDERR_TAIL_CHARS:] or None,
            duration_seconds=round(result.duration_seconds, 3),
        )

        if outcome.passed:
            tools = f"{outcome.tool_count} tools" if outcome.tool_count is not None else "ok"
            console.print(f"[green][HANDSHAKE] {name}: PASS ({tools})[/green]")
        else:
            console.print(f"[red][HANDSHAKE] {name}: FAIL ({outcome.reason})[/red]")
        return outcome

    def validate_all(self, servers: dict[str, ServerDefinition]) -> list[ValidationOutcome]:
        return [self.validate(name, definition) for name, definition in servers.items()]
