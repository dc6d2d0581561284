"""Hook client - forwards coding-assistant hook payloads to Claude Island.

Installed as the ``claude-island-hook`` console script and registered as
the command for every hook event. It reads the hook payload from stdin,
sends it to the Unix socket and, for permission requests, waits for the
decision and prints it in the assistant's hook output format.

If the socket is unreachable the script exits 0 without output, so the
assistant falls back to its own terminal prompt.
"""

import argparse
import json
import logging
import os
import socket
import subprocess
import sys
from typing import Any

from island_core.models.hook_event import HookEventKind, normalize_event_kind
from island_core.services.config_service import SOCKET_PATH_ENV

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/claude-island.sock"

# Payload fields forwarded verbatim
FORWARDED_FIELDS = (
    "session_id",
    "cwd",
    "transcript_path",
    "tool_use_id",
    "tool_name",
    "tool_input",
    "tool_response",
    "prompt",
    "message",
)


def get_pid_tty(pid: int) -> str | None:
    """Get the controlling terminal of a process.

    Args:
        pid: Process ID to look up.

    Returns:
        Device path (e.g., "/dev/ttys012"), or None if the process has no terminal.
    """
    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "tty="],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Failed to get TTY for PID {pid}: {e}")
        return None

    tty = result.stdout.strip() if result.returncode == 0 else ""
    if not tty or tty in ("?", "??"):
        return None
    return tty if tty.startswith("/dev/") else f"/dev/{tty}"


def build_message(payload: dict[str, Any], pid: int | None = None, tty: str | None = None) -> dict:
    """Map a native hook payload to the socket wire format.

    Args:
        payload: The JSON object the assistant wrote to stdin.
        pid: Assistant process id (the hook's parent).
        tty: Controlling terminal of the assistant.

    Returns:
        The wire message.
    """
    native_name = payload.get("hook_event_name") or payload.get("event") or ""
    message: dict[str, Any] = {"event_kind": normalize_event_kind(native_name)}
    for field in FORWARDED_FIELDS:
        if payload.get(field) is not None:
            message[field] = payload[field]

    if message["event_kind"] == HookEventKind.SESSION_END.value:
        message["status"] = "ended"
    if pid is not None:
        message["pid"] = pid
    if tty:
        message["tty"] = tty
    return message


def expects_decision(message: dict) -> bool:
    """Whether the server will hold the connection until a decision."""
    return message.get("event_kind") == HookEventKind.PERMISSION_REQUEST.value


def send_event(
    message: dict, socket_path: str, wait: bool, timeout: float | None = 5.0
) -> dict | None:
    """Send one message and read the reply.

    The write side stays open until the reply arrives: closing it would
    look like a dead client to the server.

    Args:
        message: Wire message.
        socket_path: Server socket.
        wait: Whether to block (without timeout) for a decision.
        timeout: Socket timeout for non-blocking events.

    Returns:
        The decoded reply, or None if the server closed without one.

    Raises:
        OSError: The socket is unreachable or the connection broke.
    """
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        sock.connect(socket_path)
        sock.sendall(json.dumps(message).encode("utf-8") + b"\n")
        if wait:
            sock.settimeout(None)

        buffer = b""
        while b"\n" not in buffer:
            chunk = sock.recv(65536)
            if not chunk:
                break
            buffer += chunk

    line = buffer.split(b"\n", 1)[0].strip()
    if not line:
        return None
    return json.loads(line)


def format_permission_output(reply: dict | None) -> dict | None:
    """Convert the server reply into the assistant's PermissionRequest output.

    Returns:
        The hook output object, or None to let the assistant show its own prompt.
    """
    if not reply:
        return None

    decision = reply.get("decision")
    reason = reply.get("reason")
    if decision == "allow":
        verdict: dict[str, Any] = {"behavior": "allow"}
    elif decision == "deny":
        verdict = {"behavior": "deny", "message": reason or "Denied by user via Claude Island"}
    elif decision == "deny_with_instructions":
        verdict = {
            "behavior": "deny",
            "message": reason or "Denied by user via Claude Island",
            "interrupt": False,
        }
    else:
        return None

    return {
        "hookSpecificOutput": {
            "hookEventName": "PermissionRequest",
            "decision": verdict,
        }
    }


def run(stdin_text: str, socket_path: str, pid: int | None, tty: str | None) -> dict | None:
    """Forward one hook payload.

    Returns:
        The hook output to print, if any.
    """
    try:
        payload = json.loads(stdin_text)
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid hook payload: {e}")
        return None
    if not isinstance(payload, dict):
        return None

    message = build_message(payload, pid=pid, tty=tty)
    wait = expects_decision(message)
    try:
        reply = send_event(message, socket_path, wait=wait)
    except (OSError, ValueError) as e:
        logger.debug(f"Claude Island not reachable at {socket_path}: {e}")
        return None

    if wait:
        return format_permission_output(reply)
    return None


def main(argv: list[str] | None = None) -> int:
    """Console script entry point."""
    parser = argparse.ArgumentParser(description="Forward a hook payload to Claude Island")
    parser.add_argument(
        "--socket",
        default=os.environ.get(SOCKET_PATH_ENV, DEFAULT_SOCKET_PATH),
        help="Path of the Claude Island socket",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log to stderr")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(name)s - %(levelname)s - %(message)s",
    )

    ppid = os.getppid()
    output = run(sys.stdin.read(), args.socket, pid=ppid, tty=get_pid_tty(ppid))
    if output is not None:
        print(json.dumps(output))
    return 0


if __name__ == "__main__":
    sys.exit(main())
