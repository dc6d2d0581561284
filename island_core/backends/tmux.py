"""tmux terminal backend.

Resolves a session's controlling terminal to a tmux pane and relays
keystrokes into it.
"""

import logging
import shutil
import subprocess

from island_core.backends.base import PaneInfo, TerminalBackend, TmuxTarget

logger = logging.getLogger(__name__)

PANE_FORMAT = "#{session_name}:#{window_index}.#{pane_index} #{pane_tty}"


def _run_tmux(tmux_path: str, *args: str, timeout: int = 10) -> tuple[int, str, str]:
    """Run a tmux command.

    Args:
        tmux_path: Path to the tmux binary.
        *args: Command arguments to pass to tmux.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).
    """
    cmd = [tmux_path, *args]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return (result.returncode, result.stdout or "", result.stderr or "")
    except subprocess.TimeoutExpired:
        return (1, "", "Command timed out")
    except FileNotFoundError:
        return (1, "", "tmux not found")


def parse_pane_line(line: str) -> PaneInfo | None:
    """Parse one ``list-panes`` line in PANE_FORMAT."""
    # Session names may contain spaces; the tty never does
    target, _, tty = line.strip().rpartition(" ")
    parsed = TmuxTarget.from_target_string(target)
    if parsed is None or not tty:
        return None
    return PaneInfo(
        session_name=parsed.session,
        window_index=parsed.window,
        pane_index=parsed.pane,
        tty=tty.strip(),
    )


class TmuxBackend(TerminalBackend):
    """tmux-based terminal backend.

    The pane inventory is queried fresh on every lookup; only the binary
    location is cached.
    """

    def __init__(self, tmux_path: str | None = None, command_timeout: int = 10):
        """Initialize the backend.

        Args:
            tmux_path: Explicit tmux binary (looked up on PATH if omitted).
            command_timeout: Timeout for each tmux invocation in seconds.
        """
        self._configured_path = tmux_path
        self._resolved_path: str | None = None
        self._command_timeout = command_timeout

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return "tmux"

    @property
    def tmux_path(self) -> str | None:
        """Location of the tmux binary, or None if it isn't installed."""
        if self._resolved_path is None:
            self._resolved_path = self._configured_path or shutil.which("tmux")
        return self._resolved_path

    def _run(self, *args: str) -> tuple[int, str, str]:
        path = self.tmux_path
        if path is None:
            return (1, "", "tmux not found")
        return _run_tmux(path, *args, timeout=self._command_timeout)

    def is_available(self) -> bool:
        """Check if tmux is installed and a server is running.

        Returns:
            True if tmux is available, False otherwise.
        """
        if self.tmux_path is None:
            return False
        returncode, _, _ = self._run("list-sessions")
        return returncode == 0

    def list_panes(self) -> list[PaneInfo]:
        """List all panes across all tmux sessions.

        Returns:
            List of PaneInfo, empty if tmux is missing or not running.
        """
        returncode, stdout, stderr = self._run("list-panes", "-a", "-F", PANE_FORMAT)
        if returncode != 0:
            logger.debug(f"[tmux] list-panes failed: {stderr.strip()}")
            return []

        panes = []
        for line in stdout.split("\n"):
            if not line.strip():
                continue
            pane = parse_pane_line(line)
            if pane is not None:
                panes.append(pane)
        return panes

    def send_literal(self, target: TmuxTarget, text: str) -> bool:
        """Send text with ``send-keys -l`` so key names aren't interpreted."""
        returncode, _, stderr = self._run("send-keys", "-t", target.target_string, "-l", text)
        if returncode != 0:
            logger.warning(f"[tmux] send-keys to {target.target_string} failed: {stderr.strip()}")
        return returncode == 0

    def send_enter(self, target: TmuxTarget) -> bool:
        """Press Enter in the pane."""
        returncode, _, stderr = self._run("send-keys", "-t", target.target_string, "Enter")
        if returncode != 0:
            logger.warning(f"[tmux] Enter to {target.target_string} failed: {stderr.strip()}")
        return returncode == 0


# Singleton instance
_backend_instance: TmuxBackend | None = None


def get_tmux_backend(tmux_path: str | None = None, command_timeout: int = 10) -> TmuxBackend:
    """Get the singleton tmux backend instance.

    Arguments are only used on first call.
    """
    global _backend_instance
    if _backend_instance is None:
        _backend_instance = TmuxBackend(tmux_path=tmux_path, command_timeout=command_timeout)
    return _backend_instance


def reset_tmux_backend() -> None:
    """Reset the singleton instance (for testing)."""
    global _backend_instance
    _backend_instance = None
