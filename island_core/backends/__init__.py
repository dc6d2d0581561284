"""Terminal backend implementations."""

from island_core.backends.base import PaneInfo, TerminalBackend, TmuxTarget, normalize_tty
from island_core.backends.tmux import TmuxBackend, get_tmux_backend, reset_tmux_backend

__all__ = [
    "PaneInfo",
    "TerminalBackend",
    "TmuxBackend",
    "TmuxTarget",
    "get_tmux_backend",
    "normalize_tty",
    "reset_tmux_backend",
]
