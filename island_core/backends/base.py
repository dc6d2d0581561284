"""Abstract base class for terminal backend implementations.

Defines the interface the session monitor uses to relay keystrokes into
the terminal that owns a session.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


def normalize_tty(tty: str) -> str:
    """Strip the /dev/ prefix so "/dev/ttys001" and "ttys001" compare equal."""
    tty = tty.strip()
    if tty.startswith("/dev/"):
        return tty[len("/dev/") :]
    return tty


@dataclass(frozen=True)
class PaneInfo:
    """One pane from the multiplexer's live inventory."""

    session_name: str
    window_index: str
    pane_index: str
    tty: str  # Device path as reported by the multiplexer (e.g., /dev/ttys001)


@dataclass(frozen=True)
class TmuxTarget:
    """An addressable pane plus the device it was resolved from.

    Never persisted: panes get renumbered, so resolve again before each send.
    """

    session: str
    window: str
    pane: str
    tty: str | None = None

    @property
    def target_string(self) -> str:
        """The "session:window.pane" form accepted by ``tmux -t``."""
        return f"{self.session}:{self.window}.{self.pane}"

    @classmethod
    def from_target_string(cls, target: str, tty: str | None = None) -> "TmuxTarget | None":
        """Parse "session:window.pane"; returns None for anything else."""
        session, sep, rest = target.rpartition(":")
        if not sep or not session:
            return None
        window, sep, pane = rest.partition(".")
        if not sep or not window or not pane:
            return None
        return cls(session=session, window=window, pane=pane, tty=tty)


class TerminalBackend(ABC):
    """Abstract interface for terminal backends.

    Terminal backends provide the ability to:
    - List the live panes with their devices
    - Resolve a terminal device to a pane
    - Send literal text and Enter to a pane
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend identifier (e.g., 'tmux')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the backend is installed and running."""

    @abstractmethod
    def list_panes(self) -> list[PaneInfo]:
        """List all live panes.

        Returns:
            List of PaneInfo, empty if the backend is unavailable.
        """

    @abstractmethod
    def send_literal(self, target: TmuxTarget, text: str) -> bool:
        """Type text into a pane without interpreting key names.

        Returns:
            True if the command succeeded.
        """

    @abstractmethod
    def send_enter(self, target: TmuxTarget) -> bool:
        """Press Enter in a pane.

        Returns:
            True if the command succeeded.
        """

    def find_target(self, tty: str) -> TmuxTarget | None:
        """Resolve a terminal device to the pane that currently owns it.

        Args:
            tty: Device path, with or without the /dev/ prefix.

        Returns:
            The TmuxTarget, or None if no live pane owns the device. None
            means "cannot deliver input right now", not an error.
        """
        wanted = normalize_tty(tty)
        if not wanted:
            return None
        for pane in self.list_panes():
            if normalize_tty(pane.tty) == wanted:
                return TmuxTarget(
                    session=pane.session_name,
                    window=pane.window_index,
                    pane=pane.pane_index,
                    tty=pane.tty,
                )
        return None

    def send_message(self, target: TmuxTarget, text: str) -> bool:
        """Type a message into a pane and submit it with Enter."""
        if not self.send_literal(target, text):
            return False
        return self.send_enter(target)
