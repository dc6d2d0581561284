"""Application configuration models with Pydantic validation."""

from pydantic import BaseModel, Field


class InterruptWatcherConfig(BaseModel):
    """Transcript interrupt watcher configuration.

    The watcher tails each processing session's transcript to catch
    interrupts that never reach the hooks.
    """

    enabled: bool = Field(
        default=True,
        description="Whether transcripts are watched for interrupts",
    )
    poll_interval: float = Field(
        default=0.5,
        gt=0,
        le=10,
        description="Fallback polling interval in seconds between file checks",
    )
    claude_projects_dir: str = Field(
        default="~/.claude/projects",
        description="Directory holding per-project transcript folders",
    )


class TmuxConfig(BaseModel):
    """tmux integration used to relay keystrokes to a session's terminal."""

    path: str | None = Field(
        default=None,
        description="Explicit tmux binary (defaults to the one on PATH)",
    )
    command_timeout: int = Field(
        default=10,
        ge=1,
        le=60,
        description="Timeout in seconds for a single tmux command",
    )
    approve_all_key: str = Field(
        default="4",
        min_length=1,
        description="Menu key of the terminal prompt's 'allow all edits' option",
    )


class AppConfig(BaseModel):
    """Root application configuration.

    Loaded from config.yaml and validated with Pydantic.
    """

    socket_path: str = Field(
        default="/tmp/claude-island.sock",
        description="Unix socket hook scripts connect to",
    )
    permission_timeout: float | None = Field(
        default=300,
        gt=0,
        description="Seconds before an unanswered approval times out (null disables)",
    )
    max_message_bytes: int = Field(
        default=1024 * 1024,
        ge=1024,
        le=16 * 1024 * 1024,
        description="Maximum size of a single hook message",
    )
    read_timeout: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Seconds allowed for a hook script to send its message",
    )
    interrupt_watcher: InterruptWatcherConfig = Field(
        default_factory=InterruptWatcherConfig,
        description="Transcript interrupt watcher settings",
    )
    tmux: TmuxConfig = Field(
        default_factory=TmuxConfig,
        description="tmux integration settings",
    )
    event_buffer_size: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Number of recent snapshots replayed to new SSE clients",
    )
    host: str = Field(
        default="127.0.0.1",
        description="Interface for the HTTP command/snapshot API",
    )
    port: int = Field(
        default=5050,
        ge=1024,
        le=65535,
        description="Port for the Flask server",
    )
    debug: bool = Field(
        default=False,
        description="Enable Flask debug mode",
    )
