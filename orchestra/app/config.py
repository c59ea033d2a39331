"""Application configuration."""

import os
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Mission store
    database_url: str = "sqlite+aiosqlite:///./orchestra.db"
    redis_url: str = "redis://localhost:6379"
    mission_store: Literal["sql", "redis"] = "sql"

    # Mission queue
    max_queue_size: int = 1000
    default_timeout_ms: int = 300_000
    default_max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 60_000
    retry_jitter: float = 0.0  # fraction of the delay, e.g. 0.25 for +/-25%
    cascade_cancel_on_failure: bool = False

    # Worktree isolation
    repo_path: str = "."
    worktree_base_path: str = ".worktrees"
    base_branch: str = "main"
    branch_strategy: Literal["per-agent", "per-task"] = "per-agent"
    conflict_strategy: Literal["abort", "stash", "theirs", "ours"] = "abort"
    # Only covers worktrees no live agent owns; killing an agent always removes its worktree
    cleanup_on_shutdown: bool = True
    auto_merge: bool = False

    # Agent processes (tmux)
    tmux_session_name: str = Field(default_factory=lambda: f"agents-{os.getpid()}")
    pane_cols: int = 120
    pane_rows: int = 30
    shell: str = "/bin/bash"
    agent_command: str = "claude"
    health_check_interval_ms: int = 5000
    auto_restart: bool = True
    settle_delay_ms: int = 2000
    restart_delay_ms: int = 2000
    spawn_stagger_ms: int = 500

    # Orchestrator
    max_agents: int = 5
    driver_poll_interval_ms: int = 1000

    # Logging
    log_level: str = "INFO"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False
    )


# Global settings instance
settings = Settings()
