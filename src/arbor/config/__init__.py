"""Configuration: Pydantic models for arbor supervisor settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


class PumpConfig(BaseModel):
    """Output pump tuning."""

    read_size: int = Field(default=4096, description="Bytes requested per read")
    ready_threshold: int = Field(
        default=50,
        description=(
            "Cumulative output bytes after which a one-shot 'pty-ready' event "
            "fires. A heuristic for 'the program printed its first prompt'; "
            "it does not reliably detect a prompt for every program."
        ),
    )
    max_empty_reads: int = Field(
        default=10, description="Consecutive zero-byte reads before assuming EOF"
    )
    empty_read_sleep: float = Field(
        default=0.01, description="Sleep between empty / would-block reads (seconds)"
    )


class ShutdownConfig(BaseModel):
    """Grace windows between signal tiers during shutdown_all()."""

    hup_grace: float = Field(default=0.5, description="Wait after SIGHUP (seconds)")
    term_grace: float = Field(default=0.5, description="Wait after SIGTERM (seconds)")


class WatcherConfig(BaseModel):
    """Watcher tick and debounce intervals (seconds)."""

    tick: float = Field(default=0.1, description="Poll tick; also the cancel latency")
    file_debounce: float = Field(default=0.5)
    existence_interval: float = Field(
        default=2.0, description="How often a file watcher checks its root still exists"
    )
    state_poll: float = Field(
        default=0.5, description="Poll interval for merge/rebase marker checks"
    )
    config_debounce: float = Field(default=0.3)


class ShellConfig(BaseModel):
    """Login-shell discovery."""

    login_timeout: float = Field(
        default=5.0, description="Timeout for the `$SHELL -l -c 'printenv PATH'` probe"
    )


class SupervisorConfig(BaseModel):
    """Top-level arbor configuration."""

    pump: PumpConfig = Field(default_factory=PumpConfig)
    shutdown: ShutdownConfig = Field(default_factory=ShutdownConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    shell: ShellConfig = Field(default_factory=ShellConfig)
    pid_file: str | None = Field(
        default=None,
        description="Where the crash-recovery pid list is persisted (None = memory only)",
    )

    @classmethod
    def load(cls, config_path: str | None = None) -> SupervisorConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            ARBOR_READY_THRESHOLD  - Output bytes before 'pty-ready' fires
            ARBOR_HUP_GRACE        - Seconds to wait after SIGHUP on shutdown
            ARBOR_TERM_GRACE       - Seconds to wait after SIGTERM on shutdown
            ARBOR_WATCH_TICK       - Watcher poll tick in seconds
            ARBOR_PID_FILE         - Crash-recovery pid file path
        """
        load_dotenv(find_dotenv(usecwd=True), override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        pump = config_data.get("pump", {})
        shutdown = config_data.get("shutdown", {})
        watcher = config_data.get("watcher", {})

        env_ready = os.environ.get("ARBOR_READY_THRESHOLD")
        if env_ready:
            pump["ready_threshold"] = int(env_ready)

        env_hup = os.environ.get("ARBOR_HUP_GRACE")
        if env_hup:
            shutdown["hup_grace"] = float(env_hup)

        env_term = os.environ.get("ARBOR_TERM_GRACE")
        if env_term:
            shutdown["term_grace"] = float(env_term)

        env_tick = os.environ.get("ARBOR_WATCH_TICK")
        if env_tick:
            watcher["tick"] = float(env_tick)

        env_pid_file = os.environ.get("ARBOR_PID_FILE")
        if env_pid_file:
            config_data["pid_file"] = os.path.expanduser(env_pid_file)

        if pump:
            config_data["pump"] = pump
        if shutdown:
            config_data["shutdown"] = shutdown
        if watcher:
            config_data["watcher"] = watcher

        return cls.model_validate(config_data)
