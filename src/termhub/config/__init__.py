"""Configuration — Pydantic models for termhub settings."""

from __future__ import annotations

import os
import shlex
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """HTTP / WebSocket listener settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)


class SessionConfig(BaseModel):
    """Persistent shell session settings.

    ``startup_command`` is typed into every new shell once the prompt has had
    ``startup_delay`` seconds to initialize. Set it to an empty string to get
    a plain shell.
    """

    workspace: str = Field(
        default="/workspace",
        description="Root directory; session working directories must lie inside it",
    )
    shell: list[str] = Field(default_factory=lambda: ["/bin/bash"])
    startup_command: str = Field(default="claude")
    startup_delay: float = Field(default=0.3)
    cols: int = Field(default=120)
    rows: int = Field(default=40)
    scrollback_bytes: int = Field(
        default=200_000, description="Per-session scrollback budget in bytes"
    )
    idle_timeout: float = Field(
        default=0,
        description="Seconds without input/output before a session is reaped (0 disables)",
    )
    reap_interval: float = Field(default=60.0, description="Seconds between sweeps")


class QueryConfig(BaseModel):
    """One-shot query subprocess settings.

    The command must print one JSON record per line on stdout. ``--resume
    <token>`` and the prompt are appended per request.
    """

    command: list[str] = Field(
        default_factory=lambda: [
            "claude",
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
        ]
    )
    resume_flag: str = Field(default="--resume")


class ClientConfig(BaseModel):
    """Settings for the CLI client (attach / ask)."""

    server_url: str = Field(default="http://localhost:3000")
    base_delay: float = Field(default=1.0)
    growth_factor: float = Field(default=1.5)
    cap_delay: float = Field(default=10.0)
    max_attempts: int = Field(default=20)


class TermhubConfig(BaseModel):
    """Top-level termhub configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> TermhubConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            PORT                       - Listen port
            TERMHUB_HOST               - Listen address
            WORKSPACE                  - Workspace root for session directories
            TERMHUB_SHELL              - Shell command line (e.g. "/bin/zsh -l")
            TERMHUB_STARTUP_COMMAND    - Command typed into new shells ("" disables)
            TERMHUB_SCROLLBACK_BYTES   - Scrollback budget per session
            TERMHUB_IDLE_TIMEOUT       - Idle seconds before reaping (0 disables)
            TERMHUB_REAP_INTERVAL      - Seconds between reaper sweeps
            TERMHUB_QUERY_COMMAND      - Query subprocess command line
            TERMHUB_SERVER_URL         - Server URL used by the CLI client
        """
        # Load .env file if present.
        load_dotenv(find_dotenv(usecwd=True))

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            import json

            with open(config_path) as f:
                config_data = json.load(f)

        server = config_data.get("server", {})
        sessions = config_data.get("sessions", {})
        query = config_data.get("query", {})
        client = config_data.get("client", {})

        env_port = os.environ.get("PORT")
        if env_port:
            server["port"] = int(env_port)

        env_host = os.environ.get("TERMHUB_HOST")
        if env_host:
            server["host"] = env_host

        env_workspace = os.environ.get("WORKSPACE")
        if env_workspace:
            sessions["workspace"] = env_workspace

        env_shell = os.environ.get("TERMHUB_SHELL")
        if env_shell:
            sessions["shell"] = shlex.split(env_shell)

        # Empty string is meaningful here: it disables the startup command.
        env_startup = os.environ.get("TERMHUB_STARTUP_COMMAND")
        if env_startup is not None:
            sessions["startup_command"] = env_startup

        env_scrollback = os.environ.get("TERMHUB_SCROLLBACK_BYTES")
        if env_scrollback:
            sessions["scrollback_bytes"] = int(env_scrollback)

        env_idle = os.environ.get("TERMHUB_IDLE_TIMEOUT")
        if env_idle:
            sessions["idle_timeout"] = float(env_idle)

        env_interval = os.environ.get("TERMHUB_REAP_INTERVAL")
        if env_interval:
            sessions["reap_interval"] = float(env_interval)

        env_query = os.environ.get("TERMHUB_QUERY_COMMAND")
        if env_query:
            query["command"] = shlex.split(env_query)

        env_url = os.environ.get("TERMHUB_SERVER_URL")
        if env_url:
            client["server_url"] = env_url

        for key, section in (
            ("server", server),
            ("sessions", sessions),
            ("query", query),
            ("client", client),
        ):
            if section:
                config_data[key] = section

        return cls.model_validate(config_data)
