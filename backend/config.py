"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the agent
proxy backend. All settings can be overridden via environment variables or
a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        agent_command: Executable of the external conversational agent.
        agent_allowed_tools: Comma-separated tool list granted to the agent.
        agent_skip_permissions: If True, the agent runs without interactive
            permission prompts.
        agent_cwd: Working directory for agent processes (None = our cwd).
        agent_timeout_seconds: Hard wall-clock limit for a single agent process.
        agent_kill_grace_seconds: Time a terminated agent gets before SIGKILL.
        first_token_timeout_seconds: Time allowed before the first content chunk.
        inactivity_timeout_seconds: Allowed stall once output has started.
        timeout_check_interval_seconds: Tick used to evaluate request timers.
        max_concurrent: Maximum number of concurrently running agent processes.
        max_queue_depth: Callers allowed to wait for a slot (None = 2x max_concurrent).
        default_model: Agent model family used when a request names none.
        conversation_ttl_hours: Inactivity age after which a conversation is evicted.
        conversation_cleanup_interval_minutes: Interval of the eviction loop.
        database_path: SQLite file backing the conversation store.
        response_time_window: Number of latencies kept for the rolling average.
        agent_check_cache_seconds: How long /health reuses an agent version check.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Agent process
    agent_command: str = "claude"
    agent_allowed_tools: str = "Bash,Read,Write,Edit,Glob,Grep,WebSearch,WebFetch"
    agent_skip_permissions: bool = True
    agent_cwd: str | None = None
    # 15 minutes, enough for long multi-step agent turns
    agent_timeout_seconds: float = 900.0
    agent_kill_grace_seconds: float = 5.0

    # Request timers
    first_token_timeout_seconds: float = 90.0
    inactivity_timeout_seconds: float = 120.0
    timeout_check_interval_seconds: float = 1.0

    # Admission
    max_concurrent: int = 4
    max_queue_depth: int | None = None

    default_model: str = "sonnet"

    # Conversation continuity
    conversation_ttl_hours: float = 72.0
    conversation_cleanup_interval_minutes: float = 360.0
    database_path: str = "./data/conversations.db"

    # Stats
    response_time_window: int = 100
    agent_check_cache_seconds: float = 30.0

    # Server Configuration
    backend_port: int = 3456
    cors_origins: str | list[str] = ["*"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["*"]

    @property
    def effective_queue_depth(self) -> int:
        """Queue ceiling, defaulting to twice the concurrency limit."""
        if self.max_queue_depth is None:
            return self.max_concurrent * 2
        return self.max_queue_depth

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
