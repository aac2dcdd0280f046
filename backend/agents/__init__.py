"""Agent process supervision, prompt construction and model resolution.

This module exports the key components needed to run the external agent:
- Model catalog and model-name resolution
- Prompt formatting for full and incremental replay
- The process supervisor and the agent availability check
"""

from agents.catalog import AVAILABLE_MODELS, ModelEntry, resolve_model
from agents.prompts import (
    derive_conversation_id,
    extract_incremental_prompt,
    extract_system_prompt,
    extract_text,
    format_message,
    messages_to_prompt,
)
from agents.supervisor import (
    AgentNotFoundError,
    AgentProcess,
    AgentRunOptions,
    AgentSpawnError,
    AgentVersion,
    build_args,
    get_active_process_count,
    verify_agent,
)

__all__ = [
    # Catalog
    "AVAILABLE_MODELS",
    "ModelEntry",
    "resolve_model",
    # Prompts
    "derive_conversation_id",
    "extract_incremental_prompt",
    "extract_system_prompt",
    "extract_text",
    "format_message",
    "messages_to_prompt",
    # Supervisor
    "AgentNotFoundError",
    "AgentProcess",
    "AgentRunOptions",
    "AgentSpawnError",
    "AgentVersion",
    "build_args",
    "get_active_process_count",
    "verify_agent",
]
