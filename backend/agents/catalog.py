"""Static model catalog and model-name resolution.

The agent only understands three model families (``opus``, ``sonnet``,
``haiku``). Callers may ask for versioned identifiers, provider-prefixed
names, bare family aliases or drop-in OpenAI names; all of them resolve to a
family here.
"""

from dataclasses import dataclass

DEFAULT_FAMILY = "sonnet"


@dataclass(frozen=True)
class ModelEntry:
    """One identifier advertised on ``GET /v1/models``."""

    id: str
    family: str
    description: str


AVAILABLE_MODELS: tuple[ModelEntry, ...] = (
    # Versioned identifiers
    ModelEntry("claude-opus-4-1-20250805", "opus", "Opus 4.1 (versioned)"),
    ModelEntry("claude-opus-4-20250514", "opus", "Opus 4 (versioned)"),
    ModelEntry("claude-sonnet-4-5-20250929", "sonnet", "Sonnet 4.5 (versioned)"),
    ModelEntry("claude-sonnet-4-20250514", "sonnet", "Sonnet 4 (versioned)"),
    ModelEntry("claude-haiku-4-5-20251001", "haiku", "Haiku 4.5 (versioned)"),
    # Family aliases
    ModelEntry("claude-opus-4", "opus", "Most capable model family"),
    ModelEntry("claude-sonnet-4", "sonnet", "Balanced model family (default)"),
    ModelEntry("claude-haiku-4", "haiku", "Fastest model family"),
    ModelEntry("opus", "opus", "Short alias for the Opus family"),
    ModelEntry("sonnet", "sonnet", "Short alias for the Sonnet family"),
    ModelEntry("haiku", "haiku", "Short alias for the Haiku family"),
    # Drop-in aliases for clients hard-wired to OpenAI model names
    ModelEntry("gpt-4", "opus", "OpenAI-compatible alias for Opus"),
    ModelEntry("gpt-4-turbo", "opus", "OpenAI-compatible alias for Opus"),
    ModelEntry("gpt-4o", "sonnet", "OpenAI-compatible alias for Sonnet"),
    ModelEntry("gpt-4o-mini", "haiku", "OpenAI-compatible alias for Haiku"),
    ModelEntry("gpt-3.5-turbo", "haiku", "OpenAI-compatible alias for Haiku"),
)

_MODEL_MAP: dict[str, str] = {entry.id: entry.family for entry in AVAILABLE_MODELS}


def resolve_model(model: str | None, default: str = DEFAULT_FAMILY) -> str:
    """Map a requested model name to an agent model family.

    A leading ``provider/`` segment (e.g. ``agent-cli/claude-opus-4``) is
    ignored. Unknown names fall back to ``default``.

    Args:
        model: The model name from the request, if any.
        default: Family used for unknown or missing names.

    Returns:
        One of ``opus``, ``sonnet`` or ``haiku`` (or ``default``).
    """
    if not model:
        return default
    if model in _MODEL_MAP:
        return _MODEL_MAP[model]
    stripped = model.split("/", 1)[1] if "/" in model else model
    return _MODEL_MAP.get(stripped, default)
