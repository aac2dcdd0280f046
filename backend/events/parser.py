"""Decoder for the agent's newline-delimited JSON output.

Bytes arrive from the process in arbitrary chunks. ``LineBuffer`` splits them
on newlines and keeps a trailing partial line until the rest arrives;
``parse_line`` turns one complete line into a tagged record. Lines that are
not JSON objects are surfaced as ``RawLine`` rather than dropped.

Usage:
    >>> parser = StreamParser()
    >>> parser.feed(b'{"type": "result", "result": "hi"}\\n{"ty')
    [ResultRecord(...)]
    >>> parser.feed(b'pe": "system"}\\n')
    [OtherRecord(record_type='system', ...)]
"""

import json
from typing import Any

import structlog
from pydantic import ValidationError

from events.types import (
    AgentRecord,
    AssistantMessage,
    ContentDelta,
    OtherRecord,
    RawLine,
    ResultRecord,
    TokenUsage,
)

logger = structlog.get_logger(__name__)


class LineBuffer:
    """Accumulates bytes and yields complete, decoded lines.

    Splitting happens on raw bytes so a multi-byte UTF-8 character cut in
    half by a read boundary is only decoded once both halves are present.

    Args:
        max_pending: If set, an unterminated line longer than this many bytes
            is emitted as-is instead of growing without bound.
    """

    def __init__(self, max_pending: int | None = None) -> None:
        self._pending = b""
        self._max_pending = max_pending

    @property
    def pending(self) -> bytes:
        """Bytes of the incomplete trailing line, if any."""
        return self._pending

    def feed(self, data: bytes) -> list[str]:
        """Add a chunk and return every line it completed."""
        self._pending += data
        *complete, self._pending = self._pending.split(b"\n")
        if self._max_pending is not None and len(self._pending) > self._max_pending:
            complete.append(self._pending)
            self._pending = b""
        return [line.decode("utf-8", errors="replace") for line in complete]

    def flush(self) -> list[str]:
        """Return the trailing partial line (on EOF) and clear the buffer."""
        if not self._pending:
            return []
        line = self._pending.decode("utf-8", errors="replace")
        self._pending = b""
        return [line]


def _text_from_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def _usage(raw: Any) -> TokenUsage:
    if not isinstance(raw, dict):
        return TokenUsage()
    return TokenUsage(
        **{
            key: int(value)
            for key, value in raw.items()
            if key in TokenUsage.model_fields and isinstance(value, (int, float))
        }
    )


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def parse_record(payload: dict[str, Any]) -> AgentRecord:
    """Map one decoded JSON object onto its record variant.

    Nested fields of the wrong shape are treated as absent, so a record that
    is valid JSON but not what the agent normally writes still maps to a
    variant instead of raising.

    Args:
        payload: A JSON object emitted by the agent.

    Returns:
        The matching record. Objects of a type the proxy does not act on
        become ``OtherRecord``.
    """
    record_type = payload.get("type")

    if record_type == "stream_event":
        event = _as_dict(payload.get("event"))
        delta = _as_dict(event.get("delta"))
        if event.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
            return ContentDelta(text=_as_str(delta.get("text")) or "")
        return OtherRecord(record_type=f"stream_event.{event.get('type')}", payload=payload)

    if record_type == "assistant":
        message = _as_dict(payload.get("message"))
        return AssistantMessage(
            model=_as_str(message.get("model")),
            text=_text_from_content(message.get("content")),
        )

    if record_type == "result":
        errors = payload.get("errors") or []
        duration_ms = payload.get("duration_ms")
        return ResultRecord(
            is_error=bool(payload.get("is_error", False)),
            subtype=_as_str(payload.get("subtype")),
            result=_as_str(payload.get("result")) or "",
            errors=[str(error) for error in errors] if isinstance(errors, list) else [str(errors)],
            usage=_usage(payload.get("usage")),
            session_id=_as_str(payload.get("session_id")),
            duration_ms=(
                int(duration_ms)
                if isinstance(duration_ms, (int, float)) and not isinstance(duration_ms, bool)
                else None
            ),
        )

    return OtherRecord(record_type=str(record_type), payload=payload)


def parse_line(line: str) -> AgentRecord | None:
    """Decode a single stdout line.

    Returns:
        The parsed record, a ``RawLine`` for input that is not a usable JSON
        object, or None for a blank line.
    """
    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        logger.debug("agent_output_unparsed", line=stripped[:300])
        return RawLine(line=stripped)
    if not isinstance(payload, dict):
        return RawLine(line=stripped)
    try:
        return parse_record(payload)
    except (AttributeError, TypeError, ValueError, OverflowError, ValidationError) as e:
        logger.warning("agent_record_malformed", line=stripped[:300], error=str(e))
        return RawLine(line=stripped)


class StreamParser:
    """Line framing plus record decoding for one process's stdout."""

    def __init__(self) -> None:
        self._buffer = LineBuffer()

    def feed(self, data: bytes) -> list[AgentRecord]:
        """Decode every record completed by ``data``."""
        return self._parse(self._buffer.feed(data))

    def flush(self) -> list[AgentRecord]:
        """Decode whatever remains in the buffer at end of stream."""
        return self._parse(self._buffer.flush())

    @staticmethod
    def _parse(lines: list[str]) -> list[AgentRecord]:
        records: list[AgentRecord] = []
        for line in lines:
            record = parse_line(line)
            if record is not None:
                records.append(record)
        return records
