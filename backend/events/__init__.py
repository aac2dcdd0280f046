"""Agent output events.

This package models everything a supervised agent process can emit as a
closed set of tagged variants, plus the decoder that produces them from the
process's stdout bytes.

Key Components:
    - RecordKind: Discriminant shared by every event variant
    - ContentDelta / AssistantMessage / ResultRecord: Records the proxy acts on
    - OtherRecord / RawLine: Records that are only logged
    - ProcessError / ProcessClosed: Lifecycle events added by the supervisor
    - StreamParser: Byte framing + JSON decoding

Usage:
    >>> from events import StreamParser, RecordKind
    >>> parser = StreamParser()
    >>> for record in parser.feed(chunk):
    ...     if record.kind == RecordKind.CONTENT_DELTA:
    ...         print(record.text, end="")
"""

from events.parser import LineBuffer, StreamParser, parse_line, parse_record
from events.types import (
    AgentRecord,
    AssistantMessage,
    ContentDelta,
    OtherRecord,
    ProcessClosed,
    ProcessError,
    RawLine,
    RecordKind,
    ResultRecord,
    SupervisorEvent,
    TokenUsage,
)

__all__ = [
    # Event types
    "RecordKind",
    "AgentRecord",
    "SupervisorEvent",
    "ContentDelta",
    "AssistantMessage",
    "ResultRecord",
    "OtherRecord",
    "RawLine",
    "ProcessError",
    "ProcessClosed",
    "TokenUsage",
    # Decoding
    "LineBuffer",
    "StreamParser",
    "parse_line",
    "parse_record",
]
