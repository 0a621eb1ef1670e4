"""Incremental parser for the agent's ``stream-json`` output.

The agent writes one JSON object per line. Each object is lifted into the
claude-agent-sdk message model and classified into ``StreamEvent``s. The same
``classify_record`` is used by the live path (``StreamDecoder`` feeding a
callback while the process runs) and by the batch path (``iter_events`` over
the captured output), so both agree on what counts as text, tool use, tool
result and final result.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
import json
from typing import ClassVar, Iterator

import structlog
from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    TextBlock,
    ToolUseBlock,
    UserMessage,
)
from claude_agent_sdk.types import ToolResultBlock

logger = structlog.get_logger(__name__)

# Longer lines are almost always binary noise, not a record worth parsing.
MAX_LINE_LENGTH = 50_000


@dataclass(frozen=True)
class AssistantText:
    text: str
    kind: ClassVar[str] = "text"


@dataclass(frozen=True)
class ToolUseNotice:
    name: str
    kind: ClassVar[str] = "tool_use"

    @property
    def text(self) -> str:
        return f"🔧 Using tool: {self.name}"


@dataclass(frozen=True)
class ToolResultText:
    text: str
    kind: ClassVar[str] = "tool_result"


@dataclass(frozen=True)
class FinalResult:
    text: str
    kind: ClassVar[str] = "final_result"


StreamEvent = AssistantText | ToolUseNotice | ToolResultText | FinalResult

AgentMessage = AssistantMessage | UserMessage | ResultMessage


def parse_line(line: str) -> dict | None:
    """Return the JSON object on ``line``, or None when it is not a record."""
    stripped = line.strip()
    if not stripped or "\x00" in line or len(line) > MAX_LINE_LENGTH:
        return None
    if not (stripped.startswith("{") and stripped.endswith("}")):
        return None
    try:
        record = json.loads(stripped)
    except ValueError as exc:
        logger.debug("stream_line_unparseable", error=str(exc), preview=stripped[:100])
        return None
    return record if isinstance(record, dict) else None


def _as_int(value: object) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0


def _lift_block(item: object) -> TextBlock | ToolUseBlock | ToolResultBlock | None:
    if not isinstance(item, dict):
        return None
    block_type = item.get("type")
    if block_type == "text":
        return TextBlock(text=str(item.get("text") or ""))
    if block_type == "tool_use":
        inp = item.get("input")
        return ToolUseBlock(
            id=str(item.get("id") or ""),
            name=str(item.get("name") or ""),
            input=inp if isinstance(inp, dict) else {},
        )
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(item.get("tool_use_id") or ""),
            content=item.get("content"),
            is_error=item.get("is_error"),
        )
    return None


def lift_record(record: dict) -> AgentMessage | None:
    """Build an SDK message from a raw record, tolerating missing fields.

    The SDK's own parser rejects records without its full metadata (model,
    session id, durations). Agent builds and test fixtures often omit these,
    so we fill neutral defaults instead of discarding the record.
    """
    kind = record.get("type")
    if kind in ("assistant", "user"):
        message = record.get("message")
        if not isinstance(message, dict):
            return None
        content = message.get("content")
        if not isinstance(content, list):
            return None
        blocks = [b for b in (_lift_block(item) for item in content) if b is not None]
        if kind == "assistant":
            return AssistantMessage(content=blocks, model=str(message.get("model") or ""))
        return UserMessage(content=blocks)
    if kind == "result":
        result = record.get("result")
        if not result:
            return None
        return ResultMessage(
            subtype=str(record.get("subtype") or "success"),
            duration_ms=_as_int(record.get("duration_ms")),
            duration_api_ms=_as_int(record.get("duration_api_ms")),
            is_error=bool(record.get("is_error", False)),
            num_turns=_as_int(record.get("num_turns")),
            session_id=str(record.get("session_id") or ""),
            result=result if isinstance(result, str) else json.dumps(result),
        )
    return None


def _tool_result_texts(content: object) -> list[str]:
    if isinstance(content, str):
        return [content] if content else []
    if not isinstance(content, list):
        return []
    texts = []
    for item in content:
        if isinstance(item, dict) and item.get("type") == "text" and item.get("text"):
            texts.append(str(item["text"]))
    return texts


def events_from_message(message: AgentMessage) -> list[StreamEvent]:
    """Classify one SDK message into stream events, in block order."""
    events: list[StreamEvent] = []
    if isinstance(message, AssistantMessage):
        for block in message.content:
            if isinstance(block, TextBlock) and block.text:
                events.append(AssistantText(block.text))
            elif isinstance(block, ToolUseBlock):
                events.append(ToolUseNotice(block.name))
    elif isinstance(message, UserMessage):
        blocks = message.content if isinstance(message.content, list) else []
        for block in blocks:
            if isinstance(block, ToolResultBlock):
                events.extend(ToolResultText(t) for t in _tool_result_texts(block.content))
    elif isinstance(message, ResultMessage) and message.result:
        events.append(FinalResult(message.result))
    return events


def classify_record(record: dict) -> list[StreamEvent]:
    """Classify a parsed JSON record. Unknown shapes yield no events."""
    message = lift_record(record)
    if message is None:
        return []
    return events_from_message(message)


def iter_records(output: str) -> Iterator[dict]:
    """Yield every parseable record in complete captured output."""
    for line in output.split("\n"):
        record = parse_line(line)
        if record is not None:
            yield record


def iter_events(output: str) -> Iterator[StreamEvent]:
    """Batch counterpart of ``StreamDecoder``: events in emission order."""
    for record in iter_records(output):
        try:
            yield from classify_record(record)
        except Exception as exc:
            # One bad record must not abort extraction of the rest.
            logger.warning("stream_record_skipped", error=str(exc), record_type=record.get("type"))


class StreamDecoder:
    """Push-based line decoder for live process output.

    Bytes may split UTF-8 sequences and lines arbitrarily; ``feed`` buffers
    until a newline and returns the events from every completed line.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._classify_lines(lines)

    def flush(self) -> list[StreamEvent]:
        """Process whatever is left once the stream has ended."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._classify_lines([tail])

    def _classify_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            record = parse_line(line)
            if record is None:
                continue
            try:
                events.extend(classify_record(record))
            except Exception as exc:
                logger.warning("stream_record_skipped", error=str(exc), record_type=record.get("type"))
        return events
