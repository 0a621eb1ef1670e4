"""Tests for agent_relay.stream — line classification shared by live and batch paths."""

import json

from claude_agent_sdk import AssistantMessage, ResultMessage, TextBlock, ToolUseBlock, UserMessage

from agent_relay.stream import (
    MAX_LINE_LENGTH,
    AssistantText,
    FinalResult,
    StreamDecoder,
    ToolResultText,
    ToolUseNotice,
    classify_record,
    iter_events,
    lift_record,
    parse_line,
)


def _assistant(*items: dict) -> dict:
    return {"type": "assistant", "message": {"content": list(items)}}


def _tool_result(content) -> dict:
    return {
        "type": "user",
        "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": content}]},
    }


class TestParseLine:
    """parse_line() filters lines before JSON decoding."""

    def test_parses_object(self):
        assert parse_line('{"type": "result", "result": "x"}') == {"type": "result", "result": "x"}

    def test_skips_blank_and_non_json(self):
        assert parse_line("") is None
        assert parse_line("   ") is None
        assert parse_line("Loading MCP servers...") is None
        assert parse_line("[1, 2, 3]") is None

    def test_skips_nul_bytes(self):
        assert parse_line('{"type": "result", "result": "a\x00b"}') is None

    def test_skips_overlong_lines(self):
        line = json.dumps({"type": "result", "result": "x" * MAX_LINE_LENGTH})
        assert len(line) > MAX_LINE_LENGTH
        assert parse_line(line) is None

    def test_skips_malformed_json(self):
        assert parse_line('{"type": "result", "result": }') is None


class TestLiftRecord:
    """lift_record() builds SDK messages from partial records."""

    def test_assistant_without_model(self):
        message = lift_record(_assistant({"type": "text", "text": "hi"}))
        assert isinstance(message, AssistantMessage)
        assert isinstance(message.content[0], TextBlock)
        assert message.content[0].text == "hi"

    def test_result_without_metadata(self):
        message = lift_record({"type": "result", "result": "done"})
        assert isinstance(message, ResultMessage)
        assert message.result == "done"
        assert message.subtype == "success"

    def test_tool_use_block(self):
        message = lift_record(_assistant({"type": "tool_use", "id": "u1", "name": "Bash", "input": {"command": "ls"}}))
        assert isinstance(message.content[0], ToolUseBlock)
        assert message.content[0].name == "Bash"

    def test_user_message(self):
        assert isinstance(lift_record(_tool_result("out")), UserMessage)

    def test_unknown_type(self):
        assert lift_record({"type": "system", "subtype": "init"}) is None

    def test_content_must_be_list(self):
        assert lift_record({"type": "assistant", "message": {"content": "plain"}}) is None


class TestClassifyRecord:
    """classify_record() maps records to StreamEvents in block order."""

    def test_assistant_text_and_tool_use(self):
        events = classify_record(_assistant(
            {"type": "text", "text": "Let me check."},
            {"type": "tool_use", "id": "u1", "name": "mcp__t2i-fal-imagen4-fast", "input": {}},
        ))
        assert events == [AssistantText("Let me check."), ToolUseNotice("mcp__t2i-fal-imagen4-fast")]
        assert events[1].text == "🔧 Using tool: mcp__t2i-fal-imagen4-fast"

    def test_tool_result_text_items(self):
        events = classify_record(_tool_result([
            {"type": "text", "text": "first"},
            {"type": "image", "source": {}},
            {"type": "text", "text": "second"},
        ]))
        assert events == [ToolResultText("first"), ToolResultText("second")]

    def test_tool_result_plain_string(self):
        assert classify_record(_tool_result("plain output")) == [ToolResultText("plain output")]

    def test_final_result(self):
        assert classify_record({"type": "result", "result": "R1"}) == [FinalResult("R1")]

    def test_empty_result_ignored(self):
        assert classify_record({"type": "result", "result": ""}) == []

    def test_unknown_record_ignored(self):
        assert classify_record({"type": "system", "subtype": "init"}) == []
        assert classify_record({"foo": "bar"}) == []

    def test_event_kinds(self):
        assert AssistantText("a").kind == "text"
        assert ToolUseNotice("a").kind == "tool_use"
        assert ToolResultText("a").kind == "tool_result"
        assert FinalResult("a").kind == "final_result"


class TestIterEvents:
    """iter_events() over complete output."""

    def test_preserves_emission_order_and_skips_noise(self):
        output = "\n".join([
            "some banner",
            json.dumps(_assistant({"type": "text", "text": "A1"})),
            "{not json}",
            json.dumps(_tool_result("T1")),
            json.dumps({"type": "result", "result": "R1"}),
        ])
        assert list(iter_events(output)) == [AssistantText("A1"), ToolResultText("T1"), FinalResult("R1")]

    def test_last_line_without_newline_is_parsed(self):
        output = json.dumps({"type": "result", "result": "tail"})
        assert list(iter_events(output)) == [FinalResult("tail")]


class TestStreamDecoder:
    """StreamDecoder buffers partial lines and split UTF-8 sequences."""

    def test_buffers_until_newline(self):
        decoder = StreamDecoder()
        line = json.dumps(_assistant({"type": "text", "text": "hello"})) + "\n"
        assert decoder.feed(line[:10]) == []
        assert decoder.feed(line[10:]) == [AssistantText("hello")]

    def test_multibyte_split_across_chunks(self):
        decoder = StreamDecoder()
        raw = (json.dumps(_assistant({"type": "text", "text": "こんにちは"}), ensure_ascii=False) + "\n").encode()
        split = raw.index("こ".encode()) + 1
        assert decoder.feed(raw[:split]) == []
        assert decoder.feed(raw[split:]) == [AssistantText("こんにちは")]

    def test_flush_processes_trailing_line(self):
        decoder = StreamDecoder()
        assert decoder.feed(b'{"type": "result", "result": "end"}') == []
        assert decoder.flush() == [FinalResult("end")]
        assert decoder.flush() == []

    def test_live_and_batch_agree(self):
        lines = [
            json.dumps(_assistant({"type": "text", "text": "A"}, {"type": "tool_use", "id": "1", "name": "Bash", "input": {}})),
            "noise",
            json.dumps(_tool_result([{"type": "text", "text": "T"}])),
            json.dumps({"type": "result", "result": "R"}),
        ]
        output = "\n".join(lines) + "\n"
        decoder = StreamDecoder()
        live = []
        for i in range(0, len(output), 7):
            live.extend(decoder.feed(output[i:i + 7].encode()))
        live.extend(decoder.flush())
        assert live == list(iter_events(output))
