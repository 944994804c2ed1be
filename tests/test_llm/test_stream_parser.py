import json

from nexus.llm.stream import STOP_REASON_TOOL_USE, StreamEventParser


def _line(event: dict) -> bytes:
    return f"event: {event['type']}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n".encode("utf-8")


def _text_delta(text: str, index: int = 0) -> dict:
    return {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": text}}


def _tool_start(index: int, call_id: str, name: str = "execute_remote_command") -> dict:
    return {
        "type": "content_block_start",
        "index": index,
        "content_block": {"type": "tool_use", "id": call_id, "name": name, "input": {}},
    }


def _json_delta(index: int, fragment: str) -> dict:
    return {"type": "content_block_delta", "index": index, "delta": {"type": "input_json_delta", "partial_json": fragment}}


def _tool_reply_bytes() -> bytes:
    events = [
        {"type": "message_start", "message": {"id": "msg_1", "usage": {"input_tokens": 100, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        _text_delta("ディスク容量を"),
        _text_delta("確認します。"),
        {"type": "content_block_stop", "index": 0},
        _tool_start(1, "toolu_1"),
        _json_delta(1, '{"machine_name": "SI'),
        _json_delta(1, 'GMA", "command": "df -h"}'),
        {"type": "content_block_stop", "index": 1},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 20}},
        {"type": "message_stop"},
    ]
    return b"".join(_line(event) for event in events)


def test_parser_assembles_text_tools_and_usage():
    parser = StreamEventParser()

    deltas = parser.feed(_tool_reply_bytes())
    result = parser.finish()

    assert deltas == ["ディスク容量を", "確認します。"]
    assert result.text == "ディスク容量を確認します。"
    assert result.stop_reason == STOP_REASON_TOOL_USE
    assert result.wants_tools is True
    assert result.usage.input_tokens == 100
    assert result.usage.output_tokens == 20
    assert len(result.tool_calls) == 1
    assert result.tool_calls[0].id == "toolu_1"
    assert result.tool_calls[0].input == {"machine_name": "SIGMA", "command": "df -h"}


def test_parser_tolerates_byte_level_fragmentation():
    data = _tool_reply_bytes()
    parser = StreamEventParser()

    deltas: list[str] = []
    for i in range(len(data)):
        deltas.extend(parser.feed(data[i:i + 1]))
    result = parser.finish()

    # Multi-byte characters split across reads must survive.
    assert "".join(deltas) == "ディスク容量を確認します。"
    assert result.text == "ディスク容量を確認します。"
    assert result.tool_calls[0].input == {"machine_name": "SIGMA", "command": "df -h"}


def test_parser_skips_malformed_line_and_keeps_going():
    parser = StreamEventParser()

    parser.feed(_line(_text_delta("first ")))
    parser.feed(b'data: {"type": "content_block_delta", "index": 0, "delta": {"type": "text_de\n')
    parser.feed(_line(_text_delta("second")))
    result = parser.finish()

    assert result.text == "first second"
    assert result.malformed_lines == 1


def test_parser_ignores_non_data_lines_and_done_marker():
    parser = StreamEventParser()

    parser.feed(b": keep-alive\n\nevent: ping\ndata: {\"type\": \"ping\"}\n\n")
    parser.feed(_line(_text_delta("hi")))
    parser.feed(b"data: [DONE]\n\n")
    result = parser.finish()

    assert result.text == "hi"
    assert result.malformed_lines == 0


def test_tool_call_order_follows_block_start_order():
    parser = StreamEventParser()
    events = [
        _tool_start(2, "call_2"),
        _tool_start(0, "call_0"),
        _tool_start(1, "call_1"),
        _json_delta(0, '{"machine_name": "A", "command": "zero"}'),
        _json_delta(2, '{"machine_name": "A", "command": "two"}'),
        _json_delta(1, '{"machine_name": "A", "command": "one"}'),
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 5}},
    ]
    parser.feed(b"".join(_line(event) for event in events))

    result = parser.finish()

    assert [call.id for call in result.tool_calls] == ["call_2", "call_0", "call_1"]
    assert [call.input["command"] for call in result.tool_calls] == ["two", "zero", "one"]


def test_malformed_tool_arguments_become_empty_object():
    parser = StreamEventParser()
    parser.feed(_line(_tool_start(0, "toolu_bad")))
    parser.feed(_line(_json_delta(0, '{"machine_name": "SIG')))

    result = parser.finish()

    assert result.tool_calls[0].id == "toolu_bad"
    assert result.tool_calls[0].input == {}


def test_unterminated_final_line_is_flushed_on_finish():
    parser = StreamEventParser()

    deltas = parser.feed(f"data: {json.dumps(_text_delta('tail'))}".encode("utf-8"))
    result = parser.finish()

    assert deltas == []
    assert result.text == "tail"


def test_end_turn_with_text_only_does_not_want_tools():
    parser = StreamEventParser()
    parser.feed(_line(_text_delta("done")))
    parser.feed(_line({"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 3}}))

    result = parser.finish()

    assert result.stop_reason == "end_turn"
    assert result.wants_tools is False


def test_invalid_token_counts_are_not_accumulated():
    parser = StreamEventParser()
    parser.feed(_line({"type": "message_start", "message": {"usage": {"input_tokens": -5}}}))
    parser.feed(_line({"type": "message_delta", "delta": {}, "usage": {"output_tokens": True}}))
    parser.feed(_line({"type": "message_delta", "delta": {}, "usage": {"output_tokens": "12"}}))

    result = parser.finish()

    assert result.usage.input_tokens == 0
    assert result.usage.output_tokens == 0


def test_error_event_is_recorded():
    parser = StreamEventParser()
    parser.feed(_line({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}))

    result = parser.finish()

    assert result.error == "Overloaded"
