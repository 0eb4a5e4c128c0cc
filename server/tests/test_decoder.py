import json

import pytest

from chatrelay.streaming.decoder import SSEParser, StreamDecoder, decode_all, frame_to_event
from chatrelay.streaming.events import (
    ChatIdEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    ReasoningEvent,
    encode_event,
    encode_frame,
    event_payload,
)

SAMPLE = [
    ChatIdEvent("chat-1"),
    ReasoningEvent("Let me think"),
    ReasoningEvent("Let me think… harder"),
    ContentEvent("Grüße, "),
    ContentEvent("wörld 🌍\nsecond line"),
    DoneEvent(content="Grüße, wörld 🌍\nsecond line", reasoning="Let me think… harder", chat_id="chat-1"),
]


def _stream() -> bytes:
    return b"".join(encode_event(e) for e in SAMPLE)


def test_encode_event_wire_format():
    assert encode_event(ChatIdEvent("abc")) == b"event: chatId\ndata: abc\n\n"
    assert encode_event(ContentEvent("hi")) == b'event: content\ndata: {"content": "hi"}\n\n'
    assert json.loads(event_payload(DoneEvent("a", "b", "c"))) == {"content": "a", "reasoning": "b", "chatId": "c"}
    assert json.loads(event_payload(ErrorEvent("boom"))) == {"error": "boom"}


def test_event_payload_rejects_unknown_events():
    with pytest.raises(TypeError):
        event_payload(object())


def test_encode_frame_splits_multiline_data():
    assert encode_frame("change", "a\nb") == b"event: change\ndata: a\ndata: b\n\n"


def test_whole_stream_decodes_in_order():
    assert decode_all([_stream()]) == SAMPLE


@pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 64])
def test_chunk_boundaries_do_not_change_the_result(size):
    data = _stream()
    chunks = [data[i:i + size] for i in range(0, len(data), size)]
    assert decode_all(chunks) == SAMPLE


def test_split_inside_multibyte_character():
    data = encode_event(ContentEvent("🌍")) + encode_event(DoneEvent("🌍", ""))
    cut = data.index("🌍".encode("utf-8")) + 2
    assert decode_all([data[:cut], data[cut:]]) == [ContentEvent("🌍"), DoneEvent("🌍", "")]


def test_reasoning_replaces_while_content_appends():
    events = decode_all([_stream()])
    reasoning = [e.reasoning for e in events if isinstance(e, ReasoningEvent)]
    content = "".join(e.content for e in events if isinstance(e, ContentEvent))
    done = events[-1]
    assert reasoning[-1] == done.reasoning
    assert content == done.content


def test_nothing_after_done_is_delivered():
    data = encode_event(DoneEvent("x", "")) + encode_event(ContentEvent("late")) + encode_event(ErrorEvent("late"))
    assert decode_all([data]) == [DoneEvent("x", "")]


def test_decoder_stays_finished_after_error():
    decoder = StreamDecoder()
    assert decoder.feed(encode_event(ErrorEvent("bad"))) == [ErrorEvent("bad")]
    assert decoder.finished
    assert decoder.feed(encode_event(ContentEvent("more"))) == []
    assert decoder.close() == []


def test_malformed_content_and_reasoning_are_dropped():
    data = b"event: content\ndata: {not json\n\nevent: reasoning\ndata: [1, 2]\n\n" + encode_event(ContentEvent("ok"))
    assert decode_all([data]) == [ContentEvent("ok")]


def test_malformed_done_becomes_error_with_raw_text():
    assert frame_to_event("done", "oops") == ErrorEvent("oops")
    assert frame_to_event("done", "") == ErrorEvent("Unknown error")


def test_error_without_message_is_unknown_error():
    assert frame_to_event("error", "{}") == ErrorEvent("Unknown error")
    assert frame_to_event("error", "not json") == ErrorEvent("not json")


def test_unknown_event_names_are_ignored():
    assert frame_to_event("ping", "{}") is None
    assert frame_to_event("chatId", "   ") is None


def test_single_newline_between_events():
    data = b'event: content\ndata: {"content": "a"}\nevent: content\ndata: {"content": "b"}\n'
    decoder = StreamDecoder()
    events = decoder.feed(data) + decoder.close()
    assert events == [ContentEvent("a"), ContentEvent("b")]


def test_parser_skips_comments_and_handles_crlf():
    parser = SSEParser()
    frames = parser.feed(b": keep-alive\r\n\r\nevent: chatId\r\ndata: c-9\r\n\r\n")
    assert frames == [("chatId", "c-9")]


def test_unterminated_frame_is_flushed_on_close():
    parser = SSEParser()
    assert parser.feed(b'event: done\ndata: {"content": "z", "reasoning": ""}') == []
    assert parser.close() == [("done", '{"content": "z", "reasoning": ""}')]


def test_parser_keeps_payload_whitespace():
    parser = SSEParser()
    frames = parser.feed(b"event: chatId\ndata:  two spaces \n\nevent:chatId\ndata:x\n\n")
    assert frames == [("chatId", " two spaces "), ("chatId", "x")]
    assert frame_to_event(*frames[0]) == ChatIdEvent("two spaces")
