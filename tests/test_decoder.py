"""Tests for FrameDecoder and parse_payload."""

import pytest

from ssemux.client.decoder import FrameDecoder, parse_payload

STREAM = (
    b'event: tick\nid: 1\ndata: {"n": 1}\n\n'
    + b"data: plain text\n\n"
    + b": keep-alive\n\n"
    + b"event: note\ndata: one line\n\n"
    + "data: café ✓\n\n".encode()
)

EXPECTED = [
    ("tick", {"n": 1}, "1"),
    ("message", "plain text", None),
    ("note", "one line", None),
    ("message", "café ✓", None),
]


def decode(*chunks: bytes) -> list[tuple]:
    decoder = FrameDecoder()
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.flush())
    return [(e.type, e.data, e.id) for e in events]


class TestParsePayload:
    def test_json_is_decoded(self) -> None:
        assert parse_payload('{"a": [1, 2]}') == {"a": [1, 2]}
        assert parse_payload("42") == 42

    def test_non_json_falls_back_to_raw_string(self) -> None:
        assert parse_payload("{not json") == "{not json"
        assert parse_payload("hello") == "hello"


class TestFrameDecoder:
    def test_decodes_whole_stream(self) -> None:
        assert decode(STREAM) == EXPECTED

    def test_every_two_way_split_gives_the_same_events(self) -> None:
        """Test decoding does not depend on where the network cut the bytes."""
        for cut in range(1, len(STREAM)):
            assert decode(STREAM[:cut], STREAM[cut:]) == EXPECTED, f"split at byte {cut}"

    def test_byte_by_byte_feed_gives_the_same_events(self) -> None:
        chunks = [STREAM[i : i + 1] for i in range(len(STREAM))]
        assert decode(*chunks) == EXPECTED

    def test_multi_line_data_in_one_chunk_is_one_event(self) -> None:
        assert decode(b"event: note\ndata: line one\ndata: line two\n\n") == [
            ("note", "line one\nline two", None)
        ]

    def test_multi_line_data_cut_between_lines_is_emitted_per_chunk(self) -> None:
        assert decode(b"data: line one\n", b"data: line two\n\n") == [
            ("message", "line one", None),
            ("message", "line two", None),
        ]

    def test_data_only_lines_without_blank_line_are_delivered_per_feed(self) -> None:
        decoder = FrameDecoder()
        assert [e.data for e in decoder.feed(b"data: 1\n")] == [1]
        assert [e.data for e in decoder.feed(b"data: 2\n")] == [2]
        assert decoder.flush() == []

    def test_multibyte_character_split_across_chunks(self) -> None:
        raw = "data: ✓\n\n".encode()
        # the check mark is three bytes; cut after the first one
        cut = raw.index(b"\xe2") + 1
        decoder = FrameDecoder()
        assert decoder.feed(raw[:cut]) == []
        events = decoder.feed(raw[cut:])
        assert [e.data for e in events] == ["✓"]

    def test_crlf_line_endings(self) -> None:
        assert decode(b"event: a\r\ndata: b\r\n\r\n") == [("a", "b", None)]

    def test_event_line_starts_a_new_record_without_blank_line(self) -> None:
        decoder = FrameDecoder()
        events = decoder.feed(b"event: a\ndata: 1\nevent: b\ndata: 2\n")
        assert [(e.type, e.data) for e in events] == [("a", 1), ("b", 2)]

    def test_id_before_event_line_is_kept(self) -> None:
        assert decode(b"id: 7\nevent: x\ndata: y\n\n") == [("x", "y", "7")]

    def test_default_type_is_message(self) -> None:
        assert decode(b"data: hi\n\n") == [("message", "hi", None)]

    def test_values_are_trimmed(self) -> None:
        assert decode(b"event:   spaced  \ndata:   padded   \n\n") == [("spaced", "padded", None)]

    def test_comments_and_unknown_fields_are_ignored(self) -> None:
        assert decode(b": ping\nretry: 100\nfoo: bar\n\n") == []

    def test_empty_payload_is_not_an_event(self) -> None:
        assert decode(b"event: x\ndata:\n\n") == []

    def test_blank_line_resets_pending_type(self) -> None:
        assert decode(b"event: x\n\ndata: y\n\n") == [("message", "y", None)]

    def test_flush_drops_unfinished_tail(self) -> None:
        decoder = FrameDecoder()
        assert [e.data for e in decoder.feed(b"data: done\n\ndata: partial")] == ["done"]
        assert decoder.flush() == []

    @pytest.mark.parametrize("chunk", [b"\xff\xfe", b"\x00\n\n", b"data: \xc3\n\n"])
    def test_garbage_never_raises(self, chunk: bytes) -> None:
        decoder = FrameDecoder()
        decoder.feed(chunk)
        decoder.flush()
