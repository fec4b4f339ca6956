from __future__ import annotations

import json

import pytest

from src.aligned.framing import (
    ERROR_SENTINEL,
    METADATA_SENTINEL,
    NDJSON_MEDIA_TYPE,
    TEXT_MEDIA_TYPE,
    EnvelopeCodec,
    EnvelopeDemultiplexer,
    SentinelCodec,
    SentinelDemultiplexer,
    demultiplexer_for,
    negotiate_codec,
)


class Collector:
    def __init__(self) -> None:
        self.text_chunks = []
        self.metadata = []
        self.errors = []

    @property
    def text(self) -> str:
        return "".join(self.text_chunks)

    def sentinel(self) -> SentinelDemultiplexer:
        return SentinelDemultiplexer(self.text_chunks.append, self.metadata.append, self.errors.append)

    def envelope(self) -> EnvelopeDemultiplexer:
        return EnvelopeDemultiplexer(self.text_chunks.append, self.metadata.append, self.errors.append)


def _feed(demux, payload: bytes, splits) -> None:
    start = 0
    for cut in splits:
        demux.feed(payload[start:cut])
        start = cut
    demux.feed(payload[start:])
    demux.close()


STREAM = ("hello" + METADATA_SENTINEL + '{"id":"x"}').encode("utf-8")


@pytest.mark.parametrize("cut", range(len(STREAM) + 1))
def test_sentinel_any_single_split_point(cut):
    out = Collector()
    _feed(out.sentinel(), STREAM, [cut])
    assert out.text == "hello"
    assert out.metadata == [{"id": "x"}]
    assert out.errors == []


def test_sentinel_byte_at_a_time_never_leaks_marker_fragment():
    out = Collector()
    demux = out.sentinel()
    for i in range(len(STREAM)):
        demux.feed(STREAM[i : i + 1])
        assert "__" not in out.text
        assert "\n" not in out.text
    demux.close()
    assert out.text == "hello"
    assert out.metadata == [{"id": "x"}]


def test_sentinel_multibyte_characters_split_across_chunks():
    payload = ("héllo wörld ✓" + METADATA_SENTINEL + '{"id":"é"}').encode("utf-8")
    out = Collector()
    _feed(out.sentinel(), payload, [2, 3, 12, 13, 14])
    assert out.text == "héllo wörld ✓"
    assert out.metadata == [{"id": "é"}]
    assert "�" not in out.text


def test_sentinel_error_record():
    codec = SentinelCodec()
    payload = codec.encode_text("partial") + codec.encode_error("Sorry", "stream")
    out = Collector()
    _feed(out.sentinel(), payload, [3, 20])
    assert out.text == "partial"
    assert out.metadata == []
    assert out.errors == [{"error": "Sorry", "stage": "stream"}]


def test_sentinel_plain_text_is_flushed_on_close():
    out = Collector()
    demux = out.sentinel()
    demux.feed(b"short")
    assert out.text == ""  # still inside the carry window
    demux.close()
    assert out.text == "short"
    assert out.metadata == [] and out.errors == []


def test_sentinel_text_ending_in_newlines_is_not_a_marker():
    out = Collector()
    _feed(out.sentinel(), b"line one\n\nline two\n\n", [9])
    assert out.text == "line one\n\nline two\n\n"


def test_sentinel_malformed_record_reports_framing_error():
    out = Collector()
    _feed(out.sentinel(), ("hi" + METADATA_SENTINEL + "{not json").encode(), [])
    assert out.text == "hi"
    assert out.metadata == []
    assert out.errors == [{"error": "Malformed stream record", "stage": "framing"}]


def test_sentinel_carry_covers_longest_marker():
    demux = Collector().sentinel()
    assert demux.carry == max(len(METADATA_SENTINEL), len(ERROR_SENTINEL)) - 1


def test_feed_after_close_raises():
    demux = Collector().sentinel()
    demux.close()
    with pytest.raises(RuntimeError):
        demux.feed(b"late")


def test_envelope_arbitrary_splits():
    codec = EnvelopeCodec()
    payload = (
        codec.encode_text("Hel")
        + codec.encode_text("lo ✓\n\n__COMMENT_DATA__:")
        + codec.encode_metadata({"id": "c1"})
    )
    for cut in range(0, len(payload), 7):
        out = Collector()
        _feed(out.envelope(), payload, [cut, min(cut + 3, len(payload))])
        assert out.text == "Hello ✓\n\n__COMMENT_DATA__:"
        assert out.metadata == [{"id": "c1"}]


def test_envelope_error_and_malformed_lines():
    codec = EnvelopeCodec()
    out = Collector()
    _feed(out.envelope(), b"garbage\n" + codec.encode_error("boom", "persist"), [])
    assert out.errors == [
        {"error": "Malformed stream frame", "stage": "framing"},
        {"error": "boom", "stage": "persist"},
    ]


def test_envelope_frames_are_single_json_lines():
    line = EnvelopeCodec().encode_text("a\nb").decode()
    assert line.endswith("\n")
    assert line.count("\n") == 1
    assert json.loads(line) == {"type": "text", "text": "a\nb"}


def test_negotiate_codec():
    assert isinstance(negotiate_codec(None), SentinelCodec)
    assert isinstance(negotiate_codec("*/*"), SentinelCodec)
    assert isinstance(negotiate_codec("application/x-ndjson"), EnvelopeCodec)
    assert negotiate_codec("text/plain").media_type == TEXT_MEDIA_TYPE
    assert negotiate_codec("Application/X-NDJSON, */*").media_type == NDJSON_MEDIA_TYPE


def test_demultiplexer_for_content_type():
    assert isinstance(demultiplexer_for(NDJSON_MEDIA_TYPE, print), EnvelopeDemultiplexer)
    assert isinstance(demultiplexer_for(TEXT_MEDIA_TYPE, print), SentinelDemultiplexer)
    assert isinstance(demultiplexer_for(None, print), SentinelDemultiplexer)
