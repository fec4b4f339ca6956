"""Wire framing for assistant streams.

Two codecs share one frame vocabulary (text, one terminal metadata record, or
one terminal error record):

- ``SentinelCodec`` writes raw text on a ``text/plain`` body and introduces the
  terminal record with a marker string followed by JSON.
- ``EnvelopeCodec`` writes one JSON object per line (``application/x-ndjson``)
  so the text and control channels never share bytes.

Each codec has a client-side demultiplexer that accepts arbitrary chunking,
including UTF-8 sequences and markers split across chunks.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

METADATA_SENTINEL = "\n\n__COMMENT_DATA__:"
ERROR_SENTINEL = "\n\n__STREAM_ERROR__:"

TEXT_MEDIA_TYPE = "text/plain; charset=utf-8"
NDJSON_MEDIA_TYPE = "application/x-ndjson"

TextCallback = Callable[[str], None]
RecordCallback = Callable[[Dict[str, Any]], None]
Chunk = Union[bytes, str]


def _dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def error_record(message: str, stage: str) -> Dict[str, str]:
    return {"error": message, "stage": stage}


# ---------------------------------------------------------------------------
# Encoders
# ---------------------------------------------------------------------------
class SentinelCodec:
    name = "sentinel"
    media_type = TEXT_MEDIA_TYPE

    def encode_text(self, text: str) -> bytes:
        return text.encode("utf-8")

    def encode_metadata(self, payload: Dict[str, Any]) -> bytes:
        return (METADATA_SENTINEL + _dumps(payload)).encode("utf-8")

    def encode_error(self, message: str, stage: str) -> bytes:
        return (ERROR_SENTINEL + _dumps(error_record(message, stage))).encode("utf-8")


class EnvelopeCodec:
    name = "envelope"
    media_type = NDJSON_MEDIA_TYPE

    def encode_text(self, text: str) -> bytes:
        return (_dumps({"type": "text", "text": text}) + "\n").encode("utf-8")

    def encode_metadata(self, payload: Dict[str, Any]) -> bytes:
        return (_dumps({"type": "metadata", "data": payload}) + "\n").encode("utf-8")

    def encode_error(self, message: str, stage: str) -> bytes:
        return (_dumps({"type": "error", **error_record(message, stage)}) + "\n").encode("utf-8")


Codec = Union[SentinelCodec, EnvelopeCodec]


def negotiate_codec(accept: Optional[str]) -> Codec:
    """Envelope framing when the client asks for NDJSON, sentinel framing otherwise."""

    if accept and NDJSON_MEDIA_TYPE in accept.lower():
        return EnvelopeCodec()
    return SentinelCodec()


# ---------------------------------------------------------------------------
# Demultiplexers
# ---------------------------------------------------------------------------
def _noop_record(_: Dict[str, Any]) -> None:
    return None


class SentinelDemultiplexer:
    """Split a sentinel-framed byte stream back into text and the terminal record.

    Until a marker is seen, the last ``carry`` characters are withheld from
    ``on_text`` because they may be the start of a marker split across
    chunks. Everything after a marker is buffered and parsed on :meth:`close`.
    """

    def __init__(
        self,
        on_text: TextCallback,
        on_metadata: RecordCallback = _noop_record,
        on_error: RecordCallback = _noop_record,
    ) -> None:
        self._on_text = on_text
        self._on_metadata = on_metadata
        self._on_error = on_error
        self._markers = (METADATA_SENTINEL, ERROR_SENTINEL)
        self.carry = max(len(m) for m in self._markers) - 1
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._marker: Optional[str] = None
        self._record: List[str] = []
        self._closed = False

    def feed(self, chunk: Chunk) -> None:
        if self._closed:
            raise RuntimeError("demultiplexer already closed")
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if text:
            self._push(text)

    def _find_marker(self, buf: str) -> tuple[int, Optional[str]]:
        best, found = -1, None
        for marker in self._markers:
            idx = buf.find(marker)
            if idx != -1 and (best == -1 or idx < best):
                best, found = idx, marker
        return best, found

    def _push(self, text: str) -> None:
        if self._marker is not None:
            self._record.append(text)
            return
        buf = self._pending + text
        idx, marker = self._find_marker(buf)
        if marker is not None:
            if idx:
                self._on_text(buf[:idx])
            self._marker = marker
            self._record.append(buf[idx + len(marker) :])
            self._pending = ""
            return
        if len(buf) > self.carry:
            self._on_text(buf[: -self.carry])
            self._pending = buf[-self.carry :]
        else:
            self._pending = buf

    def close(self) -> None:
        """Flush at end of stream and deliver the terminal record, if any."""

        if self._closed:
            return
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._push(tail)
        self._closed = True
        if self._marker is None:
            if self._pending:
                self._on_text(self._pending)
                self._pending = ""
            return
        raw = "".join(self._record).strip()
        try:
            record = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("stream_record_malformed", extra={"length": len(raw)})
            self._on_error(error_record("Malformed stream record", "framing"))
            return
        if not isinstance(record, dict):
            self._on_error(error_record("Malformed stream record", "framing"))
            return
        if self._marker == METADATA_SENTINEL:
            self._on_metadata(record)
        else:
            self._on_error(record)


class EnvelopeDemultiplexer:
    """Line-oriented counterpart of :class:`EnvelopeCodec`."""

    def __init__(
        self,
        on_text: TextCallback,
        on_metadata: RecordCallback = _noop_record,
        on_error: RecordCallback = _noop_record,
    ) -> None:
        self._on_text = on_text
        self._on_metadata = on_metadata
        self._on_error = on_error
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._closed = False

    def feed(self, chunk: Chunk) -> None:
        if self._closed:
            raise RuntimeError("demultiplexer already closed")
        self._buffer += self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._dispatch(line)

    def _dispatch(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            frame = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("stream_frame_malformed", extra={"length": len(line)})
            self._on_error(error_record("Malformed stream frame", "framing"))
            return
        kind = frame.get("type") if isinstance(frame, dict) else None
        if kind == "text":
            text = frame.get("text") or ""
            if text:
                self._on_text(text)
        elif kind == "metadata":
            self._on_metadata(dict(frame.get("data") or {}))
        elif kind == "error":
            self._on_error({"error": frame.get("error", ""), "stage": frame.get("stage", "")})
        else:
            logger.debug("stream_frame_ignored", extra={"type": kind})

    def close(self) -> None:
        if self._closed:
            return
        self._buffer += self._decoder.decode(b"", final=True)
        self._closed = True
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._dispatch(line)


Demultiplexer = Union[SentinelDemultiplexer, EnvelopeDemultiplexer]


def demultiplexer_for(
    content_type: Optional[str],
    on_text: TextCallback,
    on_metadata: RecordCallback = _noop_record,
    on_error: RecordCallback = _noop_record,
) -> Demultiplexer:
    if content_type and NDJSON_MEDIA_TYPE in content_type.lower():
        return EnvelopeDemultiplexer(on_text, on_metadata, on_error)
    return SentinelDemultiplexer(on_text, on_metadata, on_error)
