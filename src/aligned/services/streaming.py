"""Server side of the assistant stream.

``TokenStream`` bridges a blocking model iterator into the event loop, one
``next()`` per worker-thread hop, under the pipeline deadline.
``StreamMultiplexer`` forwards tokens verbatim, runs the completion side
effect, then writes exactly one terminal record.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, List, Optional

from starlette.concurrency import run_in_threadpool

from ..errors import AssistantError, PersistenceError, PipelineTimeoutError, UpstreamModelError
from ..framing import Codec
from ..observability.metrics import ASSISTANT_REQUESTS, STREAM_FRAMES

logger = logging.getLogger(__name__)

_DONE = object()

CompletionHook = Callable[[str], Dict[str, Any]]
DisconnectProbe = Callable[[], Awaitable[bool]]


class TokenStream:
    """Async view over a blocking token iterator with an absolute deadline."""

    def __init__(self, tokens: Iterator[str], deadline: Optional[float] = None) -> None:
        self._tokens = tokens
        self._deadline = deadline
        self._closed = False

    def _remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return self._deadline - asyncio.get_running_loop().time()

    async def next(self, stage: str = "stream") -> Optional[str]:
        """Return the next token, or ``None`` once the model is done."""

        remaining = self._remaining()
        if remaining is not None and remaining <= 0:
            raise PipelineTimeoutError(stage=stage)
        try:
            loop = asyncio.get_running_loop()
            # executor futures stay cancellable while the worker is blocked on a read
            item = await asyncio.wait_for(loop.run_in_executor(None, next, self._tokens, _DONE), remaining)
        except asyncio.TimeoutError as exc:
            raise PipelineTimeoutError(stage=stage) from exc
        if item is _DONE:
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close = getattr(self._tokens, "close", None)
        if close is None:
            return
        try:
            close()
        except ValueError as exc:
            # generator still running in a worker thread; it ends when its read returns
            logger.info("upstream_close_deferred", extra={"err": str(exc)})


class StreamState(str, enum.Enum):
    STREAMING = "streaming"
    COMPLETING = "completing"
    METADATA_SENT = "metadata_sent"
    COMPLETED = "completed"
    ERROR = "error"


class StreamMultiplexer:
    """Turn model tokens into wire frames for one request.

    With an ``on_complete`` hook the stream ends
    ``STREAMING -> COMPLETING -> METADATA_SENT`` (or ``ERROR`` when the hook
    fails). Without one it ends in ``COMPLETED`` after the last text frame.
    Nothing is written once a terminal state is reached.
    """

    def __init__(
        self,
        tokens: TokenStream,
        codec: Codec,
        *,
        variant: str,
        user_id: str,
        first: Optional[str] = None,
        on_complete: Optional[CompletionHook] = None,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> None:
        self._tokens = tokens
        self.codec = codec
        self.variant = variant
        self.user_id = user_id
        self._first = first
        self._on_complete = on_complete
        self._is_disconnected = is_disconnected
        self.state = StreamState.STREAMING
        self.text_parts: List[str] = []

    @property
    def media_type(self) -> str:
        return self.codec.media_type

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def _text_frame(self, token: str) -> bytes:
        self.text_parts.append(token)
        STREAM_FRAMES.labels(kind="text").inc()
        return self.codec.encode_text(token)

    def _error_frame(self, exc: AssistantError) -> bytes:
        self.state = StreamState.ERROR
        logger.warning(
            "stream_failed",
            extra={"user_id": self.user_id, "stage": exc.stage, "variant": self.variant, "err": exc.message},
        )
        STREAM_FRAMES.labels(kind="error").inc()
        ASSISTANT_REQUESTS.labels(variant=self.variant, outcome="error").inc()
        return self.codec.encode_error(exc.message, exc.stage)

    async def frames(self) -> AsyncIterator[bytes]:
        try:
            if self._first:
                yield self._text_frame(self._first)
            while True:
                if self._is_disconnected is not None and await self._is_disconnected():
                    self.state = StreamState.ERROR
                    logger.info("stream_client_disconnected", extra={"user_id": self.user_id, "variant": self.variant})
                    ASSISTANT_REQUESTS.labels(variant=self.variant, outcome="disconnected").inc()
                    return
                try:
                    token = await self._tokens.next()
                except AssistantError as exc:
                    yield self._error_frame(exc)
                    return
                except Exception:
                    logger.exception("stream_upstream_crashed", extra={"user_id": self.user_id, "stage": "stream"})
                    yield self._error_frame(UpstreamModelError(stage="stream"))
                    return
                if token is None:
                    break
                yield self._text_frame(token)

            if self._on_complete is None:
                self.state = StreamState.COMPLETED
                ASSISTANT_REQUESTS.labels(variant=self.variant, outcome="completed").inc()
                return

            self.state = StreamState.COMPLETING
            if not self.text.strip():
                yield self._error_frame(UpstreamModelError("The model returned an empty reply.", stage="model"))
                return
            try:
                payload = await run_in_threadpool(self._on_complete, self.text)
            except AssistantError as exc:
                yield self._error_frame(exc)
                return
            except Exception:
                logger.exception("stream_completion_failed", extra={"user_id": self.user_id, "stage": "persist"})
                yield self._error_frame(PersistenceError(stage="persist"))
                return
            self.state = StreamState.METADATA_SENT
            STREAM_FRAMES.labels(kind="metadata").inc()
            ASSISTANT_REQUESTS.labels(variant=self.variant, outcome="completed").inc()
            yield self.codec.encode_metadata(payload)
        finally:
            self._tokens.close()
