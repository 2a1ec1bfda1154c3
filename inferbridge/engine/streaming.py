"""Token delivery between the decode loop and its consumer.

The decode loop (producer) runs on a worker thread and pushes tokens into a
stream; the consumer pulls them in order. A `None` sentinel is enqueued
exactly once when generation reaches any terminal state.

Three consumer shapes share the same producer interface:
- `TokenStream`: blocking iterator over text fragments.
- `AsyncTokenStream`: async iterator; items are handed to the event loop
  with `loop.call_soon_threadsafe`.
- `StreamingDispatcher`: drains a `TokenStream` on its own thread and calls
  a sink once per fragment, then once with `None`.

A consumer that stops early (iterator closed, sink raised, async task
cancelled) requests cancellation instead of leaving the loop unobserved.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
import uuid
from typing import AsyncIterator, Callable, Iterator

from .types import GenerationResult, Token

logger = logging.getLogger(__name__)

TokenSink = Callable[["str | None"], None]


class _StreamBase:
    """Producer side plus completion bookkeeping."""

    def __init__(self, cancel: threading.Event | None = None) -> None:
        self._cancel = cancel if cancel is not None else threading.Event()
        self._finish_lock = threading.Lock()
        self._finished = False
        self._done = threading.Event()
        self._result: GenerationResult | None = None

    # -------------------------------------------------------------------------
    # Producer
    # -------------------------------------------------------------------------

    def put(self, token: Token) -> None:
        if self._finished:
            raise RuntimeError("Cannot put tokens on a finished stream.")
        self._enqueue(token)

    def finish(self, result: GenerationResult) -> bool:
        """Record the terminal result and enqueue the sentinel.

        Returns False if the stream was already finished (sentinel not re-sent).
        """
        with self._finish_lock:
            if self._finished:
                return False
            self._finished = True
            self._result = result
        self._done.set()
        self._enqueue(None)
        return True

    def _enqueue(self, item: Token | None) -> None:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # Control / status
    # -------------------------------------------------------------------------

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Request cooperative cancellation (takes effect within one token)."""
        self._cancel.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def result(self) -> GenerationResult | None:
        """Terminal result, or None while generation is still running."""
        return self._result

    def wait(self, timeout: float | None = None) -> GenerationResult | None:
        """Block until generation finished; returns the result (None on timeout)."""
        self._done.wait(timeout)
        return self._result


class TokenStream(_StreamBase):
    """Blocking, single-consumer iterator over generated text fragments.

    Example:
        >>> with session.stream("2+2=") as stream:
        ...     for fragment in stream:
        ...         print(fragment, end="", flush=True)
        >>> stream.result.termination_reason
    """

    def __init__(self, cancel: threading.Event | None = None) -> None:
        super().__init__(cancel)
        self._queue: queue.Queue[Token | None] = queue.Queue()
        self._exhausted = False

    def _enqueue(self, item: Token | None) -> None:
        self._queue.put(item)

    def next_token(self, timeout: float | None = None) -> Token | None:
        """Next token in generation order, or None once the stream ended.

        Raises:
            queue.Empty: If `timeout` elapsed before a token arrived.
        """
        if self._exhausted:
            return None
        item = self._queue.get(timeout=timeout)
        if item is None:
            self._exhausted = True
        return item

    def tokens(self) -> Iterator[Token]:
        """Tokens in order; once cancellation is requested the rest are dropped.

        Abandoning the iterator before the end (break, garbage collection)
        cancels the generation.
        """
        try:
            while True:
                token = self.next_token()
                if token is None:
                    return
                if self._cancel.is_set():
                    continue
                yield token
        finally:
            if not self.done:
                self._cancel.set()

    def __iter__(self) -> Iterator[str]:
        for token in self.tokens():
            yield token.text

    def close(self) -> None:
        """Detach the consumer; an unfinished generation is cancelled."""
        if not self.done:
            self.cancel()

    def __enter__(self) -> "TokenStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class AsyncTokenStream(_StreamBase):
    """Async iterator over generated text fragments, bound to one event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, cancel: threading.Event | None = None) -> None:
        super().__init__(cancel)
        self._loop = loop
        self._queue: asyncio.Queue[Token | None] = asyncio.Queue()

    def _enqueue(self, item: Token | None) -> None:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Event loop closed: nobody is listening any more.
            self._cancel.set()

    async def tokens(self) -> AsyncIterator[Token]:
        try:
            while True:
                item = await self._queue.get()
                if item is None:
                    break
                if self._cancel.is_set():
                    continue
                yield item
        finally:
            # If the consumer stops early (disconnect / generator close), cancel generation promptly.
            if not self.done:
                self._cancel.set()

    async def __aiter__(self) -> AsyncIterator[str]:
        async for token in self.tokens():
            yield token.text


class StreamingDispatcher:
    """Forwards every fragment of a `TokenStream` to a sink, in order.

    The sink runs on the dispatcher thread and receives each fragment, then
    `None` exactly once, whatever the outcome. If the sink raises, generation
    is cancelled; remaining tokens are drained without being delivered.
    """

    def __init__(self, stream: TokenStream, sink: TokenSink) -> None:
        self._stream = stream
        self._sink = sink
        self._sink_error: BaseException | None = None
        self._delivered = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"inferbridge-dispatch-{uuid.uuid4().hex[:8]}",
            daemon=True,
        )

    @property
    def stream(self) -> TokenStream:
        return self._stream

    @property
    def sink_error(self) -> BaseException | None:
        return self._sink_error

    def start(self) -> "StreamingDispatcher":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._stream.cancel()

    def join(self, timeout: float | None = None) -> bool:
        """Wait until the end sentinel was delivered to the sink."""
        return self._delivered.wait(timeout)

    def wait(self, timeout: float | None = None) -> GenerationResult | None:
        """Wait for sentinel delivery and return the terminal result."""
        if not self.join(timeout):
            return None
        return self._stream.result

    def _run(self) -> None:
        try:
            for token in self._stream.tokens():
                try:
                    self._sink(token.text)
                except Exception as exc:
                    logger.warning("Token sink failed; cancelling generation", exc_info=True)
                    self._sink_error = exc
                    self._stream.cancel()
        finally:
            try:
                self._sink(None)
            except Exception:
                logger.warning("Token sink failed on end of stream", exc_info=True)
            self._delivered.set()
