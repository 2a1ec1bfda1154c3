import asyncio
import threading

import pytest


torch = pytest.importorskip("torch", reason="torch not installed")


from inferbridge.engine.streaming import AsyncTokenStream, StreamingDispatcher, TokenStream
from inferbridge.engine.types import GenerationResult, TerminationReason, Token, Usage


def _result(reason=TerminationReason.NATURAL_STOP) -> GenerationResult:
    return GenerationResult(text="", termination_reason=reason, usage=Usage(prompt_tokens=1, completion_tokens=2))


def _produce(stream, texts, reason=TerminationReason.NATURAL_STOP) -> None:
    for i, text in enumerate(texts):
        stream.put(Token(id=100 + i, text=text, index=i))
    stream.finish(_result(reason))


def test_token_stream_yields_fragments_then_stops():
    stream = TokenStream()
    _produce(stream, ["a", "b"])

    assert list(stream) == ["a", "b"]
    assert stream.done
    assert stream.result.termination_reason is TerminationReason.NATURAL_STOP
    assert stream.next_token() is None


def test_finish_sends_sentinel_exactly_once():
    stream = TokenStream()
    assert stream.finish(_result()) is True
    assert stream.finish(_result(TerminationReason.ENGINE_ERROR)) is False

    assert stream.next_token(timeout=1) is None
    assert stream.result.termination_reason is TerminationReason.NATURAL_STOP
    assert stream._queue.empty()


def test_put_after_finish_raises():
    stream = TokenStream()
    stream.finish(_result())
    with pytest.raises(RuntimeError):
        stream.put(Token(id=1, text="x", index=0))


def test_tokens_after_cancel_are_dropped():
    stream = TokenStream()
    stream.put(Token(id=1, text="a", index=0))
    stream.cancel()
    stream.put(Token(id=2, text="b", index=1))
    stream.finish(_result(TerminationReason.CANCELLED))

    assert list(stream) == []
    assert stream.cancel_requested


def test_close_cancels_only_unfinished_stream():
    running = TokenStream()
    with running:
        pass
    assert running.cancel_requested

    finished = TokenStream()
    finished.finish(_result())
    finished.close()
    assert not finished.cancel_requested


def test_abandoned_iterator_cancels_unfinished_stream():
    stream = TokenStream()
    stream.put(Token(id=1, text="a", index=0))
    stream.put(Token(id=2, text="b", index=1))

    for fragment in stream:
        assert fragment == "a"
        break

    assert stream.cancel_requested


def test_wait_times_out_while_running():
    assert TokenStream().wait(timeout=0.01) is None


def test_dispatcher_delivers_fragments_then_one_sentinel():
    stream = TokenStream()
    calls = []
    dispatcher = StreamingDispatcher(stream, calls.append).start()

    producer = threading.Thread(target=_produce, args=(stream, ["x", "y", "z"]))
    producer.start()
    producer.join()
    result = dispatcher.wait(timeout=5)

    assert calls == ["x", "y", "z", None]
    assert result.termination_reason is TerminationReason.NATURAL_STOP
    assert dispatcher.sink_error is None


def test_dispatcher_sentinel_survives_failing_sink():
    stream = TokenStream()
    calls = []

    def sink(fragment):
        calls.append(fragment)
        if fragment is not None:
            raise ValueError("bad sink")

    dispatcher = StreamingDispatcher(stream, sink).start()
    _produce(stream, ["a", "b", "c"])

    assert dispatcher.join(timeout=5)
    assert calls == ["a", None]
    assert isinstance(dispatcher.sink_error, ValueError)
    assert stream.cancel_requested


def test_async_stream_iterates_fragments():
    async def _run():
        stream = AsyncTokenStream(asyncio.get_running_loop())
        producer = threading.Thread(target=_produce, args=(stream, ["p", "q"]))
        producer.start()
        out = [fragment async for fragment in stream]
        producer.join()
        return out, stream

    out, stream = asyncio.run(_run())
    assert out == ["p", "q"]
    assert stream.result.termination_reason is TerminationReason.NATURAL_STOP
    assert not stream.cancel_requested
