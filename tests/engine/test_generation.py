import threading

import pytest


torch = pytest.importorskip("torch", reason="torch not installed")


from inferbridge.engine.config import GenerationConfig, ModelConfig
from inferbridge.engine.errors import (
    EngineError,
    GenerationErrorKind,
    ModelNotLoaded,
    PromptTooLong,
    TokenizationError,
)
from inferbridge.engine.generation import GenerationEngine
from inferbridge.engine.model_handle import ModelHandle
from inferbridge.engine.types import GenerationMode, TerminationReason
from tests.engine.fakes import scripted_adapter


def _engine(**script) -> tuple[GenerationEngine, object]:
    adapter = scripted_adapter(**script)()
    adapter.load("fake.gguf", ModelConfig())
    handle = ModelHandle(path="fake.gguf", family="fake", adapter=adapter, config=ModelConfig())
    return GenerationEngine(handle), adapter


def test_blocking_run_stops_on_end_of_sequence():
    engine, _ = _engine(reply="4")
    result = engine.run("2+2=", config=GenerationConfig(), cancel=threading.Event())

    assert result.ok
    assert result.text == "4"
    assert result.termination_reason is TerminationReason.NATURAL_STOP
    assert result.usage.prompt_tokens == 5  # BOS + 4 chars
    assert result.usage.completion_tokens == 1
    assert result.timing.total_s is not None


def test_max_tokens_reached():
    engine, _ = _engine(reply="hello")
    result = engine.run("hi", config=GenerationConfig(max_tokens=3), cancel=threading.Event())

    assert result.text == "hel"
    assert result.termination_reason is TerminationReason.MAX_LENGTH_REACHED
    assert result.usage.completion_tokens == 3


def test_context_window_full_counts_as_max_length():
    # 3 prompt tokens + room for 2 more evaluated tokens.
    engine, _ = _engine(reply="abcdefgh", context_size=5)
    result = engine.run("hi", config=GenerationConfig(max_tokens=100), cancel=threading.Event())

    assert result.termination_reason is TerminationReason.MAX_LENGTH_REACHED
    assert result.text == "abc"


def test_cancellation_wins_over_end_of_sequence():
    # The first sampled token would be EOS, but cancellation is checked first.
    engine, _ = _engine(reply="")
    cancel = threading.Event()
    cancel.set()
    result = engine.run("x", config=GenerationConfig(), cancel=cancel)

    assert result.termination_reason is TerminationReason.CANCELLED
    assert result.error is None
    assert result.usage.completion_tokens == 0


def test_cancel_mid_stream_stops_after_current_token():
    engine, _ = _engine(reply="abcdefghij")
    cancel = threading.Event()
    seen: list[str] = []

    def emit(token):
        seen.append(token.text)
        if len(seen) == 3:
            cancel.set()

    result = engine.run(
        "x",
        config=GenerationConfig(),
        cancel=cancel,
        mode=GenerationMode.STREAMING,
        emit=emit,
    )

    assert seen == ["a", "b", "c"]
    assert result.termination_reason is TerminationReason.CANCELLED
    assert result.text == ""


def test_cancel_on_last_budgeted_token_wins_over_max_length():
    engine, _ = _engine(reply="abcdef")
    cancel = threading.Event()
    seen: list[str] = []

    def emit(token):
        seen.append(token.text)
        if len(seen) == 3:
            cancel.set()

    result = engine.run(
        "x",
        config=GenerationConfig(max_tokens=3),
        cancel=cancel,
        mode=GenerationMode.STREAMING,
        emit=emit,
    )

    assert seen == ["a", "b", "c"]
    assert result.termination_reason is TerminationReason.CANCELLED


def test_streaming_emits_tokens_in_order_with_indexes():
    engine, _ = _engine(reply="abc")
    tokens = []
    result = engine.run(
        "x",
        config=GenerationConfig(),
        cancel=threading.Event(),
        mode=GenerationMode.STREAMING,
        emit=tokens.append,
    )

    assert [t.text for t in tokens] == ["a", "b", "c"]
    assert [t.index for t in tokens] == [0, 1, 2]
    assert result.termination_reason is TerminationReason.NATURAL_STOP


def test_streaming_requires_emit():
    engine, _ = _engine()
    with pytest.raises(ValueError):
        engine.run("x", config=GenerationConfig(), cancel=threading.Event(), mode=GenerationMode.STREAMING)


def test_model_not_loaded():
    result = GenerationEngine(None).run("x", config=GenerationConfig(), cancel=threading.Event())

    assert isinstance(result.error, ModelNotLoaded)
    assert result.error.kind is GenerationErrorKind.MODEL_NOT_LOADED
    assert result.termination_reason is TerminationReason.ENGINE_ERROR


def test_unloaded_handle_never_generates():
    engine, adapter = _engine(reply="abc")
    engine._handle.unload()
    result = engine.run("x", config=GenerationConfig(), cancel=threading.Event())

    assert isinstance(result.error, ModelNotLoaded)
    assert adapter.eval_calls == 0


def test_prompt_too_long():
    engine, adapter = _engine(context_size=4)
    result = engine.run("abcdefgh", config=GenerationConfig(), cancel=threading.Event())

    assert isinstance(result.error, PromptTooLong)
    assert result.error.prompt_tokens == 9
    assert adapter.eval_calls == 0


def test_tokenization_error():
    engine, _ = _engine(fail_tokenize=True)
    result = engine.run("x", config=GenerationConfig(), cancel=threading.Event())

    assert isinstance(result.error, TokenizationError)
    assert result.termination_reason is TerminationReason.ENGINE_ERROR


def test_native_fault_becomes_engine_error():
    engine, _ = _engine(reply="abcdef", fail_at_step=3)
    result = engine.run("x", config=GenerationConfig(), cancel=threading.Event())

    assert isinstance(result.error, EngineError)
    assert "native decode fault" in result.error.message
    assert result.termination_reason is TerminationReason.ENGINE_ERROR
    assert result.usage.completion_tokens == 3


def test_split_utf8_character_is_delivered_once_complete():
    raw = "é!".encode("utf-8")  # b"\xc3\xa9!"

    class _ByteAdapter(scripted_adapter(reply="\xc3\xa9!")):
        def detokenize(self, token_ids):
            return bytes(t - self.OFFSET for t in token_ids)

    adapter = _ByteAdapter()
    adapter.load("fake.gguf", ModelConfig())
    handle = ModelHandle(path="fake.gguf", family="fake", adapter=adapter, config=ModelConfig())
    tokens = []
    result = GenerationEngine(handle).run(
        "x",
        config=GenerationConfig(),
        cancel=threading.Event(),
        mode=GenerationMode.STREAMING,
        emit=tokens.append,
    )

    assert "".join(t.text for t in tokens) == raw.decode("utf-8")
    assert [t.text for t in tokens] == ["é", "!"]
    assert result.usage.completion_tokens == 3


def test_seeded_sampling_is_reproducible():
    config = GenerationConfig(temperature=1.0, seed=11, max_tokens=40)
    first, _ = _engine(reply="x" * 40, decoy=True)
    second, _ = _engine(reply="x" * 40, decoy=True)

    a = first.run("p", config=config, cancel=threading.Event())
    b = second.run("p", config=config, cancel=threading.Event())

    assert a.text == b.text
    assert set(a.text) <= {"x", "~"}
