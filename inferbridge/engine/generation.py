"""Decode loop for a single generation request.

Per request the engine walks INIT -> TOKENIZING -> DECODING and ends in
exactly one of COMPLETED, CANCELLED or FAILED. Each decode iteration checks,
in this order:

1. cancellation requested          -> CANCELLED
2. end-of-sequence token sampled   -> COMPLETED (NATURAL_STOP)
3. cancellation during delivery    -> CANCELLED
4. token budget / context exhausted -> COMPLETED (MAX_LENGTH_REACHED)
5. adapter fault                   -> FAILED (ENGINE_ERROR)

Fragments are handed over before the next step starts; nothing is sampled
ahead, so a cancellation takes effect within one token.
"""

from __future__ import annotations

import codecs
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .config import GenerationConfig
from .errors import EngineError, GenerationError, ModelNotLoaded, PromptTooLong, TokenizationError
from .model_handle import ModelHandle
from .sampling import Sampler
from .types import (
    GenerationMode,
    GenerationPhase,
    GenerationResult,
    TerminationReason,
    Timing,
    Token,
    Usage,
)

logger = logging.getLogger(__name__)

TokenEmitter = Callable[[Token], None]


@dataclass
class _GenerationState:
    """Mutable per-request state. Never shared across requests."""

    mode: GenerationMode
    phase: GenerationPhase = GenerationPhase.INIT
    tokens_generated: int = 0
    text_parts: list[str] = field(default_factory=list)
    termination_reason: TerminationReason | None = None
    error: GenerationError | None = None

    def advance(self, phase: GenerationPhase) -> None:
        if self.phase.is_terminal:
            raise RuntimeError(f"Generation already finished ({self.phase.value}).")
        self.phase = phase

    def finish(self, reason: TerminationReason) -> None:
        if reason is TerminationReason.CANCELLED:
            self.advance(GenerationPhase.CANCELLED)
        else:
            self.advance(GenerationPhase.COMPLETED)
        self.termination_reason = reason

    def fail(self, error: GenerationError) -> None:
        self.advance(GenerationPhase.FAILED)
        self.termination_reason = TerminationReason.ENGINE_ERROR
        self.error = error


class GenerationEngine:
    """Runs the decode loop against a model handle.

    The engine does no locking of its own: the session controller only
    calls `run()` while holding exclusivity over the handle.
    """

    def __init__(self, handle: ModelHandle | None) -> None:
        self._handle = handle

    def run(
        self,
        prompt: str,
        *,
        config: GenerationConfig,
        cancel: threading.Event,
        mode: GenerationMode = GenerationMode.BLOCKING,
        emit: TokenEmitter | None = None,
    ) -> GenerationResult:
        """Generate a completion for `prompt`.

        Never raises for request-level failures: they are reported through
        `GenerationResult.error` so the caller can release the session first.

        Args:
            prompt: Fully formatted prompt text.
            config: Sampling / stopping policy.
            cancel: Cooperative cancellation flag, checked once per token.
            mode: BLOCKING accumulates text; STREAMING calls `emit` per token.
            emit: Token consumer, required in STREAMING mode.
        """
        if mode is GenerationMode.STREAMING and emit is None:
            raise ValueError("Streaming mode requires an emit callback.")

        state = _GenerationState(mode=mode)
        started = time.monotonic()
        first_token_at: float | None = None
        prompt_tokens = 0

        try:
            handle = self._handle
            if handle is None or not handle.is_loaded:
                raise ModelNotLoaded(None if handle is None else handle.path)
            adapter = handle.adapter

            state.advance(GenerationPhase.TOKENIZING)
            prompt_ids = adapter.tokenize(prompt)
            prompt_tokens = len(prompt_ids)
            if prompt_tokens == 0:
                raise TokenizationError("Prompt produced no tokens.", handle.path)
            n_ctx = int(adapter.n_ctx)
            if n_ctx > 0 and prompt_tokens > n_ctx:
                raise PromptTooLong(prompt_tokens, n_ctx, handle.path)

            state.advance(GenerationPhase.DECODING)
            sampler = Sampler(config)
            # Tokens can split a multi-byte character; decode incrementally.
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            n_past = prompt_tokens

            adapter.reset()
            logits = adapter.eval(prompt_ids)

            while True:
                if cancel.is_set():
                    state.finish(TerminationReason.CANCELLED)
                    break

                token_id = sampler.sample(logits)
                if first_token_at is None:
                    first_token_at = time.monotonic()

                if adapter.is_end_of_sequence(token_id):
                    state.finish(TerminationReason.NATURAL_STOP)
                    break

                text = decoder.decode(adapter.detokenize([token_id]))
                index = state.tokens_generated
                state.tokens_generated += 1
                if text:
                    if mode is GenerationMode.STREAMING:
                        emit(Token(id=token_id, text=text, index=index))
                    else:
                        state.text_parts.append(text)

                if cancel.is_set():
                    state.finish(TerminationReason.CANCELLED)
                    break
                if state.tokens_generated >= config.max_tokens:
                    state.finish(TerminationReason.MAX_LENGTH_REACHED)
                    break
                if n_ctx > 0 and n_past + 1 > n_ctx:
                    logger.debug("Context window full after %d tokens", state.tokens_generated)
                    state.finish(TerminationReason.MAX_LENGTH_REACHED)
                    break

                logits = adapter.eval([token_id])
                n_past += 1

        except GenerationError as exc:
            logger.debug("Generation failed (%s): %s", exc.kind.value, exc.message)
            state.fail(exc)
        except Exception as exc:
            logger.exception("Engine fault during %s", state.phase.value)
            path = None if self._handle is None else self._handle.path
            state.fail(EngineError(f"Generation failed: {exc}", path))

        ended = time.monotonic()
        result = GenerationResult(
            text="".join(state.text_parts),
            termination_reason=state.termination_reason,
            usage=Usage(prompt_tokens=prompt_tokens, completion_tokens=state.tokens_generated),
            timing=_timing(started, first_token_at, ended, state.tokens_generated),
            error=state.error,
        )
        logger.debug(
            "Generation finished: reason=%s completion_tokens=%d total_s=%.3f",
            result.termination_reason.value,
            result.usage.completion_tokens,
            result.timing.total_s,
        )
        return result


def _timing(started: float, first_token_at: float | None, ended: float, completion_tokens: int) -> Timing:
    prefill_s = None if first_token_at is None else max(first_token_at - started, 0.0)
    decode_s = None
    if first_token_at is not None:
        decode_s = max(ended - first_token_at, 0.0)

    tok_per_s = None
    if decode_s and decode_s > 0 and completion_tokens > 0:
        tok_per_s = completion_tokens / decode_s

    return Timing(
        prefill_s=prefill_s,
        decode_s=decode_s,
        total_s=max(ended - started, 0.0),
        tok_per_s=tok_per_s,
    )
