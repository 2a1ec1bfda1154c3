"""Single-flight inference session over one loaded model.

This module provides the public entry points of the bridge:
- model load / unload / reload
- blocking generation (`generate`, `complete`)
- streaming generation (`stream`, `astream`, `generate_streaming`)
- cooperative cancellation and timeouts

It deliberately contains no prompt templating and no transport code.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from .config import GenerationConfig, ModelConfig, _coerce_int
from .discovery import find_model_path
from .errors import (
    EngineError,
    GenerationCancelled,
    LoadError,
    ModelFileNotFound,
    SessionBusy,
)
from .generation import GenerationEngine
from .model_handle import ModelHandle
from .streaming import AsyncTokenStream, StreamingDispatcher, TokenSink, TokenStream, _StreamBase
from .types import GenerationMode, GenerationResult, ModelStatus, TerminationReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionConfig:
    """Session-wide defaults."""

    family: str = "llama_cpp"
    model: ModelConfig = field(default_factory=ModelConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SessionConfig":
        """Defaults overridden by INFERBRIDGE_* environment variables."""
        env = os.environ if environ is None else environ
        model = ModelConfig()
        if env.get("INFERBRIDGE_N_CTX"):
            model = replace(model, n_ctx=_coerce_int(env["INFERBRIDGE_N_CTX"], "INFERBRIDGE_N_CTX"))
        if env.get("INFERBRIDGE_N_GPU_LAYERS"):
            n_gpu_layers = _coerce_int(env["INFERBRIDGE_N_GPU_LAYERS"], "INFERBRIDGE_N_GPU_LAYERS")
            model = replace(model, n_gpu_layers=n_gpu_layers)
        model.validate()
        return cls(
            family=env.get("INFERBRIDGE_MODEL_FAMILY") or "llama_cpp",
            model=model,
            generation=GenerationConfig.from_env(env),
        )


class SessionController:
    """Gatekeeper for one model handle.

    Thread-safety:
        The native context is not thread-safe. At most one operation (a
        generation, a load or an unload) holds the session at a time. The
        session is acquired with a non-blocking compare-and-set; contention
        raises `SessionBusy` immediately instead of queueing.

    Example:
        >>> with SessionController() as session:
        ...     session.load_model("models/medgemma-4b-instruct.Q4_K_M.gguf")
        ...     print(session.generate("2+2=", max_tokens=8))
    """

    def __init__(self, config: SessionConfig | None = None) -> None:
        self._config = config or SessionConfig()
        self._config.model.validate()
        self._config.generation.validate()
        self._lock = threading.Lock()
        self._handle: ModelHandle | None = None
        self._last_load_error: LoadError | None = None
        self._active_cancel: threading.Event | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def status(self) -> ModelStatus:
        handle = self._handle
        if handle is not None and handle.is_loaded:
            return ModelStatus.LOADED
        if self._last_load_error is not None:
            return ModelStatus.FAILED
        return ModelStatus.UNLOADED

    @property
    def is_loaded(self) -> bool:
        return self.status is ModelStatus.LOADED

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @property
    def last_load_error(self) -> LoadError | None:
        return self._last_load_error

    @property
    def model_info(self) -> dict[str, Any]:
        handle = self._handle
        if handle is None:
            return {"status": self.status.value}
        return handle.model_info

    # -------------------------------------------------------------------------
    # Model lifecycle
    # -------------------------------------------------------------------------

    def load_model(
        self,
        path: str | os.PathLike[str],
        *,
        family: str | None = None,
        config: ModelConfig | None = None,
    ) -> ModelHandle:
        """Load (or reload) the model at `path`.

        The previous model, if any, is released before the new one is
        loaded. On failure the session has no model and `status` is FAILED.

        Raises:
            SessionBusy: A generation is active.
            LoadError: The new model could not be loaded.
        """
        self._acquire_idle()
        try:
            self._drop_handle()
            try:
                handle = ModelHandle.load(
                    os.fspath(path),
                    family=family or self._config.family,
                    config=config or self._config.model,
                )
            except LoadError as exc:
                self._last_load_error = exc
                raise
            self._last_load_error = None
            self._handle = handle
            return handle
        finally:
            self._lock.release()

    def ensure_loaded(
        self,
        candidates: Sequence[str],
        search_dirs: Iterable[str | Path],
    ) -> ModelHandle:
        """Return the loaded model, loading the first discovered candidate if needed."""
        handle = self._handle
        if handle is not None and handle.is_loaded:
            return handle
        dirs = list(search_dirs)
        path = find_model_path(candidates, dirs)
        if path is None:
            wanted = ", ".join(candidates)
            exc = ModelFileNotFound(wanted, f"none found in {', '.join(str(d) for d in dirs)}")
            self._last_load_error = exc
            logger.warning("No model found: %s", exc.message)
            raise exc
        return self.load_model(path)

    def is_available(
        self,
        candidates: Sequence[str],
        search_dirs: Iterable[str | Path],
    ) -> bool:
        """True if a model is loaded or one of `candidates` exists on disk.

        Discovery only: nothing is loaded and no load error is recorded.
        """
        if self.is_loaded:
            return True
        return find_model_path(candidates, search_dirs) is not None

    def unload(self) -> None:
        """Release the model.

        Raises:
            SessionBusy: A generation is active.
        """
        self._acquire_idle()
        try:
            self._drop_handle()
        finally:
            self._lock.release()

    def release_if_idle(self) -> bool:
        """Drop the model if no generation is running (e.g. on memory pressure).

        Returns True if a model was released.
        """
        if not self._lock.acquire(blocking=False):
            logger.info("Memory release skipped: generation in progress")
            return False
        try:
            released = self._handle is not None
            self._drop_handle()
            return released
        finally:
            self._lock.release()

    def shutdown(self, timeout: float | None = None) -> None:
        """Cancel any active generation, wait for it to stop, and unload."""
        self.cancel()
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise SessionBusy(self._model_path())
        try:
            self._drop_handle()
        finally:
            self._lock.release()

    def close(self) -> None:
        self.shutdown()

    def __enter__(self) -> "SessionController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # -------------------------------------------------------------------------
    # Blocking generation
    # -------------------------------------------------------------------------

    def complete(self, prompt: str, **overrides: Any) -> GenerationResult:
        """Run a generation on the calling thread and return its result.

        Cancellation (explicit or by timeout) is a normal outcome here: the
        partial text is returned with termination reason CANCELLED.

        Raises:
            SessionBusy: Another generation is active.
            GenerationError: ModelNotLoaded, PromptTooLong, TokenizationError
                or EngineError.
        """
        config = self._config.generation.merged(overrides)
        cancel = threading.Event()
        self._acquire_for_generation(cancel)
        timer = _arm_timeout(config, cancel)
        try:
            result = GenerationEngine(self._handle).run(
                prompt,
                config=config,
                cancel=cancel,
                mode=GenerationMode.BLOCKING,
            )
        finally:
            if timer is not None:
                timer.cancel()
            self._release_generation()

        if result.error is not None:
            raise result.error
        return result

    def generate(self, prompt: str, **overrides: Any) -> str:
        """Blocking full-text generation.

        Raises:
            GenerationCancelled: The request was cancelled or timed out.
            GenerationError: Any other failure (see `complete`).
        """
        result = self.complete(prompt, **overrides)
        if result.cancelled:
            raise GenerationCancelled(self._model_path())
        return result.text

    # -------------------------------------------------------------------------
    # Streaming generation
    # -------------------------------------------------------------------------

    def stream(self, prompt: str, **overrides: Any) -> TokenStream:
        """Start a generation on a worker thread; iterate the returned stream.

        Returns once the request is accepted. The stream yields text
        fragments in order and ends after the terminal state is reached.

        Raises:
            SessionBusy: Another generation is active (nothing is started).
        """
        config = self._config.generation.merged(overrides)
        stream = TokenStream()
        self._start_worker(prompt, config, stream)
        return stream

    def generate_streaming(self, prompt: str, on_token: TokenSink, **overrides: Any) -> StreamingDispatcher:
        """Start a generation and deliver each fragment to `on_token`.

        `on_token` is called once per fragment, then once with `None` when
        the stream ends (success, failure or cancellation). The returned
        dispatcher can cancel the request and wait for the final result.

        Raises:
            SessionBusy: Another generation is active; `on_token` is never called.
        """
        stream = self.stream(prompt, **overrides)
        return StreamingDispatcher(stream, on_token).start()

    def astream(self, prompt: str, **overrides: Any) -> AsyncIterator[str]:
        """Start a generation and return an async iterator over its fragments.

        Must be called from a running event loop. The session is taken when
        this method is called, not on the first `__anext__`. Leaving the
        `async for` early (break, task cancellation) cancels the generation.

        Raises:
            SessionBusy: Another generation is active (nothing is started).
        """
        loop = asyncio.get_running_loop()
        config = self._config.generation.merged(overrides)
        stream = AsyncTokenStream(loop)
        self._start_worker(prompt, config, stream)
        return _iterate_async(stream)

    def cancel(self) -> bool:
        """Cancel the active generation, if any. Returns True if one was running."""
        cancel = self._active_cancel
        if cancel is None:
            return False
        cancel.set()
        return True

    # -------------------------------------------------------------------------
    # Internal: exclusivity
    # -------------------------------------------------------------------------

    def _acquire_idle(self) -> None:
        if not self._lock.acquire(blocking=False):
            raise SessionBusy(self._model_path())

    def _acquire_for_generation(self, cancel: threading.Event) -> None:
        self._acquire_idle()
        self._active_cancel = cancel

    def _release_generation(self) -> None:
        self._active_cancel = None
        self._lock.release()

    def _drop_handle(self) -> None:
        """Unload the current handle. Caller holds the lock."""
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.unload()

    def _model_path(self) -> str | None:
        handle = self._handle
        return None if handle is None else handle.path

    def _start_worker(self, prompt: str, config: GenerationConfig, stream: _StreamBase) -> None:
        cancel = stream.cancel_event
        self._acquire_for_generation(cancel)
        timer: threading.Timer | None = None
        try:
            engine = GenerationEngine(self._handle)
            timer = _arm_timeout(config, cancel)

            def worker() -> None:
                result: GenerationResult | None = None
                try:
                    result = engine.run(
                        prompt,
                        config=config,
                        cancel=cancel,
                        mode=GenerationMode.STREAMING,
                        emit=stream.put,
                    )
                except Exception as exc:
                    logger.exception("Streaming worker crashed")
                    result = GenerationResult(
                        text="",
                        termination_reason=TerminationReason.ENGINE_ERROR,
                        error=EngineError(f"Generation failed: {exc}", self._model_path()),
                    )
                finally:
                    try:
                        if timer is not None:
                            timer.cancel()
                        self._release_generation()
                    finally:
                        if result is None:
                            result = GenerationResult(
                                text="",
                                termination_reason=TerminationReason.ENGINE_ERROR,
                                error=EngineError("Generation aborted.", self._model_path()),
                            )
                        stream.finish(result)

            thread = threading.Thread(target=worker, name=f"inferbridge-gen-{uuid.uuid4().hex}", daemon=True)
            thread.start()
        except BaseException:
            if timer is not None:
                timer.cancel()
            self._release_generation()
            raise


def _arm_timeout(config: GenerationConfig, cancel: threading.Event) -> threading.Timer | None:
    if config.timeout_s is None:
        return None
    timer = threading.Timer(config.timeout_s, cancel.set)
    timer.daemon = True
    timer.start()
    return timer


async def _iterate_async(stream: AsyncTokenStream) -> AsyncIterator[str]:
    try:
        async for fragment in stream:
            yield fragment
    finally:
        if not stream.done:
            stream.cancel()
