"""Adapter for GGUF models served in-process by llama.cpp."""

from __future__ import annotations

import gc
import logging
import os
from typing import TYPE_CHECKING, Any

from ..errors import (
    EngineInitFailed,
    ModelFileNotFound,
    ModelOutOfMemory,
    TokenizationError,
    UnsupportedModelFormat,
)
from .base import BaseAdapter

if TYPE_CHECKING:
    import torch

    from ..config import ModelConfig

logger = logging.getLogger(__name__)

GGUF_MAGIC = b"GGUF"

# Metadata keys that name additional end-of-generation tokens (e.g. Gemma's <end_of_turn>).
_EOG_METADATA_KEYS = (
    "tokenizer.ggml.eos_token_id",
    "tokenizer.ggml.eot_token_id",
    "tokenizer.ggml.eom_token_id",
)


class LlamaCppAdapter(BaseAdapter):
    """
    Adapter for quantized GGUF models via `llama_cpp.Llama`.

    Tokenization, the forward pass and detokenization are owned by
    llama.cpp; sampling happens above this layer on the returned logits.

    Thread Safety:
        This adapter is NOT thread-safe. The session controller guarantees a
        single generation drives it at a time.

    Example:
        >>> adapter = LlamaCppAdapter()
        >>> adapter.load("models/medgemma-4b-instruct.Q4_K_M.gguf", ModelConfig())
        >>> ids = adapter.tokenize("2+2=")
        >>> logits = adapter.eval(ids)
    """

    def __init__(self) -> None:
        self._llm = None
        self._model_path: str | None = None
        self._eog_ids: frozenset[int] = frozenset()
        self._n_vocab = 0

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def llm(self):
        """Access the underlying `llama_cpp.Llama` (for advanced use cases)."""
        return self._llm

    @property
    def n_ctx(self) -> int:
        self._ensure_loaded()
        return int(self._llm.n_ctx())

    @property
    def model_info(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "model_path": self._model_path,
            "family": "llama_cpp",
            "loaded": self._llm is not None,
        }
        if self._llm is not None:
            info["n_ctx"] = int(self._llm.n_ctx())
            info["n_vocab"] = int(self._llm.n_vocab())
            info["eog_token_ids"] = sorted(self._eog_ids)
        return info

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str, config: ModelConfig) -> None:
        """Load a GGUF model and create its context.

        Cheap checks (existence, GGUF magic) run before any native allocation
        so the common failures never touch llama.cpp.
        """
        config.validate()
        _check_model_file(model_path)

        from ...runtime import check_llama_cpp_required, default_gpu_layers

        check_llama_cpp_required()
        from llama_cpp import Llama

        n_gpu_layers = config.n_gpu_layers
        if n_gpu_layers is None:
            n_gpu_layers = default_gpu_layers()

        try:
            llm = Llama(
                model_path=model_path,
                n_ctx=config.n_ctx,
                n_gpu_layers=n_gpu_layers,
                n_threads=config.n_threads,
                n_batch=config.n_batch,
                use_mmap=config.use_mmap,
                seed=config.seed,
                logits_all=False,
                verbose=config.verbose,
            )
        except MemoryError as exc:
            raise ModelOutOfMemory(model_path, str(exc) or "allocation failed") from exc
        except ValueError as exc:
            # llama-cpp-python reports parse failures as "Failed to load model from file".
            if "load model" in str(exc):
                raise UnsupportedModelFormat(model_path, str(exc)) from exc
            raise EngineInitFailed(model_path, str(exc)) from exc
        except Exception as exc:
            raise EngineInitFailed(model_path, str(exc)) from exc

        try:
            n_vocab = int(llm.n_vocab())
            if n_vocab <= 0:
                raise EngineInitFailed(model_path, "model reports an empty vocabulary")
            eog_ids = _collect_eog_ids(llm)
        except EngineInitFailed:
            _close_quietly(llm)
            raise
        except Exception as exc:
            _close_quietly(llm)
            raise EngineInitFailed(model_path, str(exc)) from exc

        self._llm = llm
        self._model_path = model_path
        self._eog_ids = eog_ids
        self._n_vocab = n_vocab

    def unload(self) -> None:
        """Free the llama.cpp model and context."""
        if self._llm is None:
            return
        llm = self._llm
        self._llm = None
        self._eog_ids = frozenset()
        self._n_vocab = 0
        _close_quietly(llm)
        del llm
        gc.collect()

    # -------------------------------------------------------------------------
    # Generation primitives
    # -------------------------------------------------------------------------

    def tokenize(self, text: str) -> list[int]:
        self._ensure_loaded()
        try:
            return list(self._llm.tokenize(text.encode("utf-8"), add_bos=True, special=True))
        except Exception as exc:
            raise TokenizationError(f"Tokenization failed: {exc}", self._model_path) from exc

    def reset(self) -> None:
        self._ensure_loaded()
        self._llm.reset()

    def eval(self, token_ids: list[int]) -> torch.Tensor:
        import numpy as np
        import torch
        from llama_cpp import llama_get_logits_ith

        self._ensure_loaded()
        self._llm.eval(token_ids)
        # `Llama.scores` is only written when logits_all=True; read the last
        # output row from the context instead.
        ptr = llama_get_logits_ith(self._llm.ctx, -1)
        if not ptr:
            raise RuntimeError("llama.cpp returned no logits for the last position.")
        row = np.ctypeslib.as_array(ptr, shape=(self._n_vocab,))
        return torch.tensor(row, dtype=torch.float32)

    def detokenize(self, token_ids: list[int]) -> bytes:
        self._ensure_loaded()
        return bytes(self._llm.detokenize(token_ids))

    def is_end_of_sequence(self, token_id: int) -> bool:
        return token_id in self._eog_ids

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        """Raise if no model is loaded."""
        if self._llm is None:
            raise RuntimeError("Model not loaded. Call load() first.")


def _check_model_file(model_path: str) -> None:
    if not os.path.isfile(model_path):
        raise ModelFileNotFound(model_path, "no such file")
    try:
        with open(model_path, "rb") as fh:
            magic = fh.read(len(GGUF_MAGIC))
    except OSError as exc:
        raise ModelFileNotFound(model_path, f"file is not readable: {exc}") from exc
    if magic != GGUF_MAGIC:
        raise UnsupportedModelFormat(model_path, f"not a GGUF file (magic={magic!r})")


def _collect_eog_ids(llm: Any) -> frozenset[int]:
    ids = {int(llm.token_eos())}
    metadata = getattr(llm, "metadata", None) or {}
    for key in _EOG_METADATA_KEYS:
        raw = metadata.get(key)
        if raw is None:
            continue
        try:
            ids.add(int(raw))
        except (TypeError, ValueError):
            logger.debug("Ignoring non-integer metadata %s=%r", key, raw)
    return frozenset(i for i in ids if i >= 0)


def _close_quietly(llm: Any) -> None:
    close = getattr(llm, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception:
        logger.warning("llama.cpp close() failed", exc_info=True)
