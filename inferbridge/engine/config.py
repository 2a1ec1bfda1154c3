"""Load-time and per-request configuration.

Both configs are frozen; per-request changes go through `merged()`, which
returns a validated copy.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping


@dataclass(frozen=True)
class ModelConfig:
    """Options passed to the native engine when a model is loaded.

    Notes:
    - `n_gpu_layers=None` means "decide at load time" (all layers when a GPU
      backend is present, none otherwise).
    - `n_ctx=0` lets the engine use the context length stored in the model.
    """

    n_ctx: int = 4096
    n_gpu_layers: int | None = None
    n_threads: int | None = None
    n_batch: int = 512
    use_mmap: bool = True
    seed: int = 0
    verbose: bool = False

    def validate(self) -> None:
        if self.n_ctx < 0:
            raise ValueError("'model.n_ctx' must be >= 0.")
        if self.n_gpu_layers is not None and self.n_gpu_layers < -1:
            raise ValueError("'model.n_gpu_layers' must be >= -1.")
        if self.n_threads is not None and self.n_threads <= 0:
            raise ValueError("'model.n_threads' must be > 0.")
        if self.n_batch <= 0:
            raise ValueError("'model.n_batch' must be > 0.")


@dataclass(frozen=True)
class GenerationConfig:
    """Sampling and stopping policy for one request.

    `temperature == 0` selects greedy decoding. `seed` makes sampled output
    reproducible: the same prompt, config and seed produce the same tokens.
    `timeout_s` cancels the request once elapsed (None disables it).
    """

    max_tokens: int = 512
    temperature: float = 0.0
    top_k: int = 0
    top_p: float = 1.0
    seed: int = 0
    timeout_s: float | None = None

    def validate(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError("'generation.max_tokens' must be > 0.")
        if self.temperature < 0:
            raise ValueError("'generation.temperature' must be >= 0.")
        if self.top_k < 0:
            raise ValueError("'generation.top_k' must be >= 0.")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError("'generation.top_p' must be in (0, 1].")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError("'generation.timeout_s' must be > 0.")

    def merged(self, override: Mapping[str, Any] | None) -> "GenerationConfig":
        """Merge per-request overrides (e.g. `generate(prompt, max_tokens=1)`)."""
        if not override:
            return self
        known = {f.name for f in fields(self)}
        unknown = sorted(set(override) - known)
        if unknown:
            raise ValueError(f"Unknown generation option(s): {', '.join(unknown)}.")

        data: dict[str, Any] = {}
        for name, value in override.items():
            if name in ("max_tokens", "top_k", "seed"):
                data[name] = _coerce_int(value, f"generation.{name}")
            elif name in ("temperature", "top_p"):
                data[name] = _coerce_float(value, f"generation.{name}")
            elif name == "timeout_s":
                data[name] = None if value is None else _coerce_float(value, f"generation.{name}")

        merged = replace(self, **data)
        merged.validate()
        return merged

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GenerationConfig":
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        if env.get("INFERBRIDGE_MAX_TOKENS"):
            data["max_tokens"] = env["INFERBRIDGE_MAX_TOKENS"]
        if env.get("INFERBRIDGE_TEMPERATURE"):
            data["temperature"] = env["INFERBRIDGE_TEMPERATURE"]
        if env.get("INFERBRIDGE_SEED"):
            data["seed"] = env["INFERBRIDGE_SEED"]
        return cls().merged(data)


def _coerce_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"'{label}' must be an integer.")
    try:
        return int(value)
    except Exception as exc:
        raise ValueError(f"'{label}' must be an integer.") from exc


def _coerce_float(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"'{label}' must be a number.")
    try:
        return float(value)
    except Exception as exc:
        raise ValueError(f"'{label}' must be a number.") from exc
