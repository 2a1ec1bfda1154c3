"""Engine request and result types.

These types are used internally by the engine and the session controller.
They are independent of any host application.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .errors import GenerationError


class ModelStatus(str, Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    FAILED = "failed"


class GenerationMode(str, Enum):
    BLOCKING = "blocking"
    STREAMING = "streaming"


class GenerationPhase(str, Enum):
    INIT = "init"
    TOKENIZING = "tokenizing"
    DECODING = "decoding"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationPhase.COMPLETED, GenerationPhase.CANCELLED, GenerationPhase.FAILED)


class TerminationReason(str, Enum):
    NATURAL_STOP = "stop"
    MAX_LENGTH_REACHED = "length"
    CANCELLED = "cancelled"
    ENGINE_ERROR = "error"


@dataclass(frozen=True)
class Token:
    """One decode step: the sampled token id and its text fragment."""

    id: int
    text: str
    index: int


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Timing:
    prefill_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass(frozen=True)
class GenerationResult:
    """Terminal outcome of one generation request.

    `text` is the accumulated output in blocking mode and empty in streaming
    mode (fragments went to the consumer instead). `error` is set exactly
    when `termination_reason` is ENGINE_ERROR.
    """

    text: str
    termination_reason: TerminationReason
    usage: Usage = field(default_factory=Usage)
    timing: Timing = field(default_factory=Timing)
    error: GenerationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return self.termination_reason is TerminationReason.CANCELLED
