"""
Typed exceptions for the inference bridge.

Every failure the bridge surfaces carries a `kind` so callers can tell *why*
an operation failed without parsing messages. Load failures and generation
failures are separate families.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class LoadErrorKind(str, Enum):
    FILE_NOT_FOUND = "file_not_found"
    UNSUPPORTED_FORMAT = "unsupported_format"
    OUT_OF_MEMORY = "out_of_memory"
    ENGINE_INIT_FAILED = "engine_init_failed"


class GenerationErrorKind(str, Enum):
    MODEL_NOT_LOADED = "model_not_loaded"
    BUSY = "busy"
    PROMPT_TOO_LONG = "prompt_too_long"
    TOKENIZATION_ERROR = "tokenization_error"
    ENGINE_ERROR = "engine_error"
    CANCELLED = "cancelled"


class InferBridgeError(Exception):
    """Base exception for all bridge errors"""

    def __init__(self, message: str, model_path: Optional[str] = None):
        self.message = message
        self.model_path = model_path
        super().__init__(message)


# =============================================================================
# Load errors
# =============================================================================


class LoadError(InferBridgeError):
    """Raised when a model artifact could not be loaded"""

    kind: LoadErrorKind = LoadErrorKind.ENGINE_INIT_FAILED

    def __init__(self, model_path: str, reason: str):
        super().__init__(f"Failed to load model {model_path}: {reason}", model_path)
        self.reason = reason


class ModelFileNotFound(LoadError):
    kind = LoadErrorKind.FILE_NOT_FOUND


class UnsupportedModelFormat(LoadError):
    kind = LoadErrorKind.UNSUPPORTED_FORMAT


class ModelOutOfMemory(LoadError):
    kind = LoadErrorKind.OUT_OF_MEMORY


class EngineInitFailed(LoadError):
    kind = LoadErrorKind.ENGINE_INIT_FAILED


# =============================================================================
# Generation errors
# =============================================================================


class GenerationError(InferBridgeError):
    """Raised when a generation request fails; the session stays usable"""

    kind: GenerationErrorKind = GenerationErrorKind.ENGINE_ERROR

    def __init__(self, reason: str, model_path: Optional[str] = None):
        super().__init__(reason, model_path)
        self.reason = reason


class ModelNotLoaded(GenerationError):
    """Raised when generating before a model has been loaded"""

    kind = GenerationErrorKind.MODEL_NOT_LOADED

    def __init__(self, model_path: Optional[str] = None):
        super().__init__("Model not loaded. Call load_model() first.", model_path)


class SessionBusy(GenerationError):
    """Raised when another generation (or a load) holds the session.

    This is a contention signal, not an engine failure: retry or queue
    externally.
    """

    kind = GenerationErrorKind.BUSY

    def __init__(self, model_path: Optional[str] = None):
        super().__init__("Session busy: another generation is active.", model_path)


class PromptTooLong(GenerationError):
    kind = GenerationErrorKind.PROMPT_TOO_LONG

    def __init__(self, prompt_tokens: int, max_tokens: int, model_path: Optional[str] = None):
        super().__init__(
            f"Prompt too long: {prompt_tokens} tokens (context window={max_tokens}).",
            model_path,
        )
        self.prompt_tokens = prompt_tokens
        self.max_tokens = max_tokens


class TokenizationError(GenerationError):
    kind = GenerationErrorKind.TOKENIZATION_ERROR


class EngineError(GenerationError):
    kind = GenerationErrorKind.ENGINE_ERROR


class GenerationCancelled(GenerationError):
    """Raised only by APIs that promise a complete text."""

    kind = GenerationErrorKind.CANCELLED

    def __init__(self, model_path: Optional[str] = None):
        super().__init__("Generation cancelled.", model_path)
