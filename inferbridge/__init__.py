"""
inferbridge - In-process bridge to a local quantized language model.

Loads a GGUF model artifact into llama.cpp and serves one generation at a
time, either blocking (full text) or streamed token by token.

Quick Start:
    from inferbridge import SessionController

    with SessionController() as session:
        session.load_model("models/medgemma-4b-instruct.Q4_K_M.gguf")

        # Blocking
        print(session.generate("2+2=", max_tokens=8))

        # Streaming (iterator)
        for fragment in session.stream("Tell me about sleep hygiene."):
            print(fragment, end="", flush=True)

        # Streaming (callback; None marks the end of the stream)
        dispatcher = session.generate_streaming("Hello", on_token=print)
        dispatcher.wait()

Submodules:
    - inferbridge.engine.session: Session controller (entry points)
    - inferbridge.engine.generation: Decode loop
    - inferbridge.engine.streaming: Token streams and dispatcher
    - inferbridge.engine.adapters: Native engine adapters

Environment Variables:
    INFERBRIDGE_MODEL_FAMILY, INFERBRIDGE_N_CTX, INFERBRIDGE_N_GPU_LAYERS,
    INFERBRIDGE_MAX_TOKENS, INFERBRIDGE_TEMPERATURE, INFERBRIDGE_SEED:
        Read by `SessionConfig.from_env()`.
"""

from inferbridge._version import __version__

from inferbridge.engine.config import GenerationConfig, ModelConfig
from inferbridge.engine.discovery import find_model_path
from inferbridge.engine.errors import (
    EngineError,
    EngineInitFailed,
    GenerationCancelled,
    GenerationError,
    GenerationErrorKind,
    InferBridgeError,
    LoadError,
    LoadErrorKind,
    ModelFileNotFound,
    ModelNotLoaded,
    ModelOutOfMemory,
    PromptTooLong,
    SessionBusy,
    TokenizationError,
    UnsupportedModelFormat,
)
from inferbridge.engine.model_handle import ModelHandle
from inferbridge.engine.registry import (
    get_adapter,
    list_model_families,
    register_adapter,
    unregister_adapter,
)
from inferbridge.engine.session import SessionConfig, SessionController
from inferbridge.engine.streaming import AsyncTokenStream, StreamingDispatcher, TokenStream
from inferbridge.engine.types import (
    GenerationResult,
    ModelStatus,
    TerminationReason,
    Timing,
    Token,
    Usage,
)

# Runtime utilities
from inferbridge.runtime import (
    is_cuda_available,
    is_llama_cpp_available,
)

__all__ = [
    # Version
    "__version__",
    # Session
    "SessionController",
    "SessionConfig",
    "ModelHandle",
    # Config
    "GenerationConfig",
    "ModelConfig",
    # Streaming
    "TokenStream",
    "AsyncTokenStream",
    "StreamingDispatcher",
    # Types
    "GenerationResult",
    "ModelStatus",
    "TerminationReason",
    "Timing",
    "Token",
    "Usage",
    # Errors
    "InferBridgeError",
    "LoadError",
    "LoadErrorKind",
    "ModelFileNotFound",
    "UnsupportedModelFormat",
    "ModelOutOfMemory",
    "EngineInitFailed",
    "GenerationError",
    "GenerationErrorKind",
    "ModelNotLoaded",
    "SessionBusy",
    "PromptTooLong",
    "TokenizationError",
    "EngineError",
    "GenerationCancelled",
    # Adapters
    "get_adapter",
    "register_adapter",
    "unregister_adapter",
    "list_model_families",
    "find_model_path",
    # Runtime
    "is_llama_cpp_available",
    "is_cuda_available",
]
