"""Runtime environment checks and feature flags for inferbridge."""

from __future__ import annotations

import functools

import torch


@functools.lru_cache(maxsize=1)
def is_llama_cpp_available() -> bool:
    """Check if llama-cpp-python is importable."""
    try:
        import llama_cpp  # noqa: F401
        return True
    except ImportError:
        return False


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=1)
def is_mps_available() -> bool:
    """Check if Apple Metal (MPS) is available."""
    backend = getattr(torch.backends, "mps", None)
    if backend is None:
        return False
    return bool(backend.is_available())


def default_gpu_layers() -> int:
    """
    Number of layers to offload to the GPU when the caller does not say.

    Offloads everything (-1) when a GPU backend is present, else runs on CPU.
    """
    if is_cuda_available() or is_mps_available():
        return -1
    return 0


def check_llama_cpp_required() -> None:
    """Raise ImportError if llama-cpp-python is not available."""
    if not is_llama_cpp_available():
        raise ImportError(
            "inferbridge requires llama-cpp-python to load GGUF models. "
            "Install it with: pip install llama-cpp-python"
        )
