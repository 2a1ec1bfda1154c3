"""Model family -> adapter class lookup.

A session names the native engine it wants by family (`SessionConfig.family`,
`INFERBRIDGE_MODEL_FAMILY`). Each `ModelHandle.load()` asks this registry for
a fresh, unloaded adapter, so two handles never share native state.
"""

from typing import Type

from .adapters.base import BaseAdapter
from .adapters.llama_cpp import LlamaCppAdapter

DEFAULT_FAMILY = "llama_cpp"

_ADAPTER_REGISTRY: dict[str, Type[BaseAdapter]] = {
    DEFAULT_FAMILY: LlamaCppAdapter,
}


def _normalize(model_family: str) -> str:
    return model_family.strip().lower()


def get_adapter(model_family: str) -> BaseAdapter:
    """Instantiate the adapter registered for `model_family` (case-insensitive).

    Raises:
        ValueError: No adapter is registered under that name.
    """
    adapter_cls = _ADAPTER_REGISTRY.get(_normalize(model_family))
    if adapter_cls is None:
        available = ", ".join(sorted(_ADAPTER_REGISTRY))
        raise ValueError(f"Unknown model family: {model_family!r}. Available: {available}")
    return adapter_cls()


def register_adapter(model_family: str, adapter_cls: Type[BaseAdapter]) -> None:
    """Make `adapter_cls` loadable as `model_family`; an existing entry is replaced."""
    if not (isinstance(adapter_cls, type) and issubclass(adapter_cls, BaseAdapter)):
        raise TypeError(f"{adapter_cls!r} must be a BaseAdapter subclass.")
    name = _normalize(model_family)
    if not name:
        raise ValueError("Model family name must not be empty.")
    _ADAPTER_REGISTRY[name] = adapter_cls


def unregister_adapter(model_family: str) -> bool:
    """Remove a family. The built-in llama.cpp family cannot be removed.

    Returns True if an entry was removed.
    """
    name = _normalize(model_family)
    if name == DEFAULT_FAMILY:
        raise ValueError(f"{DEFAULT_FAMILY!r} is built in and cannot be unregistered.")
    return _ADAPTER_REGISTRY.pop(name, None) is not None


def list_model_families() -> list[str]:
    return sorted(_ADAPTER_REGISTRY)
