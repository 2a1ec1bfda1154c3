"""Base adapter interface for inference engines."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import torch

    from ..config import ModelConfig


class BaseAdapter(ABC):
    """
    Abstract base class for native inference engines.

    Each supported engine implements this interface so the generation loop
    can run without knowing engine-specific details. The adapter owns the
    native model and context; it is not thread-safe and must only be driven
    by the generation engine that holds the session.
    """

    @abstractmethod
    def load(self, model_path: str, config: ModelConfig) -> None:
        """
        Load the model artifact and create an inference context.

        Args:
            model_path: Local path to the model file.
            config: Load-time options (context size, GPU offload, ...).

        Raises:
            LoadError: A subclass describing why loading failed. Any native
                allocation made before the failure is released first.
        """
        pass

    @abstractmethod
    def tokenize(self, text: str) -> list[int]:
        """
        Convert prompt text to token ids (including any BOS token).

        Raises:
            TokenizationError: If the engine cannot tokenize the text.
        """
        pass

    @abstractmethod
    def reset(self) -> None:
        """Clear per-request context state (KV cache, position)."""
        pass

    @abstractmethod
    def eval(self, token_ids: list[int]) -> torch.Tensor:
        """
        Feed tokens through the model.

        Returns:
            Logits for the next token, shape (n_vocab,).
        """
        pass

    @abstractmethod
    def detokenize(self, token_ids: list[int]) -> bytes:
        """Convert token ids to raw UTF-8 bytes (may end mid-character)."""
        pass

    @abstractmethod
    def is_end_of_sequence(self, token_id: int) -> bool:
        """Whether the engine marks this token as end of generation."""
        pass

    @property
    @abstractmethod
    def n_ctx(self) -> int:
        """Size of the context window in tokens."""
        pass

    @property
    @abstractmethod
    def model_info(self) -> dict[str, Any]:
        """
        Return metadata about the loaded model.

        Returns:
            Dict with keys like 'model_path', 'n_ctx', 'n_vocab', etc.
        """
        pass

    def unload(self) -> None:
        """
        Unload the model and free resources.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass
