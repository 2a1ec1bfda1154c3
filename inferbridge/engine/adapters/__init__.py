# Inference-engine adapters
#
# Each adapter implements a common interface for:
#   - Loading a model artifact + creating its context
#   - Tokenize / decode-step / detokenize primitives
#   - Reporting end-of-sequence tokens and metadata
#
# The generation engine uses adapters to stay engine-agnostic.

from .base import BaseAdapter
from .llama_cpp import LlamaCppAdapter

__all__ = ["BaseAdapter", "LlamaCppAdapter"]
