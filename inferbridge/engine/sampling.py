"""Next-token sampling over decode-step logits."""

from __future__ import annotations

import torch

from .config import GenerationConfig


class Sampler:
    """Per-request token sampler.

    Each request gets its own seeded `torch.Generator`, so identical prompts
    with identical configs sample identical tokens regardless of what other
    requests ran in between.
    """

    def __init__(self, config: GenerationConfig) -> None:
        self._temperature = float(config.temperature)
        self._top_k = int(config.top_k)
        self._top_p = float(config.top_p)
        self._generator = torch.Generator(device="cpu")
        self._generator.manual_seed(int(config.seed))

    @property
    def greedy(self) -> bool:
        return self._temperature == 0

    def sample(self, logits: torch.Tensor) -> int:
        """Pick the next token id from logits of shape (n_vocab,)."""
        logits = logits.reshape(-1).float().cpu()
        if self.greedy:
            return int(torch.argmax(logits).item())

        # Numerical stability: softmax in fp32 after temperature scaling.
        scaled = logits / self._temperature
        scaled = _apply_top_k(scaled, self._top_k)
        probs = torch.softmax(scaled, dim=-1)
        probs = _apply_top_p(probs, self._top_p)

        if torch.isnan(probs).any() or torch.isinf(probs).any() or (probs < 0).any():
            probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)
            probs = torch.clamp(probs, min=0.0)
        z = probs.sum()
        if z <= 0:
            return int(torch.argmax(logits).item())
        probs = probs / z

        return int(torch.multinomial(probs, 1, generator=self._generator).item())


def _apply_top_k(logits: torch.Tensor, top_k: int) -> torch.Tensor:
    if top_k <= 0 or top_k >= logits.numel():
        return logits
    kth = torch.topk(logits, top_k).values[-1]
    return logits.masked_fill(logits < kth, float("-inf"))


def _apply_top_p(probs: torch.Tensor, top_p: float) -> torch.Tensor:
    if top_p >= 1.0:
        return probs
    sorted_probs, sorted_idx = torch.sort(probs, descending=True)
    cumulative = torch.cumsum(sorted_probs, dim=-1)
    # Keep the smallest prefix whose mass reaches top_p (always at least one token).
    remove = (cumulative - sorted_probs) >= top_p
    sorted_probs = sorted_probs.masked_fill(remove, 0.0)
    out = torch.zeros_like(probs)
    out.scatter_(0, sorted_idx, sorted_probs)
    return out
