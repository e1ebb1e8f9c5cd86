"""
Experience replay buffer with online similarity statistics.

# Insertion

Fill to capacity C, then reservoir-replace:

```
idx = floor(random() · (p + 1))     # p = adds before this one
if idx < C: buffer[idx] = exemplar
p += 1
```

Every stored exemplar has probability C / (p + 1) of surviving, so the buffer
stays a uniform sample of everything ever added (Vitter's Algorithm R).

# Distribution Shift

The similarity of the last w exemplars (recent, r) is compared with the w
before them (historical, h) by a Gaussian KL approximation:

```
KL ≈ ln √(var_h / var_r) + (var_r + (μ_r - μ_h)²) / (2 var_h) - ½
```

The absolute value is reported. Fewer than 2w exemplars, or a zero variance
in either window, reports 0.

Reference:
- Vitter (1985) ACM TOMS 11(1):37-57. "Random Sampling with a Reservoir"
- Welford (1962) Technometrics 4(3):419-420 (online mean/variance)
"""

from __future__ import annotations

import logging
import math
import random
import time
from dataclasses import dataclass, field

import torch

from .errors import InsufficientBufferSize

logger = logging.getLogger(__name__)


@dataclass
class ReplayExemplar:
    """One stored training triple."""

    anchor: torch.Tensor
    positives: list[torch.Tensor]
    negatives: list[torch.Tensor]
    similarity: float
    timestamp: float = field(default_factory=time.time)
    node_index: int | None = None


@dataclass
class RunningStats:
    """Welford online mean / variance accumulator."""

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def update(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)

    @property
    def variance(self) -> float:
        """Population variance (0 with fewer than two values)."""
        return self.m2 / self.count if self.count > 1 else 0.0

    def to_dict(self) -> dict[str, float]:
        return {"count": self.count, "mean": self.mean, "variance": self.variance}


class ReplayBuffer:
    def __init__(self, capacity: int = 10000, rng: random.Random | None = None) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.rng = rng or random.Random()
        self._items: list[ReplayExemplar] = []
        self.position = 0
        self.stats = RunningStats()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)

    def add(self, exemplar: ReplayExemplar) -> None:
        if len(self._items) < self.capacity:
            self._items.append(exemplar)
        else:
            idx = math.floor(self.rng.random() * (self.position + 1))
            if idx < self.capacity:
                self._items[idx] = exemplar
        self.position += 1
        self.update_stats(exemplar.similarity)

    def update_stats(self, value: float) -> None:
        self.stats.update(value)

    def sample(self, n: int) -> list[ReplayExemplar]:
        """Up to ``n`` distinct exemplars via a partial Fisher–Yates shuffle."""
        k = min(n, len(self._items))
        order = list(range(len(self._items)))
        for i in range(k):
            j = self.rng.randrange(i, len(order))
            order[i], order[j] = order[j], order[i]
        return [self._items[i] for i in order[:k]]

    def windows(self, window_size: int) -> tuple[list[float], list[float]]:
        """(historical, recent) similarity windows of ``window_size`` each.

        Raises InsufficientBufferSize with fewer than 2 * window_size items.
        """
        required = 2 * window_size
        if len(self._items) < required:
            raise InsufficientBufferSize(required, len(self._items))
        sims = [e.similarity for e in self._items[-required:]]
        return sims[:window_size], sims[window_size:]

    def detect_distribution_shift(self, window_size: int = 100) -> float:
        try:
            historical, recent = self.windows(window_size)
        except InsufficientBufferSize as exc:
            logger.debug("Shift detection skipped: %s", exc)
            return 0.0

        mu_h, var_h = _mean_var(historical)
        mu_r, var_r = _mean_var(recent)
        if var_h == 0.0 or var_r == 0.0:
            return 0.0
        kl = (math.log(math.sqrt(var_h / var_r))
              + (var_r + (mu_r - mu_h) ** 2) / (2.0 * var_h) - 0.5)
        return abs(kl)

    def reset(self) -> None:
        self._items.clear()
        self.position = 0
        self.stats = RunningStats()


def _mean_var(values: list[float]) -> tuple[float, float]:
    mu = sum(values) / len(values)
    return mu, sum((v - mu) ** 2 for v in values) / len(values)
