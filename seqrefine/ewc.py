"""
Elastic Weight Consolidation — penalise drift of parameters that mattered.

```
F_i      = E_samples[(∂L/∂θ_i)²]                       # diagonal Fisher
F        = (F_old · tasks + F_new) / (tasks + 1)       # running mean per task
L_EWC    = (λ / 2) · Σ_i F_i (θ_i - θ*_i)²             # θ*: anchor snapshot
```

Before the first consolidation the penalty is exactly zero.

Reference:
- Kirkpatrick et al. (2017) PNAS. "Overcoming catastrophic forgetting in
  neural networks"
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Sequence, TypeVar

import torch
import torch.nn as nn

from .loss import parameter_gradients

logger = logging.getLogger(__name__)

S = TypeVar("S")


class ElasticWeightConsolidation:
    """Fisher-weighted quadratic anchor on the refiner parameters."""

    def __init__(self, lam: float = 0.4) -> None:
        self.lam = lam
        self.fisher: dict[str, torch.Tensor] = {}
        self.anchor: dict[str, torch.Tensor] = {}
        self.task_count = 0

    def is_ready(self) -> bool:
        return self.task_count > 0

    def penalty(self, named_params: Iterable[tuple[str, torch.Tensor]]) -> torch.Tensor:
        """(λ/2) Σ F (θ - θ*)², differentiable w.r.t. the live parameters."""
        loss = torch.tensor(0.0)
        if not self.is_ready():
            return loss
        for name, p in named_params:
            if name in self.fisher and name in self.anchor:
                loss = loss + (self.fisher[name] * (p - self.anchor[name]).pow(2)).sum()
        return 0.5 * self.lam * loss

    def fisher_diagonal(
        self,
        model: nn.Module,
        samples: Sequence[S],
        loss_fn: Callable[[S], torch.Tensor | None],
    ) -> dict[str, torch.Tensor]:
        """Mean squared gradient per parameter over ``samples``.

        Samples for which ``loss_fn`` returns None still count toward the
        mean (they contribute zero).
        """
        named = [(n, p) for n, p in model.named_parameters() if p.requires_grad]
        params = [p for _, p in named]
        fisher = {n: torch.zeros_like(p) for n, p in named}
        for sample in samples:
            loss = loss_fn(sample)
            if loss is None:
                continue
            grads = parameter_gradients(loss, params)
            for (n, _), g in zip(named, grads):
                fisher[n] += g.pow(2)
        for n in fisher:
            fisher[n] /= max(len(samples), 1)
        return fisher

    def consolidate(
        self,
        model: nn.Module,
        samples: Sequence[S],
        loss_fn: Callable[[S], torch.Tensor | None],
    ) -> None:
        """Fold a new Fisher estimate into the running mean and re-anchor."""
        if not samples:
            logger.info("EWC consolidation skipped: no samples")
            return

        new_fisher = self.fisher_diagonal(model, samples, loss_fn)
        if not self.fisher:
            self.fisher = new_fisher
        else:
            k = self.task_count
            self.fisher = {
                n: (self.fisher[n] * k + f) / (k + 1) if n in self.fisher else f
                for n, f in new_fisher.items()
            }
        self.anchor = {n: p.detach().clone() for n, p in model.named_parameters()}
        self.task_count += 1

        total = sum(f.sum().item() for f in self.fisher.values())
        logger.info("EWC consolidation #%d over %d samples (Fisher mass %.4g)",
                    self.task_count, len(samples), total)

    def state(self) -> dict[str, object]:
        return {
            "lambda": self.lam,
            "task_count": self.task_count,
            "parameters": len(self.fisher),
        }
