"""
Learning-rate scheduler with four policies (see ``SchedulerPolicy``).

| Policy        | lr after update(epoch, metric)                                   |
|---------------|------------------------------------------------------------------|
| COSINE        | min + ½(base - min)(1 + cos(π · epoch / total_epochs))           |
| WARMUP_LINEAR | base · step / warmup        (step < warmup)                      |
|               | base · (1 - (step - warmup) / (decay_steps - warmup))  otherwise |
| PLATEAU       | lr · factor after `patience` updates without a new best metric   |
| CONSTANT      | base                                                             |

Every result is clamped to at least ``min_lr``. ``step`` counts update calls
(the first call sees step 1); cosine is driven by the epoch argument instead.
"""

from __future__ import annotations

import logging
import math

from .config import SchedulerPolicy, TrainingConfig

logger = logging.getLogger(__name__)


class LearningRateScheduler:
    def __init__(
        self,
        policy: SchedulerPolicy = SchedulerPolicy.COSINE,
        base_lr: float = 1e-3,
        min_lr: float = 1e-6,
        total_epochs: int = 100,
        warmup_steps: int = 1000,
        decay_steps: int | None = None,
        patience: int = 10,
        factor: float = 0.5,
    ) -> None:
        self.policy = SchedulerPolicy(policy)
        self.base_lr = base_lr
        self.min_lr = min_lr
        self.total_epochs = max(1, total_epochs)
        self.warmup_steps = warmup_steps
        self.decay_steps = decay_steps if decay_steps is not None else self.total_epochs * 100
        self.patience = patience
        self.factor = factor

        self.current_lr = base_lr
        self.step = 0
        self.best_metric = -math.inf
        self.plateau_count = 0

    @classmethod
    def from_config(cls, cfg: TrainingConfig, total_epochs: int | None = None) -> LearningRateScheduler:
        return cls(
            policy=cfg.scheduler,
            base_lr=cfg.learning_rate,
            min_lr=cfg.min_learning_rate,
            total_epochs=total_epochs or cfg.epochs,
            warmup_steps=cfg.warmup_steps,
            decay_steps=cfg.decay_steps,
            patience=cfg.plateau_patience,
            factor=cfg.plateau_factor,
        )

    def update(self, epoch: int, metric: float | None = None) -> float:
        """Advance one step and return the new learning rate."""
        self.step += 1

        if self.policy is SchedulerPolicy.COSINE:
            progress = epoch / self.total_epochs
            self.current_lr = self.min_lr + 0.5 * (self.base_lr - self.min_lr) * (
                1.0 + math.cos(math.pi * progress)
            )

        elif self.policy is SchedulerPolicy.WARMUP_LINEAR:
            if self.step < self.warmup_steps:
                self.current_lr = self.base_lr * self.step / self.warmup_steps
            else:
                span = max(1, self.decay_steps - self.warmup_steps)
                progress = (self.step - self.warmup_steps) / span
                self.current_lr = self.base_lr * (1.0 - progress)

        elif self.policy is SchedulerPolicy.PLATEAU:
            if metric is not None:
                if metric > self.best_metric:
                    self.best_metric = metric
                    self.plateau_count = 0
                else:
                    self.plateau_count += 1
                    if self.plateau_count >= self.patience:
                        self.current_lr *= self.factor
                        self.plateau_count = 0
                        logger.info("Plateau: lr reduced to %.3g", self.current_lr)

        # CONSTANT: unchanged

        self.current_lr = max(self.current_lr, self.min_lr)
        return self.current_lr
