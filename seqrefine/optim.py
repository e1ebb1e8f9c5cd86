"""
Adam optimizer over an explicit parameter/gradient list.

```
t   += 1
m    = β1·m + (1 - β1)·g
v    = β2·v + (1 - β2)·g²
m̂    = m / (1 - β1^t)
v̂    = v / (1 - β2^t)
θ   -= lr · m̂ / (√v̂ + ε)
```

The step counter t is global to the optimizer (one tick per ``step`` call).
Moment buffers are keyed by parameter identity, so the same optimizer can be
handed the parameter list in any order.

Reference:
- Kingma & Ba (2015) ICLR. "Adam: A Method for Stochastic Optimization"
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import torch

from .errors import ShapeMismatch


@dataclass
class _Moments:
    param: torch.Tensor
    m: torch.Tensor
    v: torch.Tensor


class AdamOptimizer:
    def __init__(
        self,
        lr: float = 1e-3,
        beta1: float = 0.9,
        beta2: float = 0.999,
        eps: float = 1e-8,
    ) -> None:
        if lr < 0.0:
            raise ValueError(f"learning rate must be >= 0, got {lr}")
        self.lr = lr
        self.beta1 = beta1
        self.beta2 = beta2
        self.eps = eps
        self.t = 0
        self._state: dict[int, _Moments] = {}

    def set_learning_rate(self, lr: float) -> None:
        self.lr = lr

    def moments(self, param: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor] | None:
        """(m, v) buffers for ``param``, or None before its first step."""
        st = self._state.get(id(param))
        return None if st is None else (st.m, st.v)

    @torch.no_grad()
    def step(self, params: Sequence[torch.Tensor], grads: Sequence[torch.Tensor]) -> None:
        """Update ``params`` in place from ``grads`` (same order, same shapes)."""
        if len(params) != len(grads):
            raise ShapeMismatch("adam step", f"{len(params)} gradients", len(grads))
        for p, g in zip(params, grads):
            if p.shape != g.shape:
                raise ShapeMismatch("adam step", tuple(p.shape), tuple(g.shape))

        self.t += 1
        bc1 = 1.0 - self.beta1 ** self.t
        bc2 = 1.0 - self.beta2 ** self.t

        for p, g in zip(params, grads):
            st = self._state.get(id(p))
            if st is None or st.param is not p:
                st = _Moments(param=p, m=torch.zeros_like(p), v=torch.zeros_like(p))
                self._state[id(p)] = st

            st.m.mul_(self.beta1).add_(g, alpha=1.0 - self.beta1)
            st.v.mul_(self.beta2).addcmul_(g, g, value=1.0 - self.beta2)

            m_hat = st.m / bc1
            v_hat = st.v / bc2
            p.sub_(self.lr * m_hat / (v_hat.sqrt() + self.eps))

    def __repr__(self) -> str:
        return (f"AdamOptimizer(lr={self.lr:g}, betas=({self.beta1}, {self.beta2}), "
                f"eps={self.eps:g}, t={self.t}, tracked={len(self._state)})")
