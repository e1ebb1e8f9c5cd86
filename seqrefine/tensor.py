"""
Numeric kernels used by every other module.

Tensors are plain ``torch.Tensor`` values. Each kernel returns a new tensor
and is built from differentiable torch ops, so reverse-mode autograd runs
through the whole forward pass (attention softmax, gated update, layer norm).

Shape disagreements raise :class:`~seqrefine.errors.ShapeMismatch`. Inputs
are never truncated or broadcast to fit.
"""

from __future__ import annotations

import math
from typing import Sequence

import torch
import torch.nn.functional as F

from .errors import ShapeMismatch

Shape = Sequence[int]


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def zeros(shape: Shape) -> torch.Tensor:
    return torch.zeros(tuple(shape), dtype=torch.float32)


def uniform_random(
    shape: Shape,
    scale: float = 0.01,
    generator: torch.Generator | None = None,
) -> torch.Tensor:
    """Values drawn uniformly from [-scale, scale]."""
    u = torch.rand(tuple(shape), generator=generator, dtype=torch.float32)
    return (u - 0.5) * 2.0 * scale


def xavier(shape: Shape, generator: torch.Generator | None = None) -> torch.Tensor:
    """Xavier/Glorot uniform initialisation.

    fan_in = shape[0], fan_out = shape[1] (1 for vectors). The target standard
    deviation is sqrt(2 / (fan_in + fan_out)). A uniform draw reaches it with
    bound sqrt(3) * std, the same bound as ``nn.init.xavier_uniform_``.

    Reference: Glorot & Bengio (2010) AISTATS. "Understanding the difficulty
    of training deep feedforward neural networks"
    """
    fan_in = shape[0]
    fan_out = shape[1] if len(shape) > 1 else 1
    std = math.sqrt(2.0 / (fan_in + fan_out))
    # Bound is sqrt(3) * std, not std: U[-s, s] has variance s**2 / 3, so a
    # bound of std alone would give a third of the target variance.
    return uniform_random(shape, math.sqrt(3.0) * std, generator=generator)


# ---------------------------------------------------------------------------
# Elementwise
# ---------------------------------------------------------------------------

def _check_same(op: str, a: torch.Tensor, b: torch.Tensor | float) -> None:
    if isinstance(b, torch.Tensor) and b.dim() > 0 and a.shape != b.shape:
        raise ShapeMismatch(op, tuple(a.shape), tuple(b.shape))


def add(a: torch.Tensor, b: torch.Tensor | float) -> torch.Tensor:
    _check_same("add", a, b)
    return a + b


def multiply(a: torch.Tensor, b: torch.Tensor | float) -> torch.Tensor:
    _check_same("multiply", a, b)
    return a * b


def matmul(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """Matrix product of 1-D/2-D operands; inner dimensions must agree."""
    if a.dim() not in (1, 2) or b.dim() not in (1, 2):
        raise ShapeMismatch("matmul", "1-D or 2-D operands", (tuple(a.shape), tuple(b.shape)))
    inner_a = a.shape[-1]
    inner_b = b.shape[0]
    if inner_a != inner_b:
        raise ShapeMismatch("matmul", f"inner dim {inner_a}", f"inner dim {inner_b}")
    return torch.matmul(a, b)


# ---------------------------------------------------------------------------
# Activations
# ---------------------------------------------------------------------------

def relu(x: torch.Tensor) -> torch.Tensor:
    return torch.relu(x)


def sigmoid(x: torch.Tensor) -> torch.Tensor:
    return torch.sigmoid(x)


def tanh(x: torch.Tensor) -> torch.Tensor:
    return torch.tanh(x)


def softmax(x: torch.Tensor, temperature: float = 1.0) -> torch.Tensor:
    """Temperature-scaled softmax over all elements.

    The max is subtracted before exponentiating, so large scores cannot
    overflow.
    """
    if temperature <= 0.0:
        raise ValueError(f"temperature must be > 0, got {temperature}")
    shifted = (x - x.max()) / temperature
    e = torch.exp(shifted)
    return e / e.sum()


def layer_norm(
    x: torch.Tensor,
    gamma: torch.Tensor,
    beta: torch.Tensor,
    eps: float = 1e-5,
) -> torch.Tensor:
    """Normalise with mean/variance taken over *all* elements of x.

    Returns gamma * (x - mean) / sqrt(var + eps) + beta. The variance is the
    population (biased) variance.
    """
    if gamma.shape != x.shape or beta.shape != x.shape:
        raise ShapeMismatch(
            "layer_norm", tuple(x.shape), (tuple(gamma.shape), tuple(beta.shape))
        )
    mean = x.mean()
    var = ((x - mean) ** 2).mean()
    return gamma * (x - mean) / torch.sqrt(var + eps) + beta


def cosine(a: torch.Tensor, b: torch.Tensor, eps: float = 1e-8) -> torch.Tensor:
    """Cosine similarity along the last dimension.

    ``cosine(v, w)`` of two vectors is a scalar. ``cosine(v, M)`` with M of
    shape (k, d) scores v against every row and returns shape (k,). The
    denominator gets ``eps`` so zero vectors give 0 rather than NaN.
    """
    if a.shape[-1] != b.shape[-1]:
        raise ShapeMismatch("cosine", a.shape[-1], b.shape[-1])
    dot = (a * b).sum(dim=-1)
    norms = torch.linalg.vector_norm(a, dim=-1) * torch.linalg.vector_norm(b, dim=-1)
    return dot / (norms + eps)


def dropout(x: torch.Tensor, rate: float, training: bool) -> torch.Tensor:
    """Inverted dropout: zero with prob ``rate``, scale survivors by 1/(1-rate)."""
    if not 0.0 <= rate < 1.0:
        raise ValueError(f"dropout rate must be in [0, 1), got {rate}")
    if not training or rate == 0.0:
        return x
    return F.dropout(x, p=rate, training=True)


def clone(x: torch.Tensor) -> torch.Tensor:
    """Deep, independent copy (detached from any autograd graph)."""
    return x.detach().clone()
