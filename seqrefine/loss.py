"""
Contrastive objective and gradient contract for the refiner.

# Total Loss

```
L = mean_{samples with positives} L_InfoNCE(sample) + L_EWC
```

The EWC term lives in ``seqrefine.ewc``. This module provides the
per-sample contrastive term and the batch reduction.

# InfoNCE

For one anchor a with positives P and negatives N:

```
s_p = cos(a, p) / T        for p in P
s_n = cos(a, n) / T        for n in N
L   = -mean(s_p) + logsumexp(s_p ∪ s_n)
```

logsumexp subtracts the max before exponentiating, so large 1/T (T = 0.07
gives scores up to ±14.3) cannot overflow. Adding a constant to every score
leaves L unchanged.

Reference:
- van den Oord et al. (2018) arXiv:1807.03748. "Representation Learning with
  Contrastive Predictive Coding"
- Chen et al. (2020) ICML. "A Simple Framework for Contrastive Learning of
  Visual Representations" (SimCLR, NT-Xent with temperature)

# Gradients

``parameter_gradients`` is reverse-mode autograd over the forward pass.
Parameters the loss never touches (e.g. the unused ``W_o`` projections) get
zero gradients, so the optimizer always sees one gradient per parameter.
"""

from __future__ import annotations

from typing import Iterable, Sequence

import torch

from .tensor import cosine


def info_nce_loss(
    anchor: torch.Tensor,
    positives: torch.Tensor,
    negatives: torch.Tensor | None = None,
    temperature: float = 0.07,
) -> torch.Tensor:
    """InfoNCE for one anchor.

    Parameters
    ----------
    anchor : (d,)
    positives : (P, d), P >= 1
    negatives : (Q, d) or None
    temperature : > 0

    Raises
    ------
    ValueError
        No positives, or non-positive temperature.
    """
    if temperature <= 0.0:
        raise ValueError(f"temperature must be > 0, got {temperature}")
    if positives.dim() != 2 or positives.shape[0] == 0:
        raise ValueError("info_nce_loss needs at least one positive")

    pos_scores = cosine(anchor, positives) / temperature
    if negatives is not None and negatives.numel() > 0:
        neg_scores = cosine(anchor, negatives) / temperature
        all_scores = torch.cat([pos_scores, neg_scores])
    else:
        all_scores = pos_scores
    return -pos_scores.mean() + torch.logsumexp(all_scores, dim=0)


def batch_contrastive_loss(
    samples: Iterable[tuple[torch.Tensor, torch.Tensor, torch.Tensor | None]],
    temperature: float = 0.07,
) -> tuple[torch.Tensor | None, dict[str, float]]:
    """Mean InfoNCE over (anchor, positives, negatives) triples.

    Triples without positives are skipped.

    Returns
    -------
    loss : scalar tensor, or None when no triple contributed
    breakdown : dict (detached, for logging)
        Keys: contrastive, contributed, skipped
    """
    terms: list[torch.Tensor] = []
    skipped = 0
    for anchor, positives, negatives in samples:
        if positives is None or positives.numel() == 0:
            skipped += 1
            continue
        terms.append(info_nce_loss(anchor, positives, negatives, temperature))

    if not terms:
        return None, {"contrastive": 0.0, "contributed": 0, "skipped": skipped}

    loss = torch.stack(terms).mean()
    return loss, {
        "contrastive": loss.item(),
        "contributed": len(terms),
        "skipped": skipped,
    }


def parameter_gradients(
    loss: torch.Tensor,
    params: Sequence[torch.Tensor],
) -> list[torch.Tensor]:
    """d(loss)/d(param) for each param; zeros where the loss does not depend on it."""
    grads = torch.autograd.grad(loss, list(params), allow_unused=True)
    return [
        torch.zeros_like(p) if g is None else g.detach()
        for p, g in zip(params, grads)
    ]

