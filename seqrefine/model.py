"""
RefinerNetwork — stacked attention-gated layers over a static neighbourhood.

# ═══════════════════════════════════════════════════════════════════════════════
# WHAT THIS MODEL DOES
# ═══════════════════════════════════════════════════════════════════════════════
#
# INPUT:
#   - one centre embedding (raw k-mer vector, input_dim)
#   - its neighbours in the similarity graph (raw k-mer vectors, input_dim)
#   - optional edge weights (cosine similarities from the graph)
#
# OUTPUT:
#   - refined embedding (output_dim) for similarity search
#   - per-layer attention weights over the neighbours (audit trace)
#
# The refined embedding is compared against RAW corpus embeddings at search
# time, so output_dim must equal input_dim for training and search.
#
# ═══════════════════════════════════════════════════════════════════════════════

# Architecture Overview

```
node ─► [Layer 1] ─► h1 ─► [Layer 2] ─► h2 ─► ... ─► [Layer N] ─► out
           ▲                  ▲                         ▲
           └──── neighbours ──┴──────── (same set) ─────┘
```

Layer i maps dims[i] → dims[i+1] where
`dims = [input_dim] + [hidden_dim] * (num_layers - 1) + [output_dim]`.

## Shallow Aggregation

Every layer attends over the *raw* neighbour embeddings. The refined
centre node moves through the stack while its neighbours stay raw. Effectively
each layer re-reads the 1-hop neighbourhood with a sharper query. Key and
value projections are therefore sized from input_dim in every layer.

## Isolated Nodes

A node with no neighbours above the edge threshold is its own neighbour
(attention weight 1.0). The layer itself refuses empty neighbour sets.
"""

from __future__ import annotations

import logging

import torch
import torch.nn as nn

from .config import ModelConfig
from .errors import EmptyNeighborSet, ShapeMismatch
from .layers import AttentionGatedLayer

logger = logging.getLogger(__name__)


class RefinerNetwork(nn.Module):
    """Multi-layer graph-attention refiner.

    Parameters are registered per layer as ``layers.{i}.{W_q,...,beta}`` so
    ``state_dict()`` and ``named_parameters()`` give stable, ordered names for
    the optimizer, EWC and parameter blobs.
    """

    def __init__(self, cfg: ModelConfig | None = None) -> None:
        super().__init__()
        cfg = cfg or ModelConfig()
        self.cfg = cfg
        self.layers = nn.ModuleList([
            AttentionGatedLayer(
                query_dim=d_in,
                output_dim=d_out,
                neighbor_dim=cfg.input_dim,
                dropout=cfg.dropout,
                temperature=cfg.temperature,
            )
            for d_in, d_out in cfg.layer_dims
        ])

    def forward(
        self,
        node: torch.Tensor,
        neighbors: torch.Tensor | None = None,
        edge_weights: torch.Tensor | None = None,
        training: bool = False,
    ) -> tuple[torch.Tensor, list[torch.Tensor]]:
        """Refine one node embedding.

        Parameters
        ----------
        node : (input_dim,)
        neighbors : (k, input_dim) or None. k = 0 / None means isolated.
        edge_weights : (k,) or None
        training : dropout on when True

        Returns
        -------
        embedding : (output_dim,)
        attention : one detached (k,) tensor per layer
        """
        d = self.cfg.input_dim
        if node.dim() != 1 or node.shape[0] != d:
            raise ShapeMismatch("network node", (d,), tuple(node.shape))

        if neighbors is None or neighbors.numel() == 0:
            neighbors = node.new_zeros(0, d)
            edge_weights = None
        elif neighbors.dim() != 2 or neighbors.shape[1] != d:
            raise ShapeMismatch("network neighbors", ("k", d), tuple(neighbors.shape))
        elif edge_weights is not None and edge_weights.shape != (neighbors.shape[0],):
            raise ShapeMismatch("edge_weights", (neighbors.shape[0],), tuple(edge_weights.shape))

        h = node
        attention: list[torch.Tensor] = []
        for layer in self.layers:
            try:
                h, attn = layer(h, neighbors, edge_weights, training=training)
            except EmptyNeighborSet:
                logger.debug("Isolated node: using itself as its only neighbour")
                neighbors = node.unsqueeze(0)
                h, attn = layer(h, neighbors, None, training=training)
            attention.append(attn.detach())
        return h, attention

    def parameter_list(self) -> list[nn.Parameter]:
        """Parameters in registration order (layer by layer)."""
        return [p for _, p in self.named_parameters()]
