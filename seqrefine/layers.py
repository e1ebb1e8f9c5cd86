"""
Attention-gated layer — the learnable aggregation unit of the refiner.

One layer fuses a node's neighbourhood into the node's own representation:

```
q   = x  · W_q                        # centre node  → query / hidden state
K   = N  · W_k,   V = N · W_v         # neighbours   → keys, values
s_j = cos(q, K_j) · e_j               # e_j: optional edge weight
α   = softmax(s / T)                  # max-subtracted
a   = Σ_j α_j V_j                     # aggregated neighbourhood (gate input)

z   = σ(a · W_z[:d] + q · W_z[d:])              # update gate
r   = σ(a · W_r[:d] + q · W_r[d:])              # reset gate
c   = tanh(a · W_h[:d] + (r ⊙ q) · W_h[d:])     # candidate
h   = (1 - z) ⊙ q + z ⊙ c

out = LayerNorm(Dropout(h))
```

# Gated Update

The GRU-style gates run exactly once per layer. They are not a recurrence
over time. They decide, per feature, how much of the aggregated neighbourhood
signal replaces the node's projected query.

# Attention Scores

Scores are cosine similarities of the projected query and keys, optionally
scaled by the static graph's edge weights, then sharpened by a temperature
(default 0.07).

# References

- Veličković et al. (2018) ICLR. "Graph Attention Networks"
- Li et al. (2016) ICLR. "Gated Graph Sequence Neural Networks" (GRU-gated
  node updates)
- Cho et al. (2014) EMNLP. "Learning Phrase Representations using RNN
  Encoder-Decoder" (update/reset gates)
- Ba et al. (2016) arXiv:1607.06450. "Layer Normalization"
"""

from __future__ import annotations

import torch
import torch.nn as nn

from . import tensor as T
from .errors import EmptyNeighborSet, ShapeMismatch


class AttentionGatedLayer(nn.Module):
    """Cosine attention over neighbours followed by a single-step gated update.

    Parameters
    ----------
    query_dim : int
        Size of the centre-node vector fed to this layer (previous layer's
        output size, or the network input size for the first layer).
    output_dim : int
        Size of the layer output.
    neighbor_dim : int | None
        Size of the neighbour vectors. Defaults to ``query_dim``. In a stack
        every layer reads the raw neighbour embeddings, so this is the
        network's input size.
    dropout : float
        Inverted-dropout rate applied in training mode before layer norm.
    temperature : float
        Attention softmax temperature.

    Parameter shapes
    ----------------
    W_q : (query_dim, output_dim)
    W_k, W_v : (neighbor_dim, output_dim)
    W_o : (output_dim, output_dim). Not used by ``forward``, kept so the
        parameter set (and saved blobs) can grow an output projection.
    W_z, W_r, W_h : (2 * output_dim, output_dim). Rows [:output_dim] act on
        the aggregated input, rows [output_dim:] on the hidden state.
    gamma, beta : (output_dim,)
    """

    def __init__(
        self,
        query_dim: int,
        output_dim: int,
        neighbor_dim: int | None = None,
        dropout: float = 0.1,
        temperature: float = 0.07,
    ) -> None:
        super().__init__()
        if not 0.0 <= dropout < 1.0:
            raise ValueError(f"dropout must be in [0, 1), got {dropout}")
        if temperature <= 0.0:
            raise ValueError(f"temperature must be > 0, got {temperature}")

        self.query_dim = query_dim
        self.output_dim = output_dim
        self.neighbor_dim = neighbor_dim or query_dim
        self.dropout = dropout
        self.temperature = temperature

        # Attention projections
        self.W_q = nn.Parameter(T.xavier([query_dim, output_dim]))
        self.W_k = nn.Parameter(T.xavier([self.neighbor_dim, output_dim]))
        self.W_v = nn.Parameter(T.xavier([self.neighbor_dim, output_dim]))
        self.W_o = nn.Parameter(T.xavier([output_dim, output_dim]))

        # Gates: [input half; hidden half]
        self.W_z = nn.Parameter(T.xavier([2 * output_dim, output_dim]))
        self.W_r = nn.Parameter(T.xavier([2 * output_dim, output_dim]))
        self.W_h = nn.Parameter(T.xavier([2 * output_dim, output_dim]))

        # Layer norm
        self.gamma = nn.Parameter(torch.ones(output_dim))
        self.beta = nn.Parameter(T.zeros([output_dim]))

    def extra_repr(self) -> str:
        return (f"query_dim={self.query_dim}, output_dim={self.output_dim}, "
                f"neighbor_dim={self.neighbor_dim}, dropout={self.dropout}, "
                f"temperature={self.temperature}")

    # ------------------------------------------------------------------
    # Sub-steps
    # ------------------------------------------------------------------

    def attention(
        self,
        query: torch.Tensor,
        keys: torch.Tensor,
        values: torch.Tensor,
        edge_weights: torch.Tensor | None = None,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Aggregate ``values`` by softmax(cosine(query, keys) · edge_weights / T).

        Returns (aggregated (output_dim,), attention weights (k,)).
        """
        scores = T.cosine(query, keys)
        if edge_weights is not None:
            scores = T.multiply(scores, edge_weights)
        weights = T.softmax(scores, self.temperature)
        return T.matmul(weights, values), weights

    def gated_update(self, inp: torch.Tensor, hidden: torch.Tensor) -> torch.Tensor:
        """One GRU-style step: blend ``hidden`` with a candidate built from ``inp``."""
        d = self.output_dim
        if inp.shape != (d,) or hidden.shape != (d,):
            raise ShapeMismatch("gated_update", (d,), (tuple(inp.shape), tuple(hidden.shape)))
        z = T.sigmoid(T.matmul(inp, self.W_z[:d]) + T.matmul(hidden, self.W_z[d:]))
        r = T.sigmoid(T.matmul(inp, self.W_r[:d]) + T.matmul(hidden, self.W_r[d:]))
        candidate = T.tanh(
            T.matmul(inp, self.W_h[:d]) + T.matmul(T.multiply(r, hidden), self.W_h[d:])
        )
        return (1.0 - z) * hidden + z * candidate

    # ------------------------------------------------------------------
    # Forward
    # ------------------------------------------------------------------

    def forward(
        self,
        node: torch.Tensor,
        neighbors: torch.Tensor,
        edge_weights: torch.Tensor | None = None,
        training: bool = False,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Refine one node.

        Parameters
        ----------
        node : (query_dim,)
        neighbors : (k, neighbor_dim), k >= 1
        edge_weights : (k,) or None
        training : apply dropout when True

        Returns
        -------
        output : (output_dim,)
        attention : (k,) softmax weights over neighbours
        """
        if node.dim() != 1 or node.shape[0] != self.query_dim:
            raise ShapeMismatch("layer node", (self.query_dim,), tuple(node.shape))
        if neighbors.dim() != 2 or neighbors.shape[1] != self.neighbor_dim:
            raise ShapeMismatch("layer neighbors", ("k", self.neighbor_dim), tuple(neighbors.shape))
        if neighbors.shape[0] == 0:
            raise EmptyNeighborSet("layer received no neighbours")
        if edge_weights is not None and edge_weights.shape != (neighbors.shape[0],):
            raise ShapeMismatch("edge_weights", (neighbors.shape[0],), tuple(edge_weights.shape))

        query = T.matmul(node, self.W_q)
        keys = T.matmul(neighbors, self.W_k)
        values = T.matmul(neighbors, self.W_v)

        aggregated, weights = self.attention(query, keys, values, edge_weights)
        updated = self.gated_update(aggregated, query)
        updated = T.dropout(updated, self.dropout, training)
        return T.layer_norm(updated, self.gamma, self.beta), weights
