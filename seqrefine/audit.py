"""
AttentionTrace — which neighbours shaped a refined embedding.

When a refined query ranks a sequence higher than raw k-mer similarity
would, the trace shows which corpus neighbours pulled it there. Each layer
lists its attention over the query's neighbours next to the cosine edge
weight that biased that attention.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import torch

from .graph import SequenceNode


@dataclass
class NeighborAttribution:
    """One neighbour with its edge weight and attention in a layer."""

    node_id: str
    name: str
    edge_weight: float
    attention: float


@dataclass
class LayerAttention:
    """Attention summary for one layer of the stack."""

    layer: int
    num_neighbors: int
    mean_attention: float
    max_attention: float
    top_neighbors: list[NeighborAttribution]


@dataclass
class AttentionTrace:
    """Audit trail for one refined query.

    Fields
    ------
    query_id : str
        Caller-supplied or generated id for this request.
    isolated : bool
        True when the query had no neighbour above the edge threshold and
        attended only to itself.
    layers : list[LayerAttention]
        One entry per network layer.
    """

    query_id: str = ""
    isolated: bool = False
    layers: list[LayerAttention] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """JSON-serialisable summary."""
        return {
            "query_id": self.query_id,
            "isolated": self.isolated,
            "layers": [
                {
                    "layer": la.layer,
                    "num_neighbors": la.num_neighbors,
                    "mean_attention": round(la.mean_attention, 4),
                    "max_attention": round(la.max_attention, 4),
                    "top_neighbors": [
                        {
                            "node_id": n.node_id,
                            "name": n.name,
                            "edge_weight": round(n.edge_weight, 4),
                            "attention": round(n.attention, 4),
                        }
                        for n in la.top_neighbors
                    ],
                }
                for la in self.layers
            ],
        }


def build_attention_trace(
    query_id: str,
    neighbors: Sequence[SequenceNode],
    edge_weights: Sequence[float],
    attention: Sequence[torch.Tensor],
    top_n: int = 10,
) -> AttentionTrace:
    """Pair each layer's attention vector with the neighbour nodes it covers."""
    trace = AttentionTrace(query_id=query_id, isolated=not neighbors)

    for i, attn in enumerate(attention):
        trace_layer = LayerAttention(
            layer=i,
            num_neighbors=attn.numel(),
            mean_attention=attn.mean().item(),
            max_attention=attn.max().item(),
            top_neighbors=[],
        )
        if neighbors:
            k = min(top_n, attn.numel())
            top_vals, top_idx = torch.topk(attn, k)
            for val, idx in zip(top_vals.tolist(), top_idx.tolist()):
                node = neighbors[idx]
                trace_layer.top_neighbors.append(NeighborAttribution(
                    node_id=node.id,
                    name=node.name,
                    edge_weight=edge_weights[idx],
                    attention=val,
                ))
        trace.layers.append(trace_layer)

    return trace
