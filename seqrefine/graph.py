"""
Graph construction — embed sequence records and link them by similarity.

# Overview

Every record becomes a node carrying its raw k-mer embedding. Every
unordered pair (i, j) whose cosine similarity is at or above the threshold
becomes an undirected edge weighted by that similarity:

| Element | Fields                          | Source                        |
|---------|---------------------------------|-------------------------------|
| node    | id, payload, embedding          | SequenceRecord + Embedder     |
| edge    | source, target, weight          | cosine(emb_i, emb_j) >= 0.3   |

# Snapshot Semantics

The graph is built once per training call from the *raw* embeddings and
passed unchanged into every epoch. It is not rebuilt per epoch or per layer,
and GNN-refined embeddings never feed back into edge weights.

# Scaling

Construction is O(n²) in the number of records (one similarity matrix over
all pairs). That suits corpora of a few thousand sequences. Larger corpora
would need approximate neighbour search; nothing here attempts it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import torch

from .embedding import Embedder
from .errors import IndexNotFound
from .sequences import SequenceRecord
from .tensor import cosine

logger = logging.getLogger(__name__)

DEFAULT_EDGE_THRESHOLD = 0.3


@dataclass(frozen=True)
class SequenceNode:
    id: str
    payload: str
    embedding: torch.Tensor
    name: str = ""


@dataclass(frozen=True)
class Edge:
    source: int
    target: int
    weight: float


@dataclass(frozen=True)
class SimilarityGraph:
    """Immutable node/edge snapshot with adjacency lists.

    ``adjacency[i]`` lists ``(neighbour_index, weight)`` pairs for node i in
    edge order.
    """

    nodes: tuple[SequenceNode, ...]
    edges: tuple[Edge, ...]
    threshold: float = DEFAULT_EDGE_THRESHOLD
    adjacency: tuple[tuple[tuple[int, float], ...], ...] = field(default=(), repr=False)
    _index: dict[str, int] = field(default_factory=dict, repr=False, compare=False)

    def __len__(self) -> int:
        return len(self.nodes)

    def index_of(self, node_id: str) -> int:
        try:
            return self._index[node_id]
        except KeyError:
            raise IndexNotFound(node_id) from None

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def embedding_matrix(self) -> torch.Tensor:
        """(N, d) stack of raw node embeddings."""
        return torch.stack([n.embedding for n in self.nodes])

    def neighbors(self, index: int) -> tuple[torch.Tensor, torch.Tensor]:
        """Neighbour embeddings (k, d) and edge weights (k,) of node ``index``.

        k may be 0; the network substitutes the node itself in that case.
        """
        adj = self.adjacency[index]
        if not adj:
            d = self.nodes[index].embedding.numel()
            return torch.zeros(0, d), torch.zeros(0)
        embs = torch.stack([self.nodes[j].embedding for j, _ in adj])
        weights = torch.tensor([w for _, w in adj], dtype=torch.float32)
        return embs, weights

    def neighbors_of(
        self,
        embedding: torch.Tensor,
        threshold: float | None = None,
    ) -> tuple[torch.Tensor, torch.Tensor, list[int]]:
        """Neighbours of an embedding that is *not* a node (e.g. a search query).

        Returns embeddings (k, d), weights (k,), and node indices.
        """
        thr = self.threshold if threshold is None else threshold
        if not self.nodes:
            d = embedding.numel()
            return torch.zeros(0, d), torch.zeros(0), []
        sims = cosine(embedding, self.embedding_matrix())
        idx = [i for i, s in enumerate(sims.tolist()) if s >= thr]
        if not idx:
            d = embedding.numel()
            return torch.zeros(0, d), torch.zeros(0), []
        embs = torch.stack([self.nodes[i].embedding for i in idx])
        return embs, sims[idx].to(torch.float32), idx

    def ranked_by_similarity(self, index: int) -> list[tuple[int, float]]:
        """Other nodes as (index, cosine) pairs, most similar first."""
        sims = cosine(self.nodes[index].embedding, self.embedding_matrix()).tolist()
        ranked = [(j, s) for j, s in enumerate(sims) if j != index]
        ranked.sort(key=lambda p: p[1], reverse=True)
        return ranked


def build_similarity_graph(
    records: Sequence[SequenceRecord],
    embedder: Embedder,
    threshold: float = DEFAULT_EDGE_THRESHOLD,
) -> SimilarityGraph:
    """Embed ``records`` and connect every pair with cosine >= ``threshold``."""
    nodes = tuple(
        SequenceNode(id=r.id, payload=r.sequence, embedding=embedder.embed(r.sequence), name=r.name)
        for r in records
    )
    return graph_from_nodes(nodes, threshold)


def graph_from_nodes(
    nodes: Iterable[SequenceNode],
    threshold: float = DEFAULT_EDGE_THRESHOLD,
) -> SimilarityGraph:
    """Build the snapshot from nodes whose embeddings are already computed."""
    nodes = tuple(nodes)
    index: dict[str, int] = {}
    for i, n in enumerate(nodes):
        if n.id in index:
            raise ValueError(f"duplicate node id {n.id!r}")
        index[n.id] = i

    edges: list[Edge] = []
    adjacency: list[list[tuple[int, float]]] = [[] for _ in nodes]
    if len(nodes) > 1:
        emb = torch.stack([n.embedding for n in nodes])
        sims = cosine(emb.unsqueeze(1), emb.unsqueeze(0)).tolist()
        for i in range(len(nodes)):
            for j in range(i + 1, len(nodes)):
                s = sims[i][j]
                if s >= threshold:
                    edges.append(Edge(source=i, target=j, weight=s))
                    adjacency[i].append((j, s))
                    adjacency[j].append((i, s))

    logger.info("Built similarity graph: %d nodes, %d edges (threshold %.2f)",
                len(nodes), len(edges), threshold)
    return SimilarityGraph(
        nodes=nodes,
        edges=tuple(edges),
        threshold=threshold,
        adjacency=tuple(tuple(a) for a in adjacency),
        _index=index,
    )
