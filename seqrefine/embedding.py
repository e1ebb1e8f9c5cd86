"""
Multi-scale k-mer embedding generator and the learned motif-weight table.

# Embedding

For each k in ``SequenceConfig.kmer_sizes`` the sequence is scanned with a
window of size k. Each occurrence contributes a weight:

```
w = motif_weight(kmer)          # 1.0 unless the motif table knows it
w *= codon_weight[i % 3]        # k == 3 only, codon-aware mode
```

Counts are normalised to a frequency vector over all 4**k k-mers, the
vectors are concatenated (64 + 256 + 1024 + 4096 = 5440 dims for k=3..6),
and averaged down into ``input_dim`` contiguous bins.

# Motif Weights

``MotifWeights`` belongs to the refiner that created it and is shared with
its embedder by reference. Oracle feedback rescales it, so later embeddings
see the adjusted weights.
"""

from __future__ import annotations

import itertools
import logging
from typing import Iterable, Iterator, Mapping, Protocol

import torch

from .config import DEFAULT_MOTIF_WEIGHTS, SequenceConfig

logger = logging.getLogger(__name__)

NUCLEOTIDES = "ATGC"


class Embedder(Protocol):
    """Embedding generator contract: payload → fixed-size vector."""

    def embed(self, payload: str) -> torch.Tensor: ...


# ═══════════════════════════════════════════════════════════════════════════
# Motif weight table
# ═══════════════════════════════════════════════════════════════════════════

class MotifWeights(Mapping[str, float]):
    """Motif → weight table clamped to ``bounds``.

    Unknown motifs read as 1.0 through :meth:`weight`. Mapping access
    (``table[m]``) only covers motifs that have an explicit entry.
    """

    def __init__(
        self,
        initial: Mapping[str, float] | None = None,
        bounds: tuple[float, float] = (0.1, 5.0),
    ) -> None:
        self.lo, self.hi = bounds
        seed = DEFAULT_MOTIF_WEIGHTS if initial is None else initial
        self._weights: dict[str, float] = {m: self._clamp(w) for m, w in seed.items()}

    def _clamp(self, value: float) -> float:
        return max(self.lo, min(self.hi, float(value)))

    def __getitem__(self, motif: str) -> float:
        return self._weights[motif]

    def __iter__(self) -> Iterator[str]:
        return iter(self._weights)

    def __len__(self) -> int:
        return len(self._weights)

    def weight(self, motif: str) -> float:
        return self._weights.get(motif, 1.0)

    def scale(self, motif: str, factor: float) -> float:
        """Multiply one motif's weight by ``factor`` (clamped). Returns the new weight."""
        new = self._clamp(self.weight(motif) * factor)
        self._weights[motif] = new
        return new

    def adjust_shared(
        self,
        seq_a: str,
        seq_b: str,
        factor: float,
        kmer_sizes: Iterable[int] = (4, 5, 6),
    ) -> set[str]:
        """Scale every distinct k-mer that occurs in both sequences once.

        Returns the set of adjusted motifs.
        """
        shared: set[str] = set()
        for k in kmer_sizes:
            shared |= set(iter_kmers(seq_a, k)) & set(iter_kmers(seq_b, k))
        for motif in shared:
            self.scale(motif, factor)
        return shared

    def to_dict(self) -> dict[str, float]:
        return dict(self._weights)

    def replace(self, weights: Mapping[str, float]) -> None:
        self._weights = {m: self._clamp(w) for m, w in weights.items()}


def iter_kmers(sequence: str, k: int) -> Iterator[str]:
    for i in range(len(sequence) - k + 1):
        yield sequence[i:i + k]


# ═══════════════════════════════════════════════════════════════════════════
# K-mer embedder
# ═══════════════════════════════════════════════════════════════════════════

class KmerEmbedder:
    """Multi-scale k-mer frequency embedding, binned to ``output_dim``."""

    def __init__(
        self,
        output_dim: int,
        cfg: SequenceConfig | None = None,
        motif_weights: MotifWeights | None = None,
    ) -> None:
        self.cfg = cfg or SequenceConfig()
        self.output_dim = output_dim
        self.motif_weights = (
            motif_weights if motif_weights is not None
            else MotifWeights(bounds=self.cfg.motif_weight_bounds)
        )
        # kmer → column, one vocabulary per k
        self._vocabs: dict[int, dict[str, int]] = {
            k: {"".join(p): i for i, p in enumerate(itertools.product(NUCLEOTIDES, repeat=k))}
            for k in self.cfg.kmer_sizes
        }
        self.raw_dim = sum(len(v) for v in self._vocabs.values())

    def _frequencies(self, sequence: str, k: int) -> torch.Tensor:
        vocab = self._vocabs[k]
        counts = torch.zeros(len(vocab), dtype=torch.float32)
        for i, kmer in enumerate(iter_kmers(sequence, k)):
            col = vocab.get(kmer)
            if col is None:
                continue
            w = self.motif_weights.weight(kmer) if self.cfg.use_motif_weights else 1.0
            if self.cfg.codon_aware and k == 3:
                w *= self.cfg.codon_position_weights[i % 3]
            counts[col] += w
        total = counts.sum()
        return counts / total if total > 0 else counts

    def embed(self, payload: str) -> torch.Tensor:
        sequence = payload.upper()
        combined = torch.cat([self._frequencies(sequence, k) for k in self.cfg.kmer_sizes])
        if combined.numel() == self.output_dim:
            return combined
        return bin_average(combined, self.output_dim)


def bin_average(vector: torch.Tensor, target_dim: int) -> torch.Tensor:
    """Average ``vector`` into ``target_dim`` contiguous bins.

    Bin i covers [floor(i*step), floor((i+1)*step)) with step = n/target_dim.
    When target_dim > n, empty bins reuse the single element at their start.
    """
    n = vector.numel()
    step = n / target_dim
    out = torch.empty(target_dim, dtype=vector.dtype)
    for i in range(target_dim):
        start = int(i * step)
        end = max(int((i + 1) * step), start + 1)
        out[i] = vector[start:min(end, n)].mean()
    return out
