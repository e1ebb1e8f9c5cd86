"""
Configuration dataclasses for the sequence embedding refiner.

All magic numbers live here. Nothing is hard-coded in model code.

# Architecture Overview

Multi-layer graph-attention refiner over k-mer embeddings:
- **Attention**: cosine scores between projected query and keys, edge-weighted
- **Gated update**: single-step GRU-style fusion of neighbourhood signal
- **Output**: refined embedding + per-layer attention weights

# Hyperparameter Summary

## Model Architecture

| Parameter    | Value | Role                                              |
|--------------|-------|---------------------------------------------------|
| input_dim    | 256   | k-mer embedding size (multi-scale, binned)        |
| hidden_dim   | 512   | width of intermediate layers                      |
| output_dim   | 256   | refined embedding size (= input_dim for InfoNCE)  |
| num_layers   | 3     | stacked attention-gated layers                    |
| dropout      | 0.1   | inverted dropout before layer norm                |
| temperature  | 0.07  | attention softmax + contrastive temperature       |

## Training

| Parameter      | Value | Role                                            |
|----------------|-------|-------------------------------------------------|
| learning_rate  | 1e-3  | Adam base learning rate                         |
| min_lr         | 1e-6  | floor for every scheduler policy                |
| batch_size     | 32    | fresh triples per epoch                         |
| epochs         | 100   | default training horizon                        |

## Continual Learning

| Parameter                    | Value | Role                               |
|------------------------------|-------|------------------------------------|
| ewc_lambda                   | 0.4   | EWC penalty strength               |
| replay_capacity              | 10000 | replay buffer size                 |
| distribution_shift_threshold | 0.1   | KL level that triggers consolidation |

# References

- Veličković et al. (2018) ICLR. "Graph Attention Networks"
- Cho et al. (2014) EMNLP. "Learning Phrase Representations using RNN
  Encoder-Decoder" (GRU gates)
- Kingma & Ba (2015) ICLR. "Adam: A Method for Stochastic Optimization"
- Kirkpatrick et al. (2017) PNAS. "Overcoming catastrophic forgetting in
  neural networks" (EWC)
- van den Oord et al. (2018) arXiv:1807.03748. "Representation Learning with
  Contrastive Predictive Coding" (InfoNCE)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


# ═══════════════════════════════════════════════════════════════════════════
# Learning-Rate Policies
# ═══════════════════════════════════════════════════════════════════════════
#
# - COSINE:        half-cosine decay from base_lr to min_lr over total_epochs
# - WARMUP_LINEAR: linear ramp over warmup_steps, then linear decay to 0
# - PLATEAU:       halve lr after `patience` updates without improvement
# - CONSTANT:      lr never changes
#
# Every policy clamps its result to at least min_lr.


class SchedulerPolicy(Enum):
    """Learning-rate schedule selected when the scheduler is constructed."""

    COSINE = "cosine"
    WARMUP_LINEAR = "warmup_linear"
    PLATEAU = "plateau"
    CONSTANT = "constant"


# ═══════════════════════════════════════════════════════════════════════════
# Biological Priors
# ═══════════════════════════════════════════════════════════════════════════
#
# Seed weights for regulatory motifs. Feedback from the validation oracle
# rescales them (x1.1 on a missed homolog, x0.9 on a false match) within
# SequenceConfig.motif_weight_bounds.

DEFAULT_MOTIF_WEIGHTS: dict[str, float] = {
    "TATAAA": 2.0,   # TATA box
    "CAAT": 1.5,     # CAAT box
    "GCCGCC": 1.8,   # GC box
    "AATAAA": 1.7,   # Poly-A signal
    "CACGTG": 1.6,   # E-box
    "ATG": 1.5,      # Start codon
    "TAA": 1.4,      # Stop codons
    "TAG": 1.4,
    "TGA": 1.4,
}


# ═══════════════════════════════════════════════════════════════════════════
# Model Configuration
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ModelConfig:
    """Hyper-parameters for the attention-gated refiner network.

    # Architecture

    1. Query projection of the centre node, key/value projection of neighbours
    2. Cosine attention (edge-weighted) with temperature-scaled softmax
    3. Gated update: aggregated neighbours (input) fused into the query (hidden)
    4. Inverted dropout (training only), then layer norm
    5. N layers stacked; every layer sees the raw neighbour set
    """

    # ─────────────────────────────────────────────────────────────────────────
    # Embedding Dimensions
    #
    # input_dim matches the KmerEmbedder output. output_dim must equal
    # input_dim: the contrastive loss compares refined anchors against raw
    # positive/negative embeddings.
    # ─────────────────────────────────────────────────────────────────────────
    input_dim: int = 256
    hidden_dim: int = 512
    output_dim: int = 256

    # ─────────────────────────────────────────────────────────────────────────
    # Layer Depth
    #
    # Layer i maps dims[i] -> dims[i+1] with
    #   dims = [input_dim] + [hidden_dim] * (num_layers - 1) + [output_dim]
    # Neighbour projections (W_k, W_v) always read input_dim vectors.
    # ─────────────────────────────────────────────────────────────────────────
    num_layers: int = 3

    # ─────────────────────────────────────────────────────────────────────────
    # Regularisation / Attention Sharpness
    # ─────────────────────────────────────────────────────────────────────────
    dropout: float = 0.1
    temperature: float = 0.07

    def __post_init__(self) -> None:
        if self.num_layers < 1:
            raise ValueError(f"num_layers must be >= 1, got {self.num_layers}")
        if not 0.0 <= self.dropout < 1.0:
            raise ValueError(f"dropout must be in [0, 1), got {self.dropout}")
        if self.temperature <= 0.0:
            raise ValueError(f"temperature must be > 0, got {self.temperature}")

    @property
    def layer_dims(self) -> list[tuple[int, int]]:
        """(in_dim, out_dim) per layer."""
        dims = [self.input_dim] + [self.hidden_dim] * (self.num_layers - 1) + [self.output_dim]
        return list(zip(dims[:-1], dims[1:]))


# ═══════════════════════════════════════════════════════════════════════════
# Training Configuration
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TrainingConfig:
    """Optimizer, scheduler and batch construction settings."""

    learning_rate: float = 1e-3
    min_learning_rate: float = 1e-6
    batch_size: int = 32
    epochs: int = 100

    # ─────────────────────────────────────────────────────────────────────────
    # Scheduler
    #
    # decay_steps is the warmup_linear horizon; None means epochs * 100.
    # plateau_* only apply to SchedulerPolicy.PLATEAU (metric = accuracy).
    # ─────────────────────────────────────────────────────────────────────────
    scheduler: SchedulerPolicy = SchedulerPolicy.COSINE
    warmup_steps: int = 1000
    decay_steps: int | None = None
    plateau_patience: int = 10
    plateau_factor: float = 0.5

    # ─────────────────────────────────────────────────────────────────────────
    # Batch Construction
    #
    # With probability replay_probability (and a non-empty buffer) the epoch
    # batch is drawn from the replay buffer instead of fresh triples.
    # Fresh triples: top-num_positives most similar nodes as positives,
    # bottom-num_negatives as negatives.
    # ─────────────────────────────────────────────────────────────────────────
    replay_probability: float = 0.3
    num_positives: int = 3
    num_negatives: int = 5

    log_every: int = 10


# ═══════════════════════════════════════════════════════════════════════════
# Continual Learning Configuration
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ContinualConfig:
    """EWC and replay-buffer settings.

    Consolidation runs only on epochs that are a positive multiple of
    consolidation_interval, and only when the measured distribution shift
    exceeds distribution_shift_threshold.
    """

    ewc_lambda: float = 0.4
    replay_capacity: int = 10000
    distribution_shift_threshold: float = 0.1
    shift_window: int = 100
    consolidation_interval: int = 10


# ═══════════════════════════════════════════════════════════════════════════
# Sequence Embedding Configuration
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SequenceConfig:
    """Multi-scale k-mer embedding settings.

    Frequency vectors for each k in kmer_sizes (4**k bins each) are
    concatenated and averaged down to ModelConfig.input_dim.
    """

    kmer_sizes: tuple[int, ...] = (3, 4, 5, 6)
    use_motif_weights: bool = True

    # Codon position weights for k=3 (third position is wobble).
    codon_aware: bool = True
    codon_position_weights: tuple[float, float, float] = (1.0, 1.0, 0.7)

    # Motif lengths adjusted by oracle feedback, and the clamp range.
    feedback_kmer_sizes: tuple[int, ...] = (4, 5, 6)
    motif_weight_bounds: tuple[float, float] = (0.1, 5.0)


# ═══════════════════════════════════════════════════════════════════════════
# Search / Feedback Configuration
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SearchConfig:
    """Graph construction, search blending and feedback thresholds."""

    # Edges connect pairs with cosine >= edge_threshold.
    edge_threshold: float = 0.3

    # score = raw_weight * raw_cos + (1 - raw_weight) * refined_cos
    raw_weight: float = 0.5

    # ─────────────────────────────────────────────────────────────────────────
    # Feedback
    #
    # missed match: oracle says homolog, similarity < missed_match_threshold
    #               -> shared motifs x upweight
    # false match:  oracle says not homolog, similarity > false_match_threshold
    #               -> shared motifs x downweight
    # ─────────────────────────────────────────────────────────────────────────
    missed_match_threshold: float = 0.9
    false_match_threshold: float = 0.8
    upweight: float = 1.1
    downweight: float = 0.9


@dataclass(frozen=True)
class RefinerConfig:
    """Top-level configuration handed to SelfLearningRefiner."""

    model: ModelConfig = field(default_factory=ModelConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    continual: ContinualConfig = field(default_factory=ContinualConfig)
    sequence: SequenceConfig = field(default_factory=SequenceConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
