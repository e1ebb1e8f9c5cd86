"""
seqrefine — Continual-learning refiner for DNA sequence embeddings.

Multi-layer graph-attention network with gated updates that re-weights
k-mer embeddings using their similarity-graph neighbourhood.

Architecture:
    - Embedding: multi-scale k-mer frequencies (k = 3..6), motif-weighted
    - Graph: static cosine-similarity snapshot per training call
    - Layers: cosine attention over neighbours + single-step GRU-style fusion
    - Training: InfoNCE contrastive loss, Adam, 4-policy LR schedule
    - Continual learning: EWC + reservoir replay with KL shift detection
    - Built-in auditability via per-layer attention weights
"""

__version__ = "0.1.0"

from .api import feedback_request, search_request  # noqa: F401 — public API
from .audit import AttentionTrace  # noqa: F401
from .config import RefinerConfig, SchedulerPolicy  # noqa: F401
from .embedding import KmerEmbedder, MotifWeights  # noqa: F401
from .errors import (  # noqa: F401
    EmptyNeighborSet,
    IndexNotFound,
    InsufficientBufferSize,
    ParameterFormatError,
    RefinerError,
    ShapeMismatch,
)
from .model import RefinerNetwork  # noqa: F401
from .sequences import (  # noqa: F401
    OracleVerdict,
    SequenceRecord,
    ValidationRecord,
    collect_oracle_labels,
    load_fasta,
    parse_fasta,
)
from .trainer import (  # noqa: F401
    EvaluationResult,
    SearchHit,
    SelfLearningRefiner,
    TrainingMetrics,
)
