"""
SelfLearningRefiner — orchestrates graph building, training, evaluation,
search, oracle feedback and parameter persistence.

# ═══════════════════════════════════════════════════════════════════════════════
# TRAINING LOOP (one call to train)
# ═══════════════════════════════════════════════════════════════════════════════
#
#   records ──► embed ──► SimilarityGraph (built ONCE, frozen)
#                               │
#          ┌────────────────────┴──────────────────────────────┐
#          │ for epoch in range(epochs):                       │
#          │   batch    = replay.sample()  (p = 0.3, non-empty)│
#          │            | fresh triples    (otherwise)         │
#          │   loss     = mean InfoNCE(refined anchor) + EWC   │
#          │   grads    = autograd; Adam step                  │
#          │   replay  += batch                                │
#          │   accuracy = evaluate(validation, graph)          │
#          │   lr       = scheduler.update(epoch, accuracy)    │
#          │   shift    = replay.detect_distribution_shift()   │
#          │   every `consolidation_interval` epochs, if       │
#          │   shift > threshold: EWC.consolidate(batch)       │
#          └───────────────────────────────────────────────────┘
#
# ═══════════════════════════════════════════════════════════════════════════════

# State Machine

```
IDLE ─► BUILDING_GRAPH ─► TRAINING ─► EVALUATING ─┬─► TRAINING ... ─► TRAINED
                                                  └─► CONSOLIDATING ─► TRAINING
```

Any exception in a training call aborts it, returns the refiner to IDLE
and propagates. A ShapeMismatch is also logged as an error.

# Search Scoring

```
raw    = cos(q_raw, item_raw)
score  = raw                                         # untrained
score  = w · raw + (1 - w) · cos(q_refined, item_raw)   # trained, w = 0.5
```

q_refined runs the query through the network with its neighbours in the
corpus similarity graph.

# Parameter Blob

```
b"SQRF" | uint16 big-endian format version | torch.save({
    "format": 1,
    "model_config": {...},      # ModelConfig fields
    "state_dict": {...},        # RefinerNetwork.state_dict()
    "motif_weights": {...},
    "trained": bool,
})
```
"""

from __future__ import annotations

import dataclasses
import io
import logging
import pickle
import random
import struct
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Sequence

import torch

from .audit import AttentionTrace, build_attention_trace
from .config import RefinerConfig
from .embedding import Embedder, KmerEmbedder, MotifWeights
from .errors import IndexNotFound, ParameterFormatError, ShapeMismatch
from .ewc import ElasticWeightConsolidation
from .graph import SimilarityGraph, build_similarity_graph
from .loss import batch_contrastive_loss, info_nce_loss, parameter_gradients
from .model import RefinerNetwork
from .optim import AdamOptimizer
from .replay import ReplayBuffer, ReplayExemplar
from .scheduler import LearningRateScheduler
from .sequences import OracleVerdict, SequenceRecord, ValidationRecord, labels_by_id
from .tensor import cosine

logger = logging.getLogger(__name__)

BLOB_MAGIC = b"SQRF"
BLOB_FORMAT_VERSION = 1
_HEADER = struct.Struct(">4sH")


class TrainerState(Enum):
    IDLE = "idle"
    BUILDING_GRAPH = "building_graph"
    TRAINING = "training"
    EVALUATING = "evaluating"
    CONSOLIDATING = "consolidating"
    TRAINED = "trained"


@dataclass
class TrainingMetrics:
    """Per-epoch history of one training call."""

    loss: list[float] = field(default_factory=list)
    accuracy: list[float] = field(default_factory=list)
    distribution_shift: list[float] = field(default_factory=list)
    learning_rate: list[float] = field(default_factory=list)
    consolidations: list[int] = field(default_factory=list)
    excluded: list[int] = field(default_factory=list)

    def accuracy_improvement(self) -> float:
        """Final minus initial accuracy (0 with fewer than two epochs)."""
        if len(self.accuracy) < 2:
            return 0.0
        return self.accuracy[-1] - self.accuracy[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "loss": [round(v, 6) for v in self.loss],
            "accuracy": [round(v, 4) for v in self.accuracy],
            "distribution_shift": [round(v, 6) for v in self.distribution_shift],
            "learning_rate": list(self.learning_rate),
            "consolidations": list(self.consolidations),
            "excluded": list(self.excluded),
            "accuracy_improvement": round(self.accuracy_improvement(), 4),
        }


@dataclass(frozen=True)
class EvaluationResult:
    accuracy: float
    evaluated: int
    excluded: int


@dataclass(frozen=True)
class SearchHit:
    id: str
    similarity: float
    payload: str
    name: str = ""


class SelfLearningRefiner:
    """Continual-learning refiner for sequence embeddings.

    Parameters
    ----------
    cfg : RefinerConfig
    embedder : Embedder | None
        Payload → (input_dim,) tensor. Defaults to a ``KmerEmbedder`` that
        reads this refiner's motif table.
    seed : int | None
        Seeds batch selection and reservoir replacement.
    """

    def __init__(
        self,
        cfg: RefinerConfig | None = None,
        embedder: Embedder | None = None,
        seed: int | None = None,
    ) -> None:
        self.cfg = cfg or RefinerConfig()
        self.rng = random.Random(seed)

        self.motif_weights = MotifWeights(bounds=self.cfg.sequence.motif_weight_bounds)
        self.embedder: Embedder = embedder or KmerEmbedder(
            self.cfg.model.input_dim, self.cfg.sequence, motif_weights=self.motif_weights
        )

        self.network = RefinerNetwork(self.cfg.model)
        self.optimizer = AdamOptimizer(lr=self.cfg.training.learning_rate)
        self.ewc = ElasticWeightConsolidation(self.cfg.continual.ewc_lambda)
        self.replay = ReplayBuffer(self.cfg.continual.replay_capacity, rng=self.rng)

        self.state = TrainerState.IDLE
        self.trained = False
        self.metrics = TrainingMetrics()

    def _transition(self, new: TrainerState) -> None:
        if new is not self.state:
            logger.debug("State %s -> %s", self.state.value, new.value)
            self.state = new

    def status(self) -> dict[str, Any]:
        """JSON-serialisable snapshot of the continual-learning state."""
        return {
            "state": self.state.value,
            "trained": self.trained,
            "replay_size": len(self.replay),
            "replay_similarity": self.replay.stats.to_dict(),
            "ewc": self.ewc.state(),
        }

    # ══════════════════════════════════════════════════════════════════════
    # Training
    # ══════════════════════════════════════════════════════════════════════

    def train(
        self,
        training_set: Sequence[SequenceRecord],
        validation_set: Sequence[ValidationRecord] = (),
        epochs: int | None = None,
    ) -> TrainingMetrics:
        tcfg = self.cfg.training
        ccfg = self.cfg.continual
        epochs = tcfg.epochs if epochs is None else epochs

        metrics = TrainingMetrics()
        self.metrics = metrics
        scheduler = LearningRateScheduler.from_config(tcfg, total_epochs=epochs)
        self.optimizer.set_learning_rate(scheduler.current_lr)

        logger.info("Training on %d sequences for %d epochs (%s schedule)",
                    len(training_set), epochs, tcfg.scheduler.value)
        completed = False
        try:
            self._transition(TrainerState.BUILDING_GRAPH)
            graph = build_similarity_graph(
                training_set, self.embedder, self.cfg.search.edge_threshold
            )
            missing = [v.id for v in validation_set if v.id not in graph]
            if missing:
                logger.warning("%d validation samples are not in the training graph "
                               "and will be excluded: %s", len(missing), missing[:5])

            for epoch in range(epochs):
                self._transition(TrainerState.TRAINING)
                batch = self._next_batch(graph)
                loss, breakdown = self._train_step(batch, graph)
                for exemplar in batch:
                    self.replay.add(exemplar)

                self._transition(TrainerState.EVALUATING)
                result = self.evaluate(validation_set, graph)
                lr = scheduler.update(epoch, result.accuracy)
                self.optimizer.set_learning_rate(lr)

                shift = self.replay.detect_distribution_shift(ccfg.shift_window)
                if (epoch > 0 and epoch % ccfg.consolidation_interval == 0
                        and shift > ccfg.distribution_shift_threshold):
                    self._transition(TrainerState.CONSOLIDATING)
                    logger.info("Epoch %d: distribution shift %.4f, consolidating weights",
                                epoch, shift)
                    self.ewc.consolidate(self.network, batch, self._sample_loss_fn(graph))
                    metrics.consolidations.append(epoch)

                metrics.loss.append(loss)
                metrics.accuracy.append(result.accuracy)
                metrics.distribution_shift.append(shift)
                metrics.learning_rate.append(lr)
                metrics.excluded.append(result.excluded)

                if epoch % tcfg.log_every == 0 or epoch == epochs - 1:
                    logger.info("Epoch %3d/%d | loss %.4f (ewc %.4f) | accuracy %.2f%% | lr %.2e",
                                epoch, epochs, loss, breakdown["ewc"],
                                result.accuracy * 100.0, lr)
            completed = True
        except ShapeMismatch:
            logger.error("Training aborted on a shape mismatch")
            raise
        finally:
            if not completed:
                self._transition(TrainerState.IDLE)

        self.trained = True
        self._transition(TrainerState.TRAINED)
        logger.info("Training finished: accuracy %+.2f%% over %d epochs, %d consolidations",
                    metrics.accuracy_improvement() * 100.0, epochs, len(metrics.consolidations))
        return metrics

    def _next_batch(self, graph: SimilarityGraph) -> list[ReplayExemplar]:
        tcfg = self.cfg.training
        if len(self.replay) > 0 and self.rng.random() < tcfg.replay_probability:
            return self.replay.sample(tcfg.batch_size)

        batch: list[ReplayExemplar] = []
        for _ in range(min(tcfg.batch_size, len(graph))):
            idx = self.rng.randrange(len(graph))
            batch.append(self._fresh_exemplar(graph, idx))
        return batch

    def _fresh_exemplar(self, graph: SimilarityGraph, idx: int) -> ReplayExemplar:
        """Anchor = node idx, positives = most similar others, negatives = least similar."""
        tcfg = self.cfg.training
        ranked = graph.ranked_by_similarity(idx)
        pos = ranked[:tcfg.num_positives]
        rest = ranked[tcfg.num_positives:]
        neg = rest[max(0, len(rest) - tcfg.num_negatives):] if tcfg.num_negatives > 0 else []
        return ReplayExemplar(
            anchor=graph.nodes[idx].embedding,
            positives=[graph.nodes[j].embedding for j, _ in pos],
            negatives=[graph.nodes[j].embedding for j, _ in neg],
            similarity=pos[0][1] if pos else 0.0,
            node_index=idx,
        )

    def _neighbors_for(
        self,
        exemplar: ReplayExemplar,
        graph: SimilarityGraph,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        idx = exemplar.node_index
        if (idx is not None and idx < len(graph)
                and torch.equal(graph.nodes[idx].embedding, exemplar.anchor)):
            return graph.neighbors(idx)

        # Replayed from an earlier graph or from feedback: re-neighbour against
        # this snapshot, skipping nodes identical to the anchor.
        embs, weights, found = graph.neighbors_of(exemplar.anchor)
        keep = [i for i, j in enumerate(found)
                if not torch.equal(graph.nodes[j].embedding, exemplar.anchor)]
        if len(keep) == len(found):
            return embs, weights
        return embs[keep], weights[keep]

    def _train_step(
        self,
        batch: Sequence[ReplayExemplar],
        graph: SimilarityGraph,
    ) -> tuple[float, dict[str, float]]:
        d = self.cfg.model.input_dim
        triples = []
        for exemplar in batch:
            neighbors, weights = self._neighbors_for(exemplar, graph)
            refined, _ = self.network(exemplar.anchor, neighbors, weights, training=True)
            triples.append((refined, _stack(exemplar.positives, d), _stack(exemplar.negatives, d)))

        contrastive, breakdown = batch_contrastive_loss(triples, self.cfg.model.temperature)
        penalty = self.ewc.penalty(self.network.named_parameters())
        breakdown["ewc"] = penalty.item()

        if contrastive is None and not self.ewc.is_ready():
            logger.debug("No sample in the batch had positives; optimizer step skipped")
            breakdown["total"] = 0.0
            return 0.0, breakdown

        total = penalty if contrastive is None else contrastive + penalty
        params = self.network.parameter_list()
        self.optimizer.step(params, parameter_gradients(total, params))
        breakdown["total"] = total.item()
        return total.item(), breakdown

    def _sample_loss_fn(
        self,
        graph: SimilarityGraph,
    ) -> Callable[[ReplayExemplar], torch.Tensor | None]:
        d = self.cfg.model.input_dim

        def loss_fn(exemplar: ReplayExemplar) -> torch.Tensor | None:
            if not exemplar.positives:
                return None
            neighbors, weights = self._neighbors_for(exemplar, graph)
            refined, _ = self.network(exemplar.anchor, neighbors, weights, training=False)
            negatives = _stack(exemplar.negatives, d)
            return info_nce_loss(
                refined, _stack(exemplar.positives, d),
                negatives if negatives.numel() else None,
                self.cfg.model.temperature,
            )

        return loss_fn

    # ══════════════════════════════════════════════════════════════════════
    # Evaluation
    # ══════════════════════════════════════════════════════════════════════

    @torch.no_grad()
    def evaluate(
        self,
        validation_set: Iterable[ValidationRecord],
        graph: SimilarityGraph,
    ) -> EvaluationResult:
        """Top-1 retrieval accuracy of refined validation embeddings.

        A sample is correct when the nearest *other* graph node (cosine of the
        refined sample against raw node embeddings) is one of its
        ``expected_similar`` ids. Samples missing from the graph are excluded.
        """
        correct = evaluated = excluded = 0
        matrix = graph.embedding_matrix() if len(graph) else None
        for sample in validation_set:
            try:
                idx = graph.index_of(sample.id)
            except IndexNotFound as exc:
                logger.debug("Excluding validation sample: %s", exc)
                excluded += 1
                continue
            if len(graph) < 2:
                excluded += 1
                continue

            embedding = self.embedder.embed(sample.sequence)
            neighbors, weights = graph.neighbors(idx)
            refined, _ = self.network(embedding, neighbors, weights, training=False)
            sims = cosine(refined, matrix)
            sims[idx] = float("-inf")
            best = int(torch.argmax(sims))
            evaluated += 1
            if graph.nodes[best].id in sample.expected_similar:
                correct += 1

        accuracy = correct / evaluated if evaluated else 0.0
        return EvaluationResult(accuracy=accuracy, evaluated=evaluated, excluded=excluded)

    # ══════════════════════════════════════════════════════════════════════
    # Inference
    # ══════════════════════════════════════════════════════════════════════

    @torch.no_grad()
    def forward(
        self,
        node: torch.Tensor,
        neighbors: torch.Tensor | None = None,
        edge_weights: torch.Tensor | None = None,
    ) -> tuple[torch.Tensor, list[torch.Tensor]]:
        """Refine one embedding in inference mode (no dropout, no grad)."""
        return self.network(node, neighbors, edge_weights, training=False)

    def _refine_query(
        self,
        query_raw: torch.Tensor,
        graph: SimilarityGraph,
    ) -> tuple[torch.Tensor, list[torch.Tensor], list[int]]:
        neighbors, weights, found = graph.neighbors_of(query_raw)
        refined, attention = self.forward(query_raw, neighbors, weights)
        return refined, attention, found

    def search(
        self,
        query: str,
        corpus: Sequence[SequenceRecord],
        top_k: int = 10,
    ) -> list[SearchHit]:
        if not corpus or top_k <= 0:
            return []
        scfg = self.cfg.search
        query_raw = self.embedder.embed(query)
        graph = build_similarity_graph(corpus, self.embedder, scfg.edge_threshold)
        matrix = graph.embedding_matrix()

        scores = cosine(query_raw, matrix)
        if self.trained:
            refined, _, _ = self._refine_query(query_raw, graph)
            scores = scfg.raw_weight * scores + (1.0 - scfg.raw_weight) * cosine(refined, matrix)
        else:
            logger.warning("Network is untrained: ranking by raw similarity only")

        order = torch.argsort(scores, descending=True, stable=True)[:top_k].tolist()
        return [
            SearchHit(
                id=graph.nodes[i].id,
                similarity=float(scores[i]),
                payload=graph.nodes[i].payload,
                name=graph.nodes[i].name,
            )
            for i in order
        ]

    def explain(
        self,
        query: str,
        corpus: Sequence[SequenceRecord],
        query_id: str = "",
        top_n: int = 10,
    ) -> AttentionTrace:
        """Per-layer attention of the refined query over its corpus neighbours."""
        if not self.trained:
            logger.warning("Explaining an untrained network: attention is from random weights")
        graph = build_similarity_graph(corpus, self.embedder, self.cfg.search.edge_threshold)
        query_raw = self.embedder.embed(query)
        _, attention, found = self._refine_query(query_raw, graph)
        edge_weights = cosine(query_raw, graph.embedding_matrix())[found].tolist() if found else []
        return build_attention_trace(
            query_id,
            [graph.nodes[j] for j in found],
            edge_weights,
            attention,
            top_n=top_n,
        )

    # ══════════════════════════════════════════════════════════════════════
    # Oracle feedback
    # ══════════════════════════════════════════════════════════════════════

    def learn_from_feedback(
        self,
        query: str,
        retrieved: Iterable[SearchHit | SequenceRecord],
        oracle_labels: Mapping[str, OracleVerdict | bool],
    ) -> dict[str, int]:
        """Adjust motif weights from oracle verdicts and store replay exemplars.

        Returns counts: upweighted, downweighted, recorded, skipped.
        """
        scfg = self.cfg.search
        kmer_sizes = self.cfg.sequence.feedback_kmer_sizes
        labels = labels_by_id(oracle_labels)
        summary = {"upweighted": 0, "downweighted": 0, "recorded": 0, "skipped": 0}

        query_seq = query.upper()
        query_raw = self.embedder.embed(query)
        for hit in retrieved:
            payload = hit.payload if isinstance(hit, SearchHit) else hit.sequence
            try:
                hit_raw = self.embedder.embed(payload)
                similarity = float(cosine(query_raw, hit_raw))
            except (TypeError, ValueError, AttributeError) as exc:
                logger.warning("Skipping feedback for %r: %s", hit.id, exc)
                summary["skipped"] += 1
                continue

            verdict = labels.get(hit.id)
            if verdict is None:
                logger.debug("No oracle verdict for %r; treating as non-match", hit.id)
            is_match = verdict is not None and verdict.is_match

            if is_match and similarity < scfg.missed_match_threshold:
                shared = self.motif_weights.adjust_shared(
                    query_seq, payload.upper(), scfg.upweight, kmer_sizes)
                summary["upweighted"] += len(shared)
            elif not is_match and similarity > scfg.false_match_threshold:
                shared = self.motif_weights.adjust_shared(
                    query_seq, payload.upper(), scfg.downweight, kmer_sizes)
                summary["downweighted"] += len(shared)

            self.replay.add(ReplayExemplar(
                anchor=query_raw,
                positives=[hit_raw] if is_match else [],
                negatives=[] if is_match else [hit_raw],
                similarity=similarity,
            ))
            summary["recorded"] += 1

        logger.info("Feedback: %d recorded, %d motifs up, %d motifs down, %d skipped",
                    summary["recorded"], summary["upweighted"],
                    summary["downweighted"], summary["skipped"])
        return summary

    # ══════════════════════════════════════════════════════════════════════
    # Persistence
    # ══════════════════════════════════════════════════════════════════════

    def save_parameters(self) -> bytes:
        payload = {
            "format": BLOB_FORMAT_VERSION,
            "model_config": dataclasses.asdict(self.cfg.model),
            "state_dict": {k: v.detach().clone() for k, v in self.network.state_dict().items()},
            "motif_weights": self.motif_weights.to_dict(),
            "trained": self.trained,
        }
        buf = io.BytesIO()
        buf.write(_HEADER.pack(BLOB_MAGIC, BLOB_FORMAT_VERSION))
        torch.save(payload, buf)
        return buf.getvalue()

    def load_parameters(self, blob: bytes) -> None:
        if len(blob) < _HEADER.size:
            raise ParameterFormatError(f"blob too short ({len(blob)} bytes)")
        magic, version = _HEADER.unpack_from(blob)
        if magic != BLOB_MAGIC:
            raise ParameterFormatError(f"bad magic {magic!r}")
        if version != BLOB_FORMAT_VERSION:
            raise ParameterFormatError(f"unsupported format version {version}")

        try:
            payload = torch.load(io.BytesIO(blob[_HEADER.size:]),
                                 map_location="cpu", weights_only=True)
        except (RuntimeError, EOFError, ValueError, KeyError,
                zipfile.BadZipFile, pickle.UnpicklingError) as exc:
            raise ParameterFormatError(f"unreadable payload: {exc}") from exc
        if not isinstance(payload, dict) or payload.get("format") != BLOB_FORMAT_VERSION:
            raise ParameterFormatError("payload is not a format-1 parameter dict")

        expected = dataclasses.asdict(self.cfg.model)
        if payload.get("model_config") != expected:
            raise ShapeMismatch("load_parameters", expected, payload.get("model_config"))

        state = payload["state_dict"]
        current = self.network.state_dict()
        if set(state) != set(current):
            raise ShapeMismatch("load_parameters", sorted(current), sorted(state))
        for name, tensor in state.items():
            if tensor.shape != current[name].shape:
                raise ShapeMismatch(name, tuple(current[name].shape), tuple(tensor.shape))

        self.network.load_state_dict(state)
        self.motif_weights.replace(payload.get("motif_weights", {}))
        self.trained = bool(payload.get("trained", False))
        self._transition(TrainerState.TRAINED if self.trained else TrainerState.IDLE)
        logger.info("Loaded %d parameter tensors (trained=%s)", len(state), self.trained)


def _stack(vectors: Sequence[torch.Tensor], dim: int) -> torch.Tensor:
    if not vectors:
        return torch.zeros(0, dim)
    return torch.stack(list(vectors))
