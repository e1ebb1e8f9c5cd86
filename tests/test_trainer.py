"""
Tests for the training orchestrator: training loop, evaluation, search,
feedback and persistence.
"""

import dataclasses

import pytest
import torch

from conftest import DIM, TableEmbedder
from seqrefine.config import ContinualConfig, ModelConfig, RefinerConfig
from seqrefine.errors import ParameterFormatError, ShapeMismatch
from seqrefine.graph import build_similarity_graph
from seqrefine.replay import ReplayExemplar
from seqrefine.sequences import OracleVerdict, SequenceRecord, ValidationRecord
from seqrefine.trainer import (
    BLOB_MAGIC, SearchHit, SelfLearningRefiner, TrainerState, TrainingMetrics,
)


@pytest.fixture
def refiner(small_cfg, two_clusters):
    embedder, _, _ = two_clusters
    return SelfLearningRefiner(small_cfg, embedder=embedder, seed=7)


class TestTraining:
    """Test the epoch loop and its bookkeeping."""

    def test_metrics_per_epoch(self, refiner, two_clusters):
        _, records, validation = two_clusters
        metrics = refiner.train(records, validation, epochs=12)

        assert len(metrics.loss) == 12
        assert len(metrics.accuracy) == 12
        assert len(metrics.distribution_shift) == 12
        assert len(metrics.learning_rate) == 12
        assert all(0.0 <= a <= 1.0 for a in metrics.accuracy)
        assert refiner.trained
        assert refiner.state is TrainerState.TRAINED

    def test_batches_fill_replay_buffer(self, refiner, two_clusters):
        _, records, validation = two_clusters
        refiner.train(records, validation, epochs=4)
        assert len(refiner.replay) > 0

    def test_training_changes_parameters(self, refiner, two_clusters):
        _, records, validation = two_clusters
        before = [p.detach().clone() for p in refiner.network.parameters()]
        refiner.train(records, validation, epochs=3)
        after = list(refiner.network.parameters())
        assert any(not torch.equal(b, a.detach()) for b, a in zip(before, after))

    def test_missing_validation_ids_are_excluded(self, refiner, two_clusters):
        _, records, validation = two_clusters
        ghost = ValidationRecord(id="ghost", sequence="AAAA", expected_similar=frozenset({"a1"}))
        metrics = refiner.train(records, [*validation, ghost], epochs=2)
        assert metrics.excluded == [1, 1]

    def test_shape_mismatch_aborts_and_resets_state(self, two_clusters):
        embedder, records, validation = two_clusters
        cfg = RefinerConfig(model=ModelConfig(input_dim=DIM, hidden_dim=8, output_dim=8,
                                              num_layers=2, dropout=0.0))
        refiner = SelfLearningRefiner(cfg, embedder=embedder, seed=0)
        with pytest.raises(ShapeMismatch):
            refiner.train(records, validation, epochs=2)
        assert refiner.state is TrainerState.IDLE
        assert not refiner.trained

    def test_consolidation_on_shift(self, small_cfg, two_clusters, monkeypatch):
        embedder, records, validation = two_clusters
        cfg = dataclasses.replace(
            small_cfg,
            continual=ContinualConfig(consolidation_interval=2, distribution_shift_threshold=0.1),
        )
        refiner = SelfLearningRefiner(cfg, embedder=embedder, seed=0)
        monkeypatch.setattr(refiner.replay, "detect_distribution_shift", lambda window_size: 0.5)

        metrics = refiner.train(records, validation, epochs=5)
        assert metrics.consolidations == [2, 4]
        assert refiner.ewc.task_count == 2
        assert refiner.ewc.is_ready()

    def test_no_consolidation_below_threshold(self, refiner, two_clusters, monkeypatch):
        _, records, validation = two_clusters
        monkeypatch.setattr(refiner.replay, "detect_distribution_shift", lambda window_size: 0.05)
        metrics = refiner.train(records, validation, epochs=12)
        assert metrics.consolidations == []
        assert refiner.ewc.task_count == 0

    def test_any_error_resets_state(self, refiner, two_clusters):
        _, records, validation = two_clusters
        unknown = SequenceRecord(id="x0", sequence="GGGG")
        with pytest.raises(ValueError):
            refiner.train([*records, unknown], validation, epochs=2)
        assert refiner.state is TrainerState.IDLE
        assert not refiner.trained

    def test_status_reports_consolidations(self, small_cfg, two_clusters, monkeypatch):
        embedder, records, validation = two_clusters
        cfg = dataclasses.replace(
            small_cfg,
            continual=ContinualConfig(consolidation_interval=2, distribution_shift_threshold=0.1),
        )
        refiner = SelfLearningRefiner(cfg, embedder=embedder, seed=0)
        monkeypatch.setattr(refiner.replay, "detect_distribution_shift", lambda window_size: 0.5)
        refiner.train(records, validation, epochs=3)

        status = refiner.status()
        assert status["state"] == "trained"
        assert status["ewc"]["task_count"] == 1
        assert status["replay_size"] == len(refiner.replay)
        assert status["replay_similarity"]["count"] == refiner.replay.position

    def test_accuracy_improvement(self):
        m = TrainingMetrics(accuracy=[0.5, 0.6, 0.9])
        assert m.accuracy_improvement() == pytest.approx(0.4)
        assert TrainingMetrics(accuracy=[0.7]).accuracy_improvement() == 0.0
        assert m.to_dict()["accuracy_improvement"] == pytest.approx(0.4)


class TestReplayBatches:
    """Test batches drawn from the replay buffer."""

    @pytest.fixture
    def replay_refiner(self, small_cfg, two_clusters):
        embedder, _, _ = two_clusters
        cfg = dataclasses.replace(
            small_cfg, training=dataclasses.replace(small_cfg.training, replay_probability=1.0),
        )
        refiner = SelfLearningRefiner(cfg, embedder=embedder, seed=3)
        for _ in range(8):
            refiner.replay.add(ReplayExemplar(
                anchor=embedder.embed("AAAA"),
                positives=[embedder.embed("AAAT")],
                negatives=[embedder.embed("CCCC")],
                similarity=0.9,
            ))
        return refiner

    @pytest.fixture
    def graph(self, two_clusters):
        embedder, records, _ = two_clusters
        return build_similarity_graph(records, embedder)

    def test_batch_comes_from_buffer(self, replay_refiner, graph):
        stored = list(replay_refiner.replay)
        batch = replay_refiner._next_batch(graph)
        assert len(batch) == replay_refiner.cfg.training.batch_size
        assert all(any(e is s for s in stored) for e in batch)
        assert all(e.node_index is None for e in batch)

    def test_empty_buffer_falls_back_to_fresh(self, replay_refiner, graph):
        replay_refiner.replay.reset()
        batch = replay_refiner._next_batch(graph)
        assert all(e.node_index is not None for e in batch)

    def test_replayed_anchor_is_reneighboured(self, replay_refiner, graph):
        exemplar = next(iter(replay_refiner.replay))
        neighbors, weights = replay_refiner._neighbors_for(exemplar, graph)
        # a0 itself is dropped, a1 and a2 remain
        assert neighbors.shape == (2, DIM)
        assert weights.shape == (2,)
        assert not any(torch.equal(row, exemplar.anchor) for row in neighbors)

    def test_training_on_replayed_batches(self, replay_refiner, two_clusters):
        _, records, validation = two_clusters
        before = [p.detach().clone() for p in replay_refiner.network.parameters()]
        metrics = replay_refiner.train(records, validation, epochs=3)
        assert len(metrics.loss) == 3
        assert len(replay_refiner.replay) == 8 + 3 * replay_refiner.cfg.training.batch_size
        after = list(replay_refiner.network.parameters())
        assert any(not torch.equal(b, a.detach()) for b, a in zip(before, after))


class TestEvaluation:
    """Test validation accuracy."""

    def test_empty_validation_is_zero(self, refiner, two_clusters):
        embedder, records, _ = two_clusters
        graph = build_similarity_graph(records, embedder)
        result = refiner.evaluate([], graph)
        assert result.accuracy == 0.0
        assert result.evaluated == 0

    def test_counts_excluded(self, refiner, two_clusters):
        embedder, records, validation = two_clusters
        graph = build_similarity_graph(records, embedder)
        ghost = ValidationRecord(id="zz", sequence="AAAA")
        result = refiner.evaluate([*validation, ghost], graph)
        assert result.evaluated == 2
        assert result.excluded == 1


class TestSearch:
    """Test ranking before and after training."""

    def test_untrained_uses_raw_similarity(self, refiner, two_clusters):
        _, records, _ = two_clusters
        hits = refiner.search("AAAA", records, top_k=5)
        ids = [h.id for h in hits]
        assert ids[0] == "a0"
        assert set(ids[1:3]) == {"a1", "a2"}
        assert set(ids[3:]) == {"b0", "b1"}
        assert hits[3].similarity == pytest.approx(0.0, abs=1e-6)
        assert hits[0].similarity == pytest.approx(1.0, abs=1e-5)

    def test_two_cluster_end_to_end(self, refiner, two_clusters):
        _, records, validation = two_clusters
        refiner.train(records, validation)

        hits = refiner.search("AAAA", records, top_k=5)
        ids = [h.id for h in hits]
        assert set(ids[:3]) == {"a0", "a1", "a2"}
        assert set(ids[3:]) == {"b0", "b1"}
        scores = [h.similarity for h in hits]
        assert scores == sorted(scores, reverse=True)

    def test_top_k_and_empty_corpus(self, refiner, two_clusters):
        _, records, _ = two_clusters
        assert len(refiner.search("CCCC", records, top_k=2)) == 2
        assert refiner.search("CCCC", [], top_k=3) == []

    def test_forward_inference_has_no_grad(self, refiner):
        emb, attn = refiner.forward(torch.ones(DIM), torch.ones(2, DIM))
        assert emb.shape == (DIM,)
        assert not emb.requires_grad
        assert len(attn) == 2

    def test_explain_names_neighbors(self, refiner, two_clusters):
        _, records, _ = two_clusters
        trace = refiner.explain("CCCC", records, query_id="q1")
        assert not trace.isolated
        assert len(trace.layers) == 2
        ids = {n.node_id for n in trace.layers[0].top_neighbors}
        assert ids == {"b0", "b1"}
        assert trace.to_dict()["query_id"] == "q1"


class TestFeedback:
    """Test motif-weight updates from oracle verdicts."""

    QUERY = "ATGCGTACGTTAGCAT"
    HIT = "GGATGCGTACGTTACC"

    @pytest.fixture
    def feedback_refiner(self, small_cfg):
        q = torch.zeros(DIM)
        q[0] = 1.0
        h = torch.zeros(DIM)
        h[0], h[1] = 0.85, (1 - 0.85 ** 2) ** 0.5  # cosine 0.85
        embedder = TableEmbedder({self.QUERY: q, self.HIT: h})
        return SelfLearningRefiner(small_cfg, embedder=embedder, seed=0)

    def _shared(self):
        shared = set()
        for k in (4, 5, 6):
            a = {self.QUERY[i:i + k] for i in range(len(self.QUERY) - k + 1)}
            b = {self.HIT[i:i + k] for i in range(len(self.HIT) - k + 1)}
            shared |= a & b
        return shared

    def test_false_positive_decreases_shared_motifs(self, feedback_refiner):
        shared = self._shared()
        assert shared
        before = {m: feedback_refiner.motif_weights.weight(m) for m in shared}

        hit = SearchHit(id="h", similarity=0.85, payload=self.HIT)
        summary = feedback_refiner.learn_from_feedback(self.QUERY, [hit], {"h": OracleVerdict(False)})

        for m in shared:
            assert feedback_refiner.motif_weights.weight(m) < before[m]
            assert feedback_refiner.motif_weights.weight(m) == pytest.approx(before[m] * 0.9)
        assert summary["downweighted"] == len(shared)
        assert len(feedback_refiner.replay) == 1
        stored = next(iter(feedback_refiner.replay))
        assert stored.positives == [] and len(stored.negatives) == 1

    def test_weights_bounded_below(self, feedback_refiner):
        shared = self._shared()
        feedback_refiner.motif_weights.replace({m: 0.105 for m in shared})
        hit = SequenceRecord(id="h", sequence=self.HIT)
        feedback_refiner.learn_from_feedback(self.QUERY, [hit], {"h": False})
        for m in shared:
            assert feedback_refiner.motif_weights.weight(m) == pytest.approx(0.1)

    def test_missed_match_increases_shared_motifs(self, feedback_refiner):
        shared = self._shared()
        hit = SequenceRecord(id="h", sequence=self.HIT)
        feedback_refiner.learn_from_feedback(self.QUERY, [hit], {"h": True})
        for m in shared:
            assert feedback_refiner.motif_weights.weight(m) == pytest.approx(1.1)
        stored = next(iter(feedback_refiner.replay))
        assert len(stored.positives) == 1

    def test_missing_label_counts_as_non_match(self, feedback_refiner):
        hit = SequenceRecord(id="h", sequence=self.HIT)
        summary = feedback_refiner.learn_from_feedback(self.QUERY, [hit], {})
        assert summary["downweighted"] > 0
        assert summary["recorded"] == 1

    def test_unembeddable_hit_is_skipped(self, feedback_refiner):
        hit = SequenceRecord(id="bad", sequence="NNNN")
        summary = feedback_refiner.learn_from_feedback(self.QUERY, [hit], {"bad": True})
        assert summary["skipped"] == 1
        assert len(feedback_refiner.replay) == 0


class TestPersistence:
    """Test the versioned parameter blob."""

    def test_round_trip(self, refiner, small_cfg, two_clusters):
        embedder, records, validation = two_clusters
        refiner.train(records, validation, epochs=3)
        refiner.motif_weights.scale("ACGT", 2.0)
        blob = refiner.save_parameters()
        assert blob[:4] == BLOB_MAGIC

        restored = SelfLearningRefiner(small_cfg, embedder=embedder)
        restored.load_parameters(blob)
        for (name, a), (_, b) in zip(refiner.network.state_dict().items(),
                                     restored.network.state_dict().items()):
            assert torch.equal(a, b), name
        assert restored.trained
        assert restored.state is TrainerState.TRAINED
        assert restored.motif_weights.weight("ACGT") == pytest.approx(2.0)

    def test_bad_magic(self, refiner):
        blob = refiner.save_parameters()
        with pytest.raises(ParameterFormatError):
            refiner.load_parameters(b"XXXX" + blob[4:])
        with pytest.raises(ParameterFormatError):
            refiner.load_parameters(b"SQ")

    def test_truncated_payload(self, refiner):
        blob = refiner.save_parameters()
        for broken in (blob[:len(blob) // 2], blob[:6], blob[:-10]):
            with pytest.raises(ParameterFormatError):
                refiner.load_parameters(broken)
        assert not refiner.trained
        assert refiner.state is TrainerState.IDLE

    def test_unsupported_version(self, refiner):
        blob = refiner.save_parameters()
        with pytest.raises(ParameterFormatError):
            refiner.load_parameters(blob[:4] + b"\x00\x02" + blob[6:])

    def test_config_mismatch(self, refiner, two_clusters):
        embedder, _, _ = two_clusters
        other = SelfLearningRefiner(
            RefinerConfig(model=ModelConfig(input_dim=DIM, hidden_dim=32, output_dim=DIM,
                                            num_layers=2, dropout=0.0)),
            embedder=embedder,
        )
        with pytest.raises(ShapeMismatch):
            other.load_parameters(refiner.save_parameters())

