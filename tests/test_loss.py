"""
Tests for the InfoNCE objective and gradient contract.
"""

import math

import pytest
import torch

import seqrefine.loss as loss_module
from seqrefine.loss import batch_contrastive_loss, info_nce_loss, parameter_gradients


class TestInfoNCE:
    """Test the per-anchor contrastive loss."""

    def test_matches_closed_form(self):
        anchor = torch.tensor([1.0, 0.0])
        positives = torch.tensor([[1.0, 0.0]])
        negatives = torch.tensor([[0.0, 1.0]])
        t = 0.5
        # s_p = 2, s_n = 0
        expected = -2.0 + math.log(math.exp(2.0) + 1.0)
        loss = info_nce_loss(anchor, positives, negatives, temperature=t)
        assert loss.item() == pytest.approx(expected, rel=1e-5)

    def test_better_alignment_lowers_loss(self):
        positives = torch.tensor([[1.0, 0.0]])
        negatives = torch.tensor([[0.0, 1.0]])
        good = info_nce_loss(torch.tensor([1.0, 0.1]), positives, negatives)
        bad = info_nce_loss(torch.tensor([0.1, 1.0]), positives, negatives)
        assert good < bad

    def test_stable_at_low_temperature(self):
        anchor = torch.randn(16)
        loss = info_nce_loss(anchor, torch.randn(3, 16), torch.randn(5, 16), temperature=1e-3)
        assert torch.isfinite(loss)

    def test_no_negatives(self):
        loss = info_nce_loss(torch.ones(4), torch.ones(2, 4), None)
        # -s + log(2 e^s) = log 2
        assert loss.item() == pytest.approx(math.log(2.0), rel=1e-4)

    def test_requires_positives(self):
        with pytest.raises(ValueError):
            info_nce_loss(torch.ones(4), torch.zeros(0, 4), torch.ones(2, 4))


class TestBatchLoss:
    """Test batch reduction and the breakdown dict."""

    def test_skips_samples_without_positives(self):
        a = torch.ones(4)
        samples = [
            (a, torch.ones(1, 4), torch.zeros(0, 4)),
            (a, torch.zeros(0, 4), torch.ones(1, 4)),
        ]
        loss, breakdown = batch_contrastive_loss(samples)
        assert loss is not None
        assert breakdown["contributed"] == 1
        assert breakdown["skipped"] == 1

    def test_nothing_contributes(self):
        loss, breakdown = batch_contrastive_loss([(torch.ones(4), torch.zeros(0, 4), None)])
        assert loss is None
        assert breakdown["contrastive"] == 0.0


class TestParameterGradients:
    """Test autograd gradient extraction."""

    def test_unused_parameter_gets_zeros(self):
        used = torch.nn.Parameter(torch.tensor([2.0, 3.0]))
        unused = torch.nn.Parameter(torch.ones(3))
        loss = (used ** 2).sum()
        grads = parameter_gradients(loss, [used, unused])
        assert grads[0].tolist() == [4.0, 6.0]
        assert torch.equal(grads[1], torch.zeros(3))


class TestLogitShiftInvariance:
    """Test that a constant added to every score leaves the loss unchanged."""

    @pytest.fixture
    def triple(self):
        return torch.zeros(4), torch.zeros(2, 4), torch.zeros(3, 4)

    def _loss_with_shift(self, monkeypatch, triple, shift):
        anchor, positives, negatives = triple
        scores = {
            id(positives): torch.tensor([0.9, 0.4]),
            id(negatives): torch.tensor([0.1, -0.2, 0.3]),
        }
        monkeypatch.setattr(loss_module, "cosine", lambda a, m: scores[id(m)] + shift)
        return info_nce_loss(anchor, positives, negatives, temperature=1.0)

    @pytest.mark.parametrize("shift", [-3.0, 5.0, 50.0, 500.0])
    def test_shift_leaves_loss_unchanged(self, monkeypatch, triple, shift):
        reference = self._loss_with_shift(monkeypatch, triple, 0.0)
        shifted = self._loss_with_shift(monkeypatch, triple, shift)
        assert shifted.item() == pytest.approx(reference.item(), abs=1e-3)

    def test_large_shift_stays_finite(self, monkeypatch, triple):
        assert torch.isfinite(self._loss_with_shift(monkeypatch, triple, 1e4))
