"""
Shared fixtures: a small model config and a lookup-table embedder.
"""

import pytest
import torch

from seqrefine.config import (
    ModelConfig, RefinerConfig, SchedulerPolicy, SearchConfig, TrainingConfig,
)
from seqrefine.sequences import SequenceRecord, ValidationRecord

DIM = 16


class TableEmbedder:
    """Maps known payloads to fixed vectors."""

    def __init__(self, table):
        self.table = {k: v.clone() for k, v in table.items()}

    def embed(self, payload):
        if payload not in self.table:
            raise ValueError(f"unknown payload {payload!r}")
        return self.table[payload].clone()


def cluster_vector(block, jitter):
    """Non-negative vector on dims [8*block, 8*block+8) with a small tilt."""
    v = torch.zeros(DIM)
    v[8 * block:8 * block + 8] = 1.0
    v[8 * block + jitter] += 0.3
    return v


@pytest.fixture(autouse=True)
def seed():
    torch.manual_seed(0)


@pytest.fixture
def small_cfg():
    return RefinerConfig(
        model=ModelConfig(
            input_dim=DIM, hidden_dim=DIM, output_dim=DIM,
            num_layers=2, dropout=0.0, temperature=0.07,
        ),
        training=TrainingConfig(
            learning_rate=5e-3, min_learning_rate=1e-5, batch_size=5, epochs=150,
            num_positives=2,
            scheduler=SchedulerPolicy.CONSTANT, log_every=20,
        ),
        search=SearchConfig(),
    )


@pytest.fixture
def two_clusters():
    """Five records in two clusters: a0..a2 share block 0, b0..b1 share block 1.

    Within-cluster cosine > 0.9, across-cluster cosine = 0.
    """
    table = {
        "AAAA": cluster_vector(0, 0),
        "AAAT": cluster_vector(0, 1),
        "AAAG": cluster_vector(0, 2),
        "CCCC": cluster_vector(1, 0),
        "CCCG": cluster_vector(1, 1),
    }
    records = [
        SequenceRecord(id="a0", sequence="AAAA", name="alpha-0"),
        SequenceRecord(id="a1", sequence="AAAT", name="alpha-1"),
        SequenceRecord(id="a2", sequence="AAAG", name="alpha-2"),
        SequenceRecord(id="b0", sequence="CCCC", name="beta-0"),
        SequenceRecord(id="b1", sequence="CCCG", name="beta-1"),
    ]
    validation = [
        ValidationRecord(id="a0", sequence="AAAA", expected_similar=frozenset({"a1", "a2"})),
        ValidationRecord(id="b0", sequence="CCCC", expected_similar=frozenset({"b1"})),
    ]
    return TableEmbedder(table), records, validation
