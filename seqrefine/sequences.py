"""
Sequence records, oracle verdicts and FASTA loading.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Protocol

logger = logging.getLogger(__name__)

_NON_NUCLEOTIDE = re.compile(r"[^ATGC]")


@dataclass(frozen=True)
class SequenceRecord:
    """A raw entity: the payload fed to the embedding generator."""

    id: str
    sequence: str
    name: str = ""


@dataclass(frozen=True)
class ValidationRecord:
    """A held-out sequence plus the ids its nearest neighbour may be."""

    id: str
    sequence: str
    expected_similar: frozenset[str] = field(default_factory=frozenset)
    name: str = ""


@dataclass(frozen=True)
class OracleVerdict:
    """Answer from an external validation tool (e.g. a BLAST alignment)."""

    is_match: bool
    confidence: float = 0.0


class ValidationOracle(Protocol):
    def validate(self, query_id: str, candidate_id: str) -> OracleVerdict: ...


def collect_oracle_labels(
    oracle: ValidationOracle,
    query_id: str,
    candidate_ids: Iterable[str],
) -> dict[str, OracleVerdict]:
    """Ask the oracle about every candidate; returns candidate_id → verdict."""
    return {cid: oracle.validate(query_id, cid) for cid in candidate_ids}


def normalise_sequence(raw: str) -> str:
    """Uppercase and drop everything that is not A/T/G/C."""
    return _NON_NUCLEOTIDE.sub("", raw.upper())


def parse_fasta(content: str) -> list[SequenceRecord]:
    """Parse FASTA text into records with ids ``seq_0``, ``seq_1``, ...

    The header line (minus ``>``) becomes the record name. Records with an
    empty sequence after normalisation are dropped.
    """
    records: list[SequenceRecord] = []
    name: str | None = None
    chunks: list[str] = []

    def flush() -> None:
        if name is None:
            return
        seq = normalise_sequence("".join(chunks))
        if seq:
            records.append(SequenceRecord(id=f"seq_{len(records)}", sequence=seq, name=name))
        else:
            logger.debug("Dropping empty FASTA record %r", name)

    for line in content.splitlines():
        line = line.strip()
        if line.startswith(">"):
            flush()
            name = line[1:].strip()
            chunks = []
        elif line:
            chunks.append(line)
    flush()
    return records


def load_fasta(path: Path) -> list[SequenceRecord]:
    records = parse_fasta(Path(path).read_text(encoding="utf-8"))
    logger.info("Loaded %d sequences from %s", len(records), path)
    return records


def labels_by_id(labels: Mapping[str, OracleVerdict | bool]) -> dict[str, OracleVerdict]:
    """Accept bare booleans as shorthand for verdicts."""
    out: dict[str, OracleVerdict] = {}
    for key, value in labels.items():
        out[key] = value if isinstance(value, OracleVerdict) else OracleVerdict(bool(value))
    return out
