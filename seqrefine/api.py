"""
api — JSON in → JSON out entry points for the sequence refiner.

This is the public surface for callers that speak dicts (a CLI, a web
handler, a batch job). Each call runs against one ``SelfLearningRefiner``.
Either pass one in, or let the module lazily build a shared instance,
optionally loading a saved parameter blob.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Mapping

from .config import RefinerConfig
from .sequences import OracleVerdict, SequenceRecord, normalise_sequence, parse_fasta
from .trainer import SearchHit, SelfLearningRefiner

logger = logging.getLogger(__name__)

# Module-level singleton (built once, reused across calls)
_refiner: SelfLearningRefiner | None = None


def _ensure_loaded(
    model_path: Path | None = None,
    cfg: RefinerConfig | None = None,
) -> SelfLearningRefiner:
    """Lazy-build the shared refiner on first call."""
    global _refiner

    if _refiner is None:
        _refiner = SelfLearningRefiner(cfg or RefinerConfig())
        if model_path and model_path.exists():
            _refiner.load_parameters(model_path.read_bytes())
            logger.info("Loaded refiner parameters from %s", model_path)
        else:
            logger.warning("No saved parameters; running with random initialisation.")
    return _refiner


def _resolve(refiner: SelfLearningRefiner | None, request: Mapping[str, Any]) -> SelfLearningRefiner:
    if refiner is not None:
        return refiner
    return _ensure_loaded(
        model_path=Path(request["model_path"]) if "model_path" in request else None,
    )


def _corpus(request: Mapping[str, Any]) -> list[SequenceRecord]:
    """Corpus from ``corpus`` (list of {id, sequence, name?}) or ``fasta`` (text)."""
    if "corpus" in request:
        return [
            SequenceRecord(
                id=str(item["id"]),
                sequence=normalise_sequence(item["sequence"]),
                name=item.get("name", ""),
            )
            for item in request["corpus"]
        ]
    if "fasta" in request:
        return parse_fasta(request["fasta"])
    raise KeyError("request needs a 'corpus' list or 'fasta' text")


def _verdict(value: Any) -> OracleVerdict:
    if isinstance(value, Mapping):
        return OracleVerdict(
            is_match=bool(value.get("is_match", False)),
            confidence=float(value.get("confidence", 0.0)),
        )
    return OracleVerdict(is_match=bool(value))


def search_request(
    request: dict[str, Any],
    refiner: SelfLearningRefiner | None = None,
) -> dict[str, Any]:
    """Rank a corpus against a query sequence.

    Parameters
    ----------
    request : dict
        Expected keys:
            sequence   : str        — query DNA sequence
            corpus     : list[dict] — {id, sequence, name?} (or `fasta`: str)
            top_k      : int        — number of hits (optional, default 10)
            explain    : bool       — include the attention audit (optional)
            model_path : str        — saved parameter blob (optional)

    Returns
    -------
    dict with keys:
        query_id : str
        trained  : bool — False means hits are ranked by raw similarity
        hits     : list[dict] — {id, name, similarity}, best first
        audit    : dict — attention trace (only when `explain` is set)
    """
    refiner = _resolve(refiner, request)
    query_id = str(uuid.uuid4())
    query = normalise_sequence(request["sequence"])
    corpus = _corpus(request)

    hits = refiner.search(query, corpus, top_k=int(request.get("top_k", 10)))
    response: dict[str, Any] = {
        "query_id": query_id,
        "trained": refiner.trained,
        "hits": [_hit_dict(h) for h in hits],
    }
    if request.get("explain"):
        response["audit"] = refiner.explain(query, corpus, query_id=query_id).to_dict()
    return response


def feedback_request(
    request: dict[str, Any],
    refiner: SelfLearningRefiner | None = None,
) -> dict[str, Any]:
    """Feed oracle verdicts on retrieved hits back into the refiner.

    Parameters
    ----------
    request : dict
        Expected keys:
            sequence  : str        — the query that produced the hits
            retrieved : list[dict] — {id, sequence, name?}
            labels    : dict       — id → bool or {is_match, confidence}

    Returns
    -------
    dict with keys:
        feedback_id : str
        summary     : dict — upweighted / downweighted / recorded / skipped
        replay_size : int
        status      : dict — refiner state, replay statistics, EWC summary
    """
    refiner = _resolve(refiner, request)
    retrieved = [
        SequenceRecord(id=str(item["id"]), sequence=normalise_sequence(item["sequence"]),
                       name=item.get("name", ""))
        for item in request.get("retrieved", [])
    ]
    labels = {str(k): _verdict(v) for k, v in request.get("labels", {}).items()}

    summary = refiner.learn_from_feedback(
        normalise_sequence(request["sequence"]), retrieved, labels
    )
    return {
        "feedback_id": str(uuid.uuid4()),
        "summary": summary,
        "replay_size": len(refiner.replay),
        "status": refiner.status(),
    }


def _hit_dict(hit: SearchHit) -> dict[str, Any]:
    return {
        "id": hit.id,
        "name": hit.name,
        "similarity": round(hit.similarity, 6),
    }
