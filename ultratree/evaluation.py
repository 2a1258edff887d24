from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from .database import EvaluationRun, InferenceRecord, utcnow
from .decode import DecodeService
from .errors import ContextIndexOutOfRange, DanglingChildReference, MalformedPath, MissingExemplar, RootNotFound
from .example_store import load_dataset
from .inference import EnsembleInference, InferenceEngine
from .paths import cost


@dataclass
class EvaluationSummary:
    run_id: int
    number_of_data_points: int
    number_of_failures: int
    total_loss: float
    average_depth: float
    average_in_region_hits: float

    @property
    def average_loss(self) -> float:
        if not self.number_of_data_points:
            return 0.0
        return self.total_loss / self.number_of_data_points

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "number_of_data_points": self.number_of_data_points,
            "number_of_failures": self.number_of_failures,
            "total_loss": self.total_loss,
            "average_loss": self.average_loss,
            "average_depth": self.average_depth,
            "average_in_region_hits": self.average_in_region_hits,
        }


def evaluate(db: Session, models: Sequence[InferenceEngine], dataset: str, description: str,
             cutoff: Optional[datetime] = None, limit: Optional[int] = None,
             decoder: Optional[DecodeService] = None, verbose: bool = False) -> EvaluationSummary:
    """Predict every example of ``dataset`` with the ensemble of ``models`` and
    record each prediction plus a run summary.

    Examples the ensemble cannot answer are logged and counted as failures.
    """
    log = logging.getLogger("ultratree.evaluation")
    ensemble = EnsembleInference(models)
    run = EvaluationRun(
        description=description,
        trees=",".join(m.name for m in ensemble.models),
        model_node_count=ensemble.size,
        cutoff=cutoff,
        dataset=dataset,
        started_at=utcnow(),
    )
    db.add(run)
    db.flush()

    total_loss = 0.0
    total_depth = 0
    total_hits = 0
    points = 0
    failures = 0
    for example in load_dataset(db, dataset, limit=limit):
        if verbose and decoder is not None:
            log.info("INFERRING %d: %s", example.id, decoder.show_context(example.context))
        try:
            result = ensemble.infer(example.context).chosen
        except (RootNotFound, ContextIndexOutOfRange, DanglingChildReference, MissingExemplar,
                MalformedPath) as e:
            log.warning("Inference failed for example %d: %s", example.id, e)
            failures += 1
            continue

        loss = cost(result.predicted_path, example.target)
        if verbose:
            label = decoder.label if decoder is not None else str
            log.info("Prediction for %d was %s (%s); the correct answer was %s (%s). Loss was %f",
                     example.id, result.predicted_path, label(result.predicted_path),
                     example.target, label(example.target), loss)
        db.add(InferenceRecord(
            run_id=run.id,
            example_id=example.id,
            final_node_id=result.leaf_node_id,
            predicted_path=str(result.predicted_path),
            correct_path=str(example.target),
            loss=loss,
            depth=result.depth,
            in_region=result.inner_match_count,
            predicted_at=utcnow(),
        ))
        total_loss += loss
        total_depth += result.depth
        total_hits += result.inner_match_count
        points += 1

    run.finished_at = utcnow()
    run.number_of_data_points = points
    run.number_of_failures = failures
    run.total_loss = total_loss
    run.average_depth = total_depth / points if points else 0.0
    run.average_in_region_hits = total_hits / points if points else 0.0
    db.commit()

    log.info("Total loss for %s: %f over %d examples (%d failed)", run.trees, total_loss, points, failures)
    return EvaluationSummary(run.id, points, failures, total_loss,
                             run.average_depth, run.average_in_region_hits)
