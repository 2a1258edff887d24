from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .decode import DecodeService
from .errors import ContextIndexOutOfRange, DanglingChildReference, EmptyEnsemble, MissingExemplar, RootNotFound
from .node import ROOT_NODE_ID, Node, index_nodes
from .paths import PathValue, as_path, cost
from .tree_store import TreeStore

ContextInput = Sequence[Union[PathValue, str]]


@dataclass(frozen=True)
class InferenceResult:
    leaf_node_id: int
    predicted_path: PathValue
    depth: int  # edges walked from the root
    inner_match_count: int  # how many of those edges went inside

    def to_dict(self) -> dict:
        return {
            "leaf_node_id": self.leaf_node_id,
            "predicted_path": str(self.predicted_path),
            "depth": self.depth,
            "inner_match_count": self.inner_match_count,
        }


class InferenceEngine:
    """Read-only walk of one node snapshot.

    The snapshot is whatever list of nodes it was built from, typically
    ``NodeStore.fetch_nodes_as_of(cutoff)``; the engine never touches the
    database, so many engines can share one session.
    """

    def __init__(self, nodes: Iterable[Node], decoder: Optional[DecodeService] = None,
                 name: Optional[str] = None):
        self.nodes: Dict[int, Node] = index_nodes(nodes)
        self.decoder = decoder
        self.name = name or "model"
        self.log = logging.getLogger("ultratree.inference")

    @classmethod
    def from_store(cls, store: TreeStore, as_of: Optional[datetime] = None,
                   decoder: Optional[DecodeService] = None) -> "InferenceEngine":
        return cls(store.nodes.fetch_nodes_as_of(as_of), decoder=decoder, name=store.name)

    @property
    def size(self) -> int:
        return len(self.nodes)

    def _child(self, parent: Node, child_id: Optional[int]) -> Node:
        child = self.nodes.get(child_id) if child_id is not None else None
        if child is None:
            raise DanglingChildReference(parent.id, child_id)
        return child

    def infer(self, context: ContextInput, verbose: bool = False) -> InferenceResult:
        ctx = [as_path(c) for c in context]
        node = self.nodes.get(ROOT_NODE_ID)
        if node is None:
            raise RootNotFound(f"{self.name}: no root node in a snapshot of {self.size} nodes")

        depth = 0
        inner_matches = 0
        while node.has_children:
            k = node.context_k
            if k is None or k < 1 or k > len(ctx):
                raise ContextIndexOutOfRange(node.id, k if k is not None else 0, len(ctx))
            inside = node.inner_region_prefix.is_prefix_of(ctx[k - 1])
            if verbose:
                self._trace(node, ctx[k - 1], inside)
            if inside:
                inner_matches += 1
                node = self._child(node, node.inner_child_id)
            else:
                node = self._child(node, node.outer_child_id)
            depth += 1

        if node.exemplar_value is None:
            raise MissingExemplar(node.id)
        if verbose:
            self.log.info("%s: node %d predicts %s", self.name, node.id, self._label(node.exemplar_value))
        return InferenceResult(node.id, node.exemplar_value, depth, inner_matches)

    def _trace(self, node: Node, value: PathValue, inside: bool) -> None:
        self.log.info("%s: node %d: context%d = %s is %s %s",
                      self.name, node.id, node.context_k, self._label(value),
                      "inside" if inside else "outside", self._label(node.inner_region_prefix))

    def _label(self, path: PathValue) -> str:
        if self.decoder is None:
            return str(path)
        return f"{path} ({self.decoder.label(path)})"


@dataclass(frozen=True)
class EnsembleResult:
    chosen: InferenceResult  # the answering model whose prediction won
    results: List[InferenceResult]  # one per model that answered, in model order
    failures: int

    @property
    def predicted_path(self) -> PathValue:
        return self.chosen.predicted_path

    @property
    def predictions(self) -> List[PathValue]:
        return [r.predicted_path for r in self.results]

    def to_dict(self) -> dict:
        return {
            "predicted_path": str(self.predicted_path),
            "leaf_node_id": self.chosen.leaf_node_id,
            "predictions": [r.to_dict() for r in self.results],
            "failures": self.failures,
        }


def consensus_index(predictions: Sequence[PathValue]) -> int:
    """Index of the prediction with the smallest summed cost to all the others.

    Ties go to the earliest model.
    """
    if not predictions:
        raise EmptyEnsemble("no predictions to choose from")
    best = 0
    best_total = None
    for i, candidate in enumerate(predictions):
        total = sum(cost(candidate, other) for j, other in enumerate(predictions) if j != i)
        if best_total is None or total < best_total:
            best, best_total = i, total
    return best


def consensus(predictions: Sequence[PathValue]) -> PathValue:
    return predictions[consensus_index(predictions)]


class EnsembleInference:
    def __init__(self, models: Sequence[InferenceEngine]):
        if not models:
            raise EmptyEnsemble("an ensemble needs at least one model")
        self.models = list(models)
        self.log = logging.getLogger("ultratree.inference")

    @property
    def size(self) -> int:
        return sum(m.size for m in self.models)

    def infer(self, context: ContextInput) -> EnsembleResult:
        results = []
        first_error: Optional[Exception] = None
        for model in self.models:
            try:
                results.append(model.infer(context))
            except (RootNotFound, ContextIndexOutOfRange, DanglingChildReference, MissingExemplar) as e:
                self.log.warning("%s failed: %s", model.name, e)
                if first_error is None:
                    first_error = e
        if not results:
            raise first_error
        best = consensus_index([r.predicted_path for r in results])
        return EnsembleResult(results[best], results, len(self.models) - len(results))


def infer_ensemble(models: Sequence[InferenceEngine], context: ContextInput) -> InferenceResult:
    """The winning model's result; see :class:`EnsembleInference` for the full breakdown."""
    return EnsembleInference(models).infer(context).chosen
