"""Stochastic split search.

How a split is found: ``split_trials`` times, pick a context position k at
random and load the node's k-th context values (the "sources"). Every
truncation of every source is a candidate region ("circle"). Then
``circles_per_split`` times, pick a region at random, send each example
whose source lies inside the region to the inside set and the rest to the
outside set, find an exemplar for each side and add up the two estimated
losses. The cheapest (k, region) wins.

The winner becomes two new nodes:

* an inner node whose exemplar is the best inside exemplar, with
  data_quantity = size of the inside set and loss = the inside loss
* an outer node, likewise for the outside set

and the parent records context_k, the region prefix and both child ids.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .decode import DecodeService
from .errors import EmptyInputError, NoFeasibleSplit
from .exemplar import find_best_exemplar
from .paths import PathValue, all_truncations
from .tree_store import TreeStore

ContextLoader = Callable[[int], Sequence[Tuple[int, PathValue]]]


@dataclass(frozen=True)
class SplitDecision:
    context_k: int
    region: PathValue
    inside_exemplar: PathValue
    inside_loss: float
    outside_exemplar: PathValue
    outside_loss: float
    inside_ids: Tuple[int, ...]
    outside_ids: Tuple[int, ...]

    @property
    def total_loss(self) -> float:
        return self.inside_loss + self.outside_loss


@dataclass(frozen=True)
class SplitResult:
    node_id: int
    decision: SplitDecision
    inner_node_id: int
    outer_node_id: int
    elapsed: float


def partition(sources: Sequence[Tuple[int, PathValue]], targets: Sequence[Tuple[int, PathValue]],
              region: PathValue) -> Tuple[List[Tuple[int, PathValue]], List[Tuple[int, PathValue]]]:
    """Split ``targets`` by whether the matching source lies inside ``region``.

    ``sources`` and ``targets`` are both ordered by example id and zip together.
    Inside means ``region`` is a prefix of the source value, the same test
    inference applies.
    """
    inside, outside = [], []
    for (sid, src), target in zip(sources, targets):
        if sid != target[0]:
            raise ValueError(f"context row {sid} does not line up with target row {target[0]}")
        if region.is_prefix_of(src):
            inside.append(target)
        else:
            outside.append(target)
    return inside, outside


def find_best_split(node_id: int, targets: Sequence[Tuple[int, PathValue]], load_context: ContextLoader,
                    split_trials: int, circles_per_split: int, exemplar_trials: int, cost_trials: int,
                    context_length: int, rng: np.random.Generator) -> SplitDecision:
    if not targets:
        raise EmptyInputError(f"node {node_id} has no examples to split")
    if context_length < 1:
        raise ValueError(f"context_length must be positive (got {context_length})")

    log = logging.getLogger("ultratree.splitter")
    columns: Dict[int, Tuple[Sequence[Tuple[int, PathValue]], List[PathValue]]] = {}
    best: Optional[SplitDecision] = None
    best_total = math.inf

    for _ in range(split_trials):
        k = int(rng.integers(1, context_length + 1))
        if k not in columns:
            sources = load_context(k)
            if len(sources) != len(targets):
                raise ValueError(
                    f"node {node_id}: {len(sources)} context{k} values for {len(targets)} targets"
                )
            columns[k] = (sources, all_truncations(v for _, v in sources))
        sources, regions = columns[k]

        for _ in range(circles_per_split):
            region = regions[int(rng.integers(0, len(regions)))]
            inside, outside = partition(sources, targets, region)
            if not inside or not outside:
                continue
            inside_exemplar, inside_loss = find_best_exemplar(
                [t for _, t in inside], exemplar_trials, cost_trials, rng)
            outside_exemplar, outside_loss = find_best_exemplar(
                [t for _, t in outside], exemplar_trials, cost_trials, rng)
            total = inside_loss + outside_loss
            if total < best_total:
                best_total = total
                best = SplitDecision(
                    context_k=k,
                    region=region,
                    inside_exemplar=inside_exemplar,
                    inside_loss=inside_loss,
                    outside_exemplar=outside_exemplar,
                    outside_loss=outside_loss,
                    inside_ids=tuple(i for i, _ in inside),
                    outside_ids=tuple(i for i, _ in outside),
                )

    if best is None:
        raise NoFeasibleSplit(node_id, split_trials)
    log.debug("node %d: best split context%d in %s, loss %f (%d contexts loaded)",
              node_id, best.context_k, best.region, best_total, len(columns))
    return best


class SplitEngine:
    def __init__(self, store: TreeStore, rng: np.random.Generator, split_trials: int = 100,
                 circles_per_split: int = 10, exemplar_trials: int = 1000, cost_trials: int = 1000,
                 context_length: Optional[int] = None, decoder: Optional[DecodeService] = None):
        self.store = store
        self.rng = rng
        self.split_trials = split_trials
        self.circles_per_split = circles_per_split
        self.exemplar_trials = exemplar_trials
        self.cost_trials = cost_trials
        self.context_length = context_length or store.context_length
        self.decoder = decoder
        self.log = logging.getLogger("ultratree.splitter")

    def search(self, node_id: int) -> SplitDecision:
        targets = self.store.examples.load_targets_in_node(node_id)
        return find_best_split(
            node_id,
            targets,
            lambda k: self.store.examples.load_context_column_in_node(node_id, k),
            self.split_trials,
            self.circles_per_split,
            self.exemplar_trials,
            self.cost_trials,
            self.context_length,
            self.rng,
        )

    def split(self, node_id: int) -> SplitResult:
        start = time.monotonic()
        decision = self.search(node_id)
        inner_id, outer_id = self.store.commit_split(node_id, decision)
        result = SplitResult(node_id, decision, inner_id, outer_id, time.monotonic() - start)
        self.log.info(
            "Split node %d: context%d in %s (%s) total loss %f "
            "[inner %d exemplar %s (%s) size %d] [outer %d exemplar %s (%s) size %d]",
            node_id, decision.context_k, decision.region, self._label(decision.region), decision.total_loss,
            inner_id, decision.inside_exemplar, self._label(decision.inside_exemplar), len(decision.inside_ids),
            outer_id, decision.outside_exemplar, self._label(decision.outside_exemplar), len(decision.outside_ids),
        )
        return result

    def _label(self, path: PathValue) -> str:
        if self.decoder is None:
            return str(path)
        return self.decoder.label(path)
