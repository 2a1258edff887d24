from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

import numpy as np
from sqlalchemy.orm import Session

from .config import TrainConfig
from .decode import DecodeService
from .errors import ConsistencyViolation, NoFeasibleSplit
from .node import index_nodes, ancestry
from .splitter import SplitEngine, SplitResult
from .tree_store import TreeStore


class TrainingState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    SELECTING_NODE = "selecting_node"
    SPLITTING = "splitting"
    CONVERGED = "converged"


@dataclass
class TrainingSummary:
    splits: List[SplitResult] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)  # nodes with no feasible split
    converged: bool = False
    stop_reason: str = ""
    elapsed: float = 0.0

    @property
    def splits_done(self) -> int:
        return len(self.splits)


class TrainingScheduler:
    """Grows one tree: always split the worst unsplit leaf next.

    ``gate`` is an optional "may I use compute now?" hint consulted between
    iterations; while it returns False the loop sleeps ``gate_pause_seconds``.
    ``request_stop()`` (or setting ``stop_event``) ends the loop before the
    next iteration; a split in progress always finishes.
    """

    def __init__(self, db: Session, tree: str, dataset: str, config: TrainConfig = TrainConfig(),
                 rng: Optional[np.random.Generator] = None, decoder: Optional[DecodeService] = None,
                 gate: Optional[Callable[[], bool]] = None, stop_event: Optional[threading.Event] = None):
        self.db = db
        self.tree = tree
        self.dataset = dataset
        self.cfg = config
        self.rng = rng if rng is not None else np.random.default_rng(config.seed)
        self.decoder = decoder
        self.gate = gate
        self.stop_event = stop_event or threading.Event()
        self.state = TrainingState.UNINITIALIZED
        self.store: Optional[TreeStore] = None
        self.engine: Optional[SplitEngine] = None
        self._infeasible: Set[int] = set()
        self._last_skipped: Optional[int] = None
        self.log = logging.getLogger("ultratree.trainer")

    # -----------------------
    # Lifecycle
    # -----------------------
    def initialise(self) -> TreeStore:
        if self.store is not None:
            return self.store
        cfg = self.cfg
        if TreeStore.exists(self.db, self.tree):
            store = TreeStore.open(self.db, self.tree)
            if store.dataset != self.dataset:
                raise ConsistencyViolation(
                    f"tree {self.tree!r} was grown on dataset {store.dataset!r}, not {self.dataset!r}"
                )
            examples, buckets = store.examples.count_examples(), store.examples.count_buckets()
            if examples != buckets:
                raise ConsistencyViolation(
                    f"tree {self.tree!r}: {buckets} bucket rows for {examples} examples"
                )
            self.log.info("Resuming tree %s (%d nodes, %d examples)", self.tree, store.nodes.count(), examples)
        else:
            self.state = TrainingState.BOOTSTRAPPING
            self.log.info("Bootstrapping tree %s on dataset %s", self.tree, self.dataset)
            store = TreeStore.create(self.db, self.tree, self.dataset, cfg.context_length,
                                     config_json=cfg.to_json())
            try:
                store.bootstrap(cfg.exemplar_trials, cfg.cost_trials, self.rng)
            except Exception:
                self.state = TrainingState.UNINITIALIZED
                raise
        self.store = store
        params = cfg.split_params()
        # the tree's own window wins over the run config on resume
        params["context_length"] = store.context_length
        self.engine = SplitEngine(store, self.rng, decoder=self.decoder, **params)
        self.state = TrainingState.READY
        return store

    def request_stop(self) -> None:
        self.stop_event.set()

    # -----------------------
    # One iteration
    # -----------------------
    def step(self) -> Optional[SplitResult]:
        """Select and split one node. Returns None once the tree has converged."""
        if self.state is TrainingState.CONVERGED:
            return None
        store = self.initialise()
        cfg = self.cfg

        self.state = TrainingState.SELECTING_NODE
        while True:
            picked = store.nodes.most_urgent_leaf(cfg.min_split_size, exclude=self._infeasible)
            if picked is None:
                self.state = TrainingState.CONVERGED
                self.log.info("Training is complete")
                return None
            node_id, current_loss = picked
            if store.nodes.set_being_analysed(node_id, True):
                break
            # another worker took it; it is locked or split now, so the next query skips it
            self.log.info("Node %d was claimed by another worker; selecting again", node_id)

        self.state = TrainingState.SPLITTING
        try:
            self._log_selection(node_id, current_loss)
            result = self.engine.split(node_id)
        except NoFeasibleSplit as e:
            if not cfg.skip_infeasible:
                raise
            self.log.warning("%s; leaving it as a leaf", e)
            self._infeasible.add(node_id)
            return self._skip(node_id)
        finally:
            store.nodes.set_being_analysed(node_id, False)
            if self.state is TrainingState.SPLITTING:
                self.state = TrainingState.READY

        if cfg.verify_each_step:
            store.assert_consistent()
        self.log.info("Split of node %d: total loss reduced by %f in %.2fs",
                      node_id, current_loss - result.decision.total_loss, result.elapsed)
        return result

    def _skip(self, node_id: int) -> None:
        # lets run() tell "skipped" from "converged"
        self._last_skipped = node_id
        return None

    def _log_selection(self, node_id: int, loss: float) -> None:
        if self.decoder is None:
            self.log.info("Because its current cost is %f I will split node %d", loss, node_id)
            return
        index = index_nodes(self.store.nodes.fetch_all_nodes())
        chain = ancestry(index, node_id)
        self.log.info("Because its current cost is %f I will split node %d. Ancestry: (. %s .)",
                      loss, node_id, self.decoder.describe_ancestry(chain, index[node_id]))

    # -----------------------
    # Loop
    # -----------------------
    def _wait_for_gate(self) -> bool:
        """True once the gate opens; False if a stop was requested meanwhile."""
        while self.gate is not None and not self.gate():
            self.log.info("Compute gate closed; sleeping %.0fs", self.cfg.gate_pause_seconds)
            if self.stop_event.wait(self.cfg.gate_pause_seconds):
                return False
        return True

    def run(self, max_splits: Optional[int] = None, time_limit: Optional[float] = None) -> TrainingSummary:
        max_splits = self.cfg.max_splits if max_splits is None else max_splits
        time_limit = self.cfg.time_limit if time_limit is None else time_limit
        started = time.monotonic()
        deadline = started + time_limit if time_limit is not None else None
        summary = TrainingSummary()
        self.initialise()

        while True:
            if self.stop_event.is_set():
                summary.stop_reason = "stop requested"
                break
            if max_splits is not None and summary.splits_done >= max_splits:
                summary.stop_reason = "split limit reached"
                break
            if deadline is not None and time.monotonic() >= deadline:
                summary.stop_reason = "time limit reached"
                break
            if not self._wait_for_gate():
                summary.stop_reason = "stop requested"
                break

            self._last_skipped = None
            result = self.step()
            if result is not None:
                summary.splits.append(result)
            elif self._last_skipped is not None:
                summary.skipped.append(self._last_skipped)
            else:
                summary.converged = True
                summary.stop_reason = "converged"
                break

        summary.elapsed = time.monotonic() - started
        self.log.info("Stopped after %d split(s) (%s) in %.1fs",
                      summary.splits_done, summary.stop_reason, summary.elapsed)
        return summary
