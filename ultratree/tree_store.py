"""Persistent tree: node hierarchy plus the example -> node bucket mapping.

Every structural change (bootstrap, split, prune) is a single transaction, so
the bucket mapping can never disagree with the nodes after a crash.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import numpy as np
from sqlalchemy.orm import Session

from .database import Tree, utcnow
from .errors import ConsistencyViolation, NodeNotFound, TreeNotFound
from .example_store import ExampleStore
from .exemplar import find_best_exemplar
from .node import ROOT_NODE_ID, Node, descendants, index_nodes, reachable_leaves
from .node_store import NodeStore

if TYPE_CHECKING:
    from .splitter import SplitDecision


@dataclass
class ConsistencyReport:
    example_count: int
    bucket_count: int
    node_count: int
    reachable_leaf_count: int
    leaf_quantity_total: int
    # leaf id -> (data_quantity, examples actually bucketed there)
    mismatched_leaves: Dict[int, Tuple[int, int]] = field(default_factory=dict)
    # node id -> examples bucketed on a node that is not a reachable leaf
    stray_buckets: Dict[int, int] = field(default_factory=dict)
    locked_nodes: List[int] = field(default_factory=list)

    def problems(self, allow_locked: bool = False) -> List[str]:
        out = []
        if self.bucket_count != self.example_count:
            out.append(f"{self.bucket_count} bucket rows for {self.example_count} examples")
        if self.leaf_quantity_total != self.example_count:
            out.append(f"reachable leaves hold {self.leaf_quantity_total} examples, expected {self.example_count}")
        for node_id, (expected, actual) in sorted(self.mismatched_leaves.items()):
            out.append(f"leaf {node_id} records {expected} examples but {actual} are bucketed there")
        for node_id, count in sorted(self.stray_buckets.items()):
            out.append(f"{count} examples bucketed on node {node_id}, which is not a reachable leaf")
        if self.locked_nodes and not allow_locked:
            out.append(f"nodes still marked as being analysed: {self.locked_nodes}")
        return out

    @property
    def ok(self) -> bool:
        return not self.problems()

    def to_dict(self) -> dict:
        return {
            "example_count": self.example_count,
            "bucket_count": self.bucket_count,
            "node_count": self.node_count,
            "reachable_leaf_count": self.reachable_leaf_count,
            "leaf_quantity_total": self.leaf_quantity_total,
            "mismatched_leaves": {str(k): list(v) for k, v in self.mismatched_leaves.items()},
            "stray_buckets": {str(k): v for k, v in self.stray_buckets.items()},
            "locked_nodes": self.locked_nodes,
            "problems": self.problems(),
        }


class TreeStore:
    def __init__(self, db: Session, record: Tree):
        self.db = db
        self.name = record.name
        self.dataset = record.dataset
        self.context_length = record.context_length
        self.nodes = NodeStore(db, self.name)
        self.examples = ExampleStore(db, self.name, self.dataset)
        self.log = logging.getLogger("ultratree.tree_store")

    @classmethod
    def exists(cls, db: Session, name: str) -> bool:
        return db.get(Tree, name) is not None

    @classmethod
    def open(cls, db: Session, name: str) -> "TreeStore":
        record = db.get(Tree, name)
        if record is None:
            raise TreeNotFound(f"no tree named {name!r}")
        return cls(db, record)

    @classmethod
    def create(cls, db: Session, name: str, dataset: str, context_length: int,
               config_json: Optional[str] = None) -> "TreeStore":
        """Register a tree. Nothing is committed until :meth:`bootstrap`."""
        record = Tree(name=name, dataset=dataset, context_length=context_length, config_json=config_json,
                      next_node_id=ROOT_NODE_ID)
        db.add(record)
        db.flush()
        return cls(db, record)

    @staticmethod
    def list_trees(db: Session) -> List[str]:
        return [name for (name,) in db.query(Tree.name).order_by(Tree.name)]

    # -----------------------
    # Structural changes
    # -----------------------
    def bootstrap(self, exemplar_trials: int, cost_trials: int, rng: np.random.Generator) -> Node:
        """Create the root, bucket every example into it and give it an exemplar."""
        try:
            if self.nodes.count():
                raise ConsistencyViolation(f"tree {self.name!r} already has nodes")
            root_id = self.nodes.create_node(None, None, None)
            if root_id != ROOT_NODE_ID:
                raise ConsistencyViolation(f"root of tree {self.name!r} was allocated id {root_id}")
            assigned = self.examples.assign_all(root_id)
            self.db.flush()
            targets = [t for _, t in self.examples.load_targets_in_node(root_id)]
            exemplar, loss = find_best_exemplar(targets, exemplar_trials, cost_trials, rng)
            self.nodes.set_summary(root_id, exemplar, len(targets), loss)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.log.info("Updated node %d with exemplar %s, loss %f, and data quantity %d",
                      root_id, exemplar, loss, assigned)
        return self.nodes.fetch_node(root_id)

    def commit_split(self, node_id: int, decision: "SplitDecision",
                     when: Optional[datetime] = None) -> Tuple[int, int]:
        """Create both children, attach them to the parent and move the
        parent's examples into them, all in one transaction.

        Returns ``(inner_child_id, outer_child_id)``.
        """
        when = when or utcnow()
        expected = len(decision.inside_ids) + len(decision.outside_ids)
        try:
            parent = self.nodes.fetch_node(node_id)
            if parent.has_children:
                raise ConsistencyViolation(f"node {node_id} already has children")
            held = self.examples.count_in_node(node_id)
            if held != expected:
                raise ConsistencyViolation(
                    f"split of node {node_id} covers {expected} examples but the node holds {held}"
                )
            inner_id = self.nodes.create_node(decision.inside_exemplar, len(decision.inside_ids),
                                              decision.inside_loss, parent_id=node_id, created_at=when)
            outer_id = self.nodes.create_node(decision.outside_exemplar, len(decision.outside_ids),
                                              decision.outside_loss, parent_id=node_id, created_at=when)
            if not self.nodes.update_node_split(node_id, decision.context_k, decision.region,
                                                inner_id, outer_id, when=when):
                raise ConsistencyViolation(f"node {node_id} acquired children concurrently")
            moved = self.examples.reassign_examples(decision.inside_ids, inner_id)
            moved += self.examples.reassign_examples(decision.outside_ids, outer_id)
            if moved != expected:
                raise ConsistencyViolation(f"moved {moved} of {expected} examples out of node {node_id}")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return inner_id, outer_id

    def prune(self, node_id: int) -> List[int]:
        """Delete everything below ``node_id`` and return its examples to it.

        The node goes back to being a leaf. Returns the deleted node ids.
        """
        try:
            index = index_nodes(self.nodes.fetch_all_nodes())
            if node_id not in index:
                raise NodeNotFound(f"node {node_id} not found in tree {self.name!r}")
            below = descendants(index, node_id)
            for child_id in below:
                self.examples.reassign_node(child_id, node_id)
            self.nodes.delete_nodes(below)
            self.nodes.clear_split(node_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.log.info("Pruned %d descendant(s) of node %d", len(below), node_id)
        return below

    # -----------------------
    # Checks
    # -----------------------
    def check_consistency(self) -> ConsistencyReport:
        nodes = self.nodes.fetch_all_nodes()
        index = index_nodes(nodes)
        leaves = reachable_leaves(index)
        counts = self.examples.bucket_counts()
        leaf_ids = {n.id for n in leaves}

        report = ConsistencyReport(
            example_count=self.examples.count_examples(),
            bucket_count=sum(counts.values()),
            node_count=len(nodes),
            reachable_leaf_count=len(leaves),
            leaf_quantity_total=sum(n.data_quantity or 0 for n in leaves),
            locked_nodes=[n.id for n in nodes if n.being_analysed],
        )
        for leaf in leaves:
            actual = counts.get(leaf.id, 0)
            if (leaf.data_quantity or 0) != actual:
                report.mismatched_leaves[leaf.id] = (leaf.data_quantity or 0, actual)
        for node_id, count in counts.items():
            if node_id not in leaf_ids:
                report.stray_buckets[node_id] = count
        return report

    def assert_consistent(self, allow_locked: bool = False) -> ConsistencyReport:
        report = self.check_consistency()
        problems = report.problems(allow_locked=allow_locked)
        if problems:
            raise ConsistencyViolation(f"tree {self.name!r}: " + "; ".join(problems))
        return report
