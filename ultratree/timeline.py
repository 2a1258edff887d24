"""Training history reconstructed from node timestamps.

Nothing here needs a log of its own: every instant at which the tree changed
shape is recoverable from ``created_at`` / ``children_populated_at``, and the
tree as it stood then from ``nodes_as_of``.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List

import numpy as np

from .node import Node, index_nodes, nodes_as_of, reachable_leaves, significant_timestamps


@dataclass(frozen=True)
class TimelinePoint:
    timestamp: datetime
    sum_loss: float  # over the leaves, i.e. the loss of the whole model
    node_count: int
    leaf_count: int
    avg_data_quantity: float
    training_data_size: int

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(sep=" "),
            "sum_loss": self.sum_loss,
            "node_count": self.node_count,
            "leaf_count": self.leaf_count,
            "avg_data_quantity": self.avg_data_quantity,
            "training_data_size": self.training_data_size,
        }


def summarise(nodes: List[Node], timestamp: datetime) -> TimelinePoint:
    leaves = reachable_leaves(index_nodes(nodes))
    losses = np.array([n.loss for n in leaves if n.loss is not None], dtype=np.float64)
    sizes = np.array([n.data_quantity for n in leaves if n.data_quantity is not None], dtype=np.int64)
    return TimelinePoint(
        timestamp=timestamp,
        sum_loss=float(losses.sum()) if losses.size else 0.0,
        node_count=len(nodes),
        leaf_count=len(leaves),
        avg_data_quantity=float(sizes.mean()) if sizes.size else 0.0,
        training_data_size=int(sizes.sum()) if sizes.size else 0,
    )


def analyze_timeline(nodes: Iterable[Node]) -> List[TimelinePoint]:
    """One point per significant timestamp, oldest first."""
    nodes = list(nodes)
    points = []
    for ts in significant_timestamps(nodes):
        snapshot = nodes_as_of(nodes, ts)
        if snapshot:
            points.append(summarise(snapshot, ts))
    return points


def context_usage(nodes: Iterable[Node]) -> Dict[int, int]:
    """How many internal nodes test each context position, keyed by k."""
    counts = Counter(n.context_k for n in nodes if n.has_children and n.context_k is not None)
    return dict(sorted(counts.items()))
