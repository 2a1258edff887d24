"""Node value type and the pure operations over a set of nodes.

Nodes are loaded once into memory (``NodeStore.fetch_all_nodes``); everything
here, including the "as of" reconstruction of past trees, works on that list
without further queries.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .errors import NodeNotFound
from .paths import PathValue

ROOT_NODE_ID = 1


@dataclass(frozen=True)
class Node:
    id: int
    exemplar_value: Optional[PathValue]
    data_quantity: Optional[int]
    loss: Optional[float]
    created_at: datetime
    context_k: Optional[int] = None
    inner_region_prefix: Optional[PathValue] = None
    inner_child_id: Optional[int] = None
    outer_child_id: Optional[int] = None
    parent_id: Optional[int] = None
    children_populated_at: Optional[datetime] = None
    has_children: bool = False
    being_analysed: bool = False

    @property
    def is_leaf(self) -> bool:
        return not self.has_children

    def as_leaf(self) -> "Node":
        """This node as it looked before it acquired children."""
        return dataclasses.replace(
            self,
            has_children=False,
            children_populated_at=None,
            context_k=None,
            inner_region_prefix=None,
            inner_child_id=None,
            outer_child_id=None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exemplar_value": str(self.exemplar_value) if self.exemplar_value else None,
            "data_quantity": self.data_quantity,
            "loss": self.loss,
            "context_k": self.context_k,
            "inner_region_prefix": str(self.inner_region_prefix) if self.inner_region_prefix else None,
            "inner_child_id": self.inner_child_id,
            "outer_child_id": self.outer_child_id,
            "parent_id": self.parent_id,
            "created_at": self.created_at.isoformat(sep=" "),
            "children_populated_at": (self.children_populated_at.isoformat(sep=" ")
                                      if self.children_populated_at else None),
            "has_children": self.has_children,
            "being_analysed": self.being_analysed,
        }


def nodes_as_of(nodes: Iterable[Node], cutoff: datetime) -> List[Node]:
    """Reconstruct the tree as it stood at ``cutoff``.

    Nodes created later are dropped; nodes whose children arrived later are
    returned in their leaf form.
    """
    out = []
    for n in nodes:
        if n.created_at > cutoff:
            continue
        if n.children_populated_at is None or n.children_populated_at <= cutoff:
            out.append(n)
        else:
            out.append(n.as_leaf())
    return out


def index_nodes(nodes: Iterable[Node]) -> Dict[int, Node]:
    return {n.id: n for n in nodes}


def significant_timestamps(nodes: Iterable[Node]) -> List[datetime]:
    """Every instant at which the tree changed shape, ascending."""
    stamps = set()
    for n in nodes:
        stamps.add(n.created_at)
        if n.children_populated_at is not None:
            stamps.add(n.children_populated_at)
    return sorted(stamps)


def reachable_leaves(index: Dict[int, Node], root_id: int = ROOT_NODE_ID) -> List[Node]:
    """Leaves reachable from the root. Missing children are skipped."""
    if root_id not in index:
        return []
    leaves = []
    stack = [root_id]
    while stack:
        n = index.get(stack.pop())
        if n is None:
            continue
        if n.has_children:
            stack.append(n.outer_child_id)
            stack.append(n.inner_child_id)
        else:
            leaves.append(n)
    return leaves


def ancestry(index: Dict[int, Node], node_id: int) -> List[Node]:
    """Root-first chain of ancestors of ``node_id`` (the node itself excluded)."""
    if node_id not in index:
        raise NodeNotFound(f"node {node_id} not found")
    chain = []
    parent_id = index[node_id].parent_id
    while parent_id is not None:
        parent = index.get(parent_id)
        if parent is None:
            raise NodeNotFound(f"node {parent_id} (ancestor of {node_id}) not found")
        chain.append(parent)
        if len(chain) > len(index):
            raise ValueError(f"cycle in parent links above node {node_id}")
        parent_id = parent.parent_id
    chain.reverse()
    return chain


def descendants(index: Dict[int, Node], node_id: int) -> List[int]:
    """Ids of every node below ``node_id``, children before grandchildren."""
    out = []
    frontier = [node_id]
    while frontier:
        nxt = []
        for nid in frontier:
            n = index.get(nid)
            if n is None or not n.has_children:
                continue
            for child in (n.inner_child_id, n.outer_child_id):
                if child is not None:
                    out.append(child)
                    nxt.append(child)
        frontier = nxt
    return out
