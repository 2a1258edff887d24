from __future__ import annotations

import logging
from datetime import datetime
from typing import Collection, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from .database import NodeRecord, Tree, utcnow
from .errors import MalformedPath, NodeNotFound, TreeNotFound
from .node import Node, ancestry, index_nodes, nodes_as_of
from .paths import PathValue, parse


def _path_or_none(node_id: int, text: Optional[str]) -> Optional[PathValue]:
    if text is None:
        return None
    try:
        return parse(text)
    except MalformedPath as e:
        raise MalformedPath(text, f"node {node_id}: {e.reason}") from e


def to_node(rec: NodeRecord) -> Node:
    return Node(
        id=rec.id,
        exemplar_value=_path_or_none(rec.id, rec.exemplar_value),
        data_quantity=rec.data_quantity,
        loss=rec.loss,
        created_at=rec.created_at,
        context_k=rec.context_k,
        inner_region_prefix=_path_or_none(rec.id, rec.inner_region_prefix),
        inner_child_id=rec.inner_node_id,
        outer_child_id=rec.outer_node_id,
        parent_id=rec.parent_id,
        children_populated_at=rec.children_populated_at,
        has_children=bool(rec.has_children),
        being_analysed=bool(rec.being_analysed),
    )


class NodeStore:
    """The ``nodes`` table of one tree.

    ``create_node`` and ``update_node_split`` only stage changes in the session;
    ``TreeStore`` commits them together with the bucket reassignment. The lock
    operations commit immediately so other workers see them.
    """

    def __init__(self, db: Session, tree: str):
        self.db = db
        self.tree = tree
        self.log = logging.getLogger("ultratree.node_store")

    def _query(self):
        return self.db.query(NodeRecord).filter(NodeRecord.tree == self.tree)

    def _record(self, node_id: int) -> NodeRecord:
        rec = self._query().filter(NodeRecord.id == node_id).one_or_none()
        if rec is None:
            raise NodeNotFound(f"node {node_id} not found in tree {self.tree!r}")
        return rec

    def next_node_id(self) -> int:
        """Allocate the next id from the tree's high-water mark.

        Ids are never handed out twice, even after a prune deletes the nodes
        that held them. The counter is bumped in the caller's transaction.
        """
        tree = self.db.get(Tree, self.tree)
        if tree is None:
            raise TreeNotFound(f"no tree named {self.tree!r}")
        current = self.db.query(func.max(NodeRecord.id)).filter(NodeRecord.tree == self.tree).scalar()
        node_id = max(tree.next_node_id or 1, 1 if current is None else current + 1)
        tree.next_node_id = node_id + 1
        return node_id

    def create_node(self, exemplar: Optional[PathValue], count: Optional[int], loss: Optional[float],
                    parent_id: Optional[int] = None, created_at: Optional[datetime] = None) -> int:
        node_id = self.next_node_id()
        self.db.add(NodeRecord(
            tree=self.tree,
            id=node_id,
            exemplar_value=str(exemplar) if exemplar is not None else None,
            data_quantity=count,
            loss=loss,
            parent_id=parent_id,
            created_at=created_at or utcnow(),
        ))
        self.db.flush()
        return node_id

    def set_summary(self, node_id: int, exemplar: PathValue, count: int, loss: float) -> None:
        rec = self._record(node_id)
        rec.exemplar_value = str(exemplar)
        rec.data_quantity = count
        rec.loss = loss

    def update_node_split(self, node_id: int, k: int, region_prefix: PathValue, inner_child_id: int,
                          outer_child_id: int, when: Optional[datetime] = None) -> bool:
        """Give a leaf its children. Returns False if the node already had some."""
        updated = (self._query()
                   .filter(NodeRecord.id == node_id, NodeRecord.has_children.is_(False))
                   .update({
                       NodeRecord.context_k: k,
                       NodeRecord.inner_region_prefix: str(region_prefix),
                       NodeRecord.inner_node_id: inner_child_id,
                       NodeRecord.outer_node_id: outer_child_id,
                       NodeRecord.children_populated_at: when or utcnow(),
                       NodeRecord.has_children: True,
                   }, synchronize_session=False))
        return updated == 1

    def clear_split(self, node_id: int) -> None:
        (self._query().filter(NodeRecord.id == node_id)
         .update({
             NodeRecord.context_k: None,
             NodeRecord.inner_region_prefix: None,
             NodeRecord.inner_node_id: None,
             NodeRecord.outer_node_id: None,
             NodeRecord.children_populated_at: None,
             NodeRecord.has_children: False,
         }, synchronize_session=False))

    def delete_nodes(self, node_ids: Collection[int]) -> int:
        if not node_ids:
            return 0
        return (self._query().filter(NodeRecord.id.in_(list(node_ids)))
                .delete(synchronize_session=False))

    def fetch_node(self, node_id: int) -> Node:
        return to_node(self._record(node_id))

    def fetch_all_nodes(self) -> List[Node]:
        return [to_node(r) for r in self._query().order_by(NodeRecord.created_at, NodeRecord.id)]

    def fetch_nodes_as_of(self, cutoff: Optional[datetime]) -> List[Node]:
        nodes = self.fetch_all_nodes()
        if cutoff is None:
            return nodes
        return nodes_as_of(nodes, cutoff)

    def count(self) -> int:
        return self.db.query(func.count(NodeRecord.id)).filter(NodeRecord.tree == self.tree).scalar()

    def set_being_analysed(self, node_id: int, flag: bool) -> bool:
        """Take or release the advisory lock on a node and commit.

        Taking the lock only succeeds on an unlocked leaf, so two schedulers
        can never both claim the same node.
        """
        q = self._query().filter(NodeRecord.id == node_id)
        if flag:
            q = q.filter(NodeRecord.being_analysed.is_(False), NodeRecord.has_children.is_(False))
        updated = q.update({NodeRecord.being_analysed: flag}, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def most_urgent_leaf(self, min_count: int, exclude: Collection[int] = ()) -> Optional[Tuple[int, float]]:
        """The unlocked leaf with the highest loss among those holding at least
        ``min_count`` examples, as ``(node_id, loss)``; None when there is none."""
        q = (self.db.query(NodeRecord.id, NodeRecord.loss)
             .filter(NodeRecord.tree == self.tree,
                     NodeRecord.has_children.is_(False),
                     NodeRecord.being_analysed.is_(False),
                     NodeRecord.loss.isnot(None),
                     NodeRecord.data_quantity >= min_count))
        if exclude:
            q = q.filter(NodeRecord.id.notin_(list(exclude)))
        row = q.order_by(NodeRecord.loss.desc(), NodeRecord.id).first()
        if row is None:
            return None
        return row[0], row[1]

    def ancestry(self, node_id: int) -> List[Node]:
        return ancestry(index_nodes(self.fetch_all_nodes()), node_id)

    def locked_nodes(self) -> List[int]:
        return [r.id for r in self._query().filter(NodeRecord.being_analysed.is_(True)).order_by(NodeRecord.id)]

    def release_locks(self) -> int:
        released = (self._query().filter(NodeRecord.being_analysed.is_(True))
                    .update({NodeRecord.being_analysed: False}, synchronize_session=False))
        self.db.commit()
        if released:
            self.log.warning("Released %d stale lock(s) on tree %s", released, self.tree)
        return released
