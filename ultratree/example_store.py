from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from .database import BucketEntry, Example, ExampleContext
from .errors import MalformedPath
from .paths import PathValue, parse

# SQLite caps bound parameters per statement; stay well below it
REASSIGN_CHUNK = 500


@dataclass(frozen=True)
class TrainingExample:
    id: int
    target: PathValue
    context: Tuple[PathValue, ...]


def _parse_row(example_id: int, text: str) -> PathValue:
    try:
        return parse(text)
    except MalformedPath as e:
        raise MalformedPath(text, f"example {example_id}: {e.reason}") from e


def chunked(ids: Sequence[int], size: int = REASSIGN_CHUNK) -> Iterable[Sequence[int]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


class ExampleStore:
    """Row store for one tree: the examples of its dataset and the
    example -> node bucket mapping.

    Methods that write do not commit; the caller owns the transaction.
    """

    def __init__(self, db: Session, tree: str, dataset: str):
        self.db = db
        self.tree = tree
        self.dataset = dataset
        self.log = logging.getLogger("ultratree.example_store")

    def _bucketed(self, query, node_id: int):
        return (query.join(BucketEntry, BucketEntry.example_id == Example.id)
                .filter(Example.dataset == self.dataset,
                        BucketEntry.tree == self.tree,
                        BucketEntry.node_id == node_id))

    def count_examples(self) -> int:
        return self.db.query(func.count(Example.id)).filter(Example.dataset == self.dataset).scalar()

    def count_buckets(self) -> int:
        return self.db.query(func.count(BucketEntry.example_id)).filter(BucketEntry.tree == self.tree).scalar()

    def count_in_node(self, node_id: int) -> int:
        return (self.db.query(func.count(BucketEntry.example_id))
                .filter(BucketEntry.tree == self.tree, BucketEntry.node_id == node_id)
                .scalar())

    def bucket_counts(self) -> Dict[int, int]:
        rows = (self.db.query(BucketEntry.node_id, func.count(BucketEntry.example_id))
                .filter(BucketEntry.tree == self.tree)
                .group_by(BucketEntry.node_id)
                .all())
        return {node_id: count for node_id, count in rows}

    def load_targets_in_node(self, node_id: int) -> List[Tuple[int, PathValue]]:
        """(example id, target) for every example in the node, ordered by id."""
        rows = self._bucketed(self.db.query(Example.id, Example.target), node_id).order_by(Example.id).all()
        return [(eid, _parse_row(eid, target)) for eid, target in rows]

    def load_context_column_in_node(self, node_id: int, k: int) -> List[Tuple[int, PathValue]]:
        """(example id, context value at position k), ordered by id like
        :meth:`load_targets_in_node` so the two lists zip together."""
        rows = (self.db.query(ExampleContext.example_id, ExampleContext.path)
                .join(BucketEntry, BucketEntry.example_id == ExampleContext.example_id)
                .filter(ExampleContext.dataset == self.dataset,
                        ExampleContext.position == k,
                        BucketEntry.tree == self.tree,
                        BucketEntry.node_id == node_id)
                .order_by(ExampleContext.example_id)
                .all())
        return [(eid, _parse_row(eid, path)) for eid, path in rows]

    def load_examples_in_node(self, node_id: int) -> List[TrainingExample]:
        targets = self.load_targets_in_node(node_id)
        contexts: Dict[int, List[PathValue]] = {eid: [] for eid, _ in targets}
        rows = (self.db.query(ExampleContext.example_id, ExampleContext.path)
                .join(BucketEntry, BucketEntry.example_id == ExampleContext.example_id)
                .filter(ExampleContext.dataset == self.dataset,
                        BucketEntry.tree == self.tree,
                        BucketEntry.node_id == node_id)
                .order_by(ExampleContext.example_id, ExampleContext.position)
                .all())
        for eid, path in rows:
            contexts[eid].append(_parse_row(eid, path))
        return [TrainingExample(eid, target, tuple(contexts[eid])) for eid, target in targets]

    def assign_all(self, node_id: int) -> int:
        """Bucket every example of the dataset into ``node_id`` (bootstrap)."""
        ids = [eid for (eid,) in self.db.query(Example.id).filter(Example.dataset == self.dataset)]
        self.db.bulk_save_objects(
            [BucketEntry(tree=self.tree, example_id=eid, node_id=node_id) for eid in ids]
        )
        return len(ids)

    def reassign_examples(self, example_ids: Sequence[int], new_node_id: int) -> int:
        """Point every id at ``new_node_id``. Any number of ids; updates run in chunks."""
        updated = 0
        for chunk in chunked(list(example_ids)):
            updated += (self.db.query(BucketEntry)
                        .filter(BucketEntry.tree == self.tree, BucketEntry.example_id.in_(chunk))
                        .update({BucketEntry.node_id: new_node_id}, synchronize_session=False))
        self.log.debug("Reassigned %d/%d examples to node %d", updated, len(example_ids), new_node_id)
        return updated

    def reassign_node(self, old_node_id: int, new_node_id: int) -> int:
        return (self.db.query(BucketEntry)
                .filter(BucketEntry.tree == self.tree, BucketEntry.node_id == old_node_id)
                .update({BucketEntry.node_id: new_node_id}, synchronize_session=False))

    def delete_buckets(self) -> None:
        self.db.query(BucketEntry).filter(BucketEntry.tree == self.tree).delete(synchronize_session=False)


def load_dataset(db: Session, dataset: str, limit: int | None = None) -> List[TrainingExample]:
    """Every example of ``dataset`` with its context, ordered by id."""
    query = (db.query(Example).options(selectinload(Example.contexts))
             .filter(Example.dataset == dataset).order_by(Example.id))
    if limit is not None and limit > 0:
        query = query.limit(limit)
    out = []
    for ex in query:
        out.append(TrainingExample(
            ex.id,
            _parse_row(ex.id, ex.target),
            tuple(_parse_row(ex.id, c.path) for c in ex.contexts),
        ))
    return out
