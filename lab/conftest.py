from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Sequence, Tuple

import numpy as np
import pytest

from ultratree.config import TrainConfig
from ultratree.database import Example, ExampleContext, create_tables, make_engine, make_session_factory
from ultratree.node import Node
from ultratree.paths import parse

Row = Tuple[int, str, Sequence[str]]

T0 = datetime(2024, 1, 1, 12, 0, 0)
T1 = T0 + timedelta(minutes=5)
T2 = T0 + timedelta(minutes=10)


def add_examples(db, rows: Iterable[Row], dataset: str = "training") -> None:
    for eid, target, context in rows:
        db.add(Example(
            dataset=dataset,
            id=eid,
            target=target,
            contexts=[ExampleContext(dataset=dataset, example_id=eid, position=i, path=p)
                      for i, p in enumerate(context, start=1)],
        ))
    db.commit()


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = make_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def fast_config() -> TrainConfig:
    return TrainConfig(exemplar_trials=20, cost_trials=20, split_trials=20, circles_per_split=5,
                       context_length=2, seed=7, gate_pause_seconds=0.0)


@pytest.fixture
def two_cluster_rows() -> List[Row]:
    """context1 decides the target: 1.2.* -> 1.2, 3.1.* -> 3.1. context2 is noise."""
    rows = []
    for i in range(1, 9):
        if i % 2:
            rows.append((i, "1.2", [f"1.2.{i}", f"5.{i % 3}"]))
        else:
            rows.append((i, "3.1", [f"3.1.{i}", f"5.{i % 3}"]))
    return rows


@pytest.fixture
def training_db(db, two_cluster_rows):
    add_examples(db, two_cluster_rows)
    return db


@pytest.fixture
def small_tree() -> List[Node]:
    """
    1 (context1 in 1) -> inner 2, outer 3                  split at T1
    2 (context2 in 5.1) -> inner 4, outer 5                split at T2
    """
    return [
        Node(1, parse("1"), 8, 4.0, T0, context_k=1, inner_region_prefix=parse("1"),
             inner_child_id=2, outer_child_id=3, children_populated_at=T1, has_children=True),
        Node(2, parse("1.2"), 5, 1.0, T1, context_k=2, inner_region_prefix=parse("5.1"),
             inner_child_id=4, outer_child_id=5, parent_id=1, children_populated_at=T2, has_children=True),
        Node(3, parse("3.1"), 3, 1.5, T1, parent_id=1),
        Node(4, parse("1.2.3"), 2, 0.25, T2, parent_id=2),
        Node(5, parse("1.2.4"), 3, 0.5, T2, parent_id=2),
    ]
