"""
Tests for the persistent tree: bootstrap, split commit, prune, locks and the
consistency check
"""

from datetime import timedelta

import pytest

from conftest import add_examples
from ultratree.database import NodeRecord
from ultratree.errors import ConsistencyViolation, NodeNotFound, RootNotFound, TreeNotFound
from ultratree.example_store import REASSIGN_CHUNK, load_dataset
from ultratree.inference import InferenceEngine
from ultratree.node import ROOT_NODE_ID, index_nodes, nodes_as_of
from ultratree.paths import parse
from ultratree.splitter import SplitDecision
from ultratree.tree_store import TreeStore


def _bootstrapped(db, rng, name="t1", dataset="training"):
    store = TreeStore.create(db, name, dataset, context_length=2)
    store.bootstrap(10, 10, rng)
    return store


def _decision(inside, outside, k=1, region="1"):
    return SplitDecision(
        context_k=k,
        region=parse(region),
        inside_exemplar=parse("1.2"),
        inside_loss=0.5,
        outside_exemplar=parse("3.1"),
        outside_loss=0.25,
        inside_ids=tuple(inside),
        outside_ids=tuple(outside),
    )


class TestBootstrap:
    def test_root_holds_everything(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        root = store.nodes.fetch_node(ROOT_NODE_ID)
        assert root.data_quantity == 8
        assert root.exemplar_value in (parse("1.2"), parse("3.1"))
        assert root.loss > 0
        assert store.examples.count_in_node(ROOT_NODE_ID) == 8
        assert store.check_consistency().ok

    def test_open_and_list(self, training_db, rng):
        _bootstrapped(training_db, rng)
        assert TreeStore.exists(training_db, "t1")
        assert TreeStore.open(training_db, "t1").context_length == 2
        assert TreeStore.list_trees(training_db) == ["t1"]

    def test_open_missing(self, db):
        with pytest.raises(TreeNotFound):
            TreeStore.open(db, "nope")

    def test_bootstrap_twice(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        with pytest.raises(ConsistencyViolation):
            store.bootstrap(10, 10, rng)

    def test_two_trees_share_a_dataset(self, training_db, rng):
        a = _bootstrapped(training_db, rng, name="a")
        b = _bootstrapped(training_db, rng, name="b")
        a.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        assert b.examples.count_in_node(ROOT_NODE_ID) == 8
        assert b.nodes.count() == 1
        assert a.nodes.count() == 3


class TestCommitSplit:
    def test_split_moves_every_example(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        inner, outer = store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        assert (inner, outer) == (2, 3)

        root = store.nodes.fetch_node(ROOT_NODE_ID)
        assert root.has_children
        assert root.context_k == 1
        assert root.inner_region_prefix == parse("1")
        assert (root.inner_child_id, root.outer_child_id) == (2, 3)

        for child_id, size in ((inner, 4), (outer, 4)):
            child = store.nodes.fetch_node(child_id)
            assert child.parent_id == ROOT_NODE_ID
            assert child.data_quantity == size
            assert child.created_at == root.children_populated_at
            assert store.examples.count_in_node(child_id) == size
        assert store.examples.count_in_node(ROOT_NODE_ID) == 0
        store.assert_consistent()

    def test_count_mismatch_rolls_back(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        with pytest.raises(ConsistencyViolation):
            store.commit_split(ROOT_NODE_ID, _decision([1, 3], [2, 4]))
        assert store.nodes.count() == 1
        assert not store.nodes.fetch_node(ROOT_NODE_ID).has_children
        assert store.examples.count_in_node(ROOT_NODE_ID) == 8

    def test_node_splits_only_once(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        with pytest.raises(ConsistencyViolation):
            store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        assert store.nodes.count() == 3

    def test_reassignment_is_chunked(self, db, rng):
        n = 2 * REASSIGN_CHUNK + 200
        add_examples(db, [(i, "1.2" if i <= 700 else "3.1", ["1" if i <= 700 else "3"]) for i in range(1, n + 1)])
        store = _bootstrapped(db, rng)
        inner, outer = store.commit_split(ROOT_NODE_ID, _decision(range(1, 701), range(701, n + 1)))
        assert store.examples.count_in_node(inner) == 700
        assert store.examples.count_in_node(outer) == n - 700
        store.assert_consistent()


class TestPrune:
    def test_prune_restores_the_leaf(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        store.commit_split(2, _decision([1, 3], [5, 7], k=2, region="5.1"))
        assert store.nodes.count() == 5

        deleted = store.prune(ROOT_NODE_ID)
        assert sorted(deleted) == [2, 3, 4, 5]
        root = store.nodes.fetch_node(ROOT_NODE_ID)
        assert root.is_leaf
        assert root.context_k is None and root.inner_child_id is None
        assert store.examples.count_in_node(ROOT_NODE_ID) == 8
        store.assert_consistent()

    def test_prune_subtree(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        store.commit_split(2, _decision([1, 3], [5, 7], k=2, region="5.1"))
        assert store.prune(2) == [4, 5]
        assert store.examples.count_in_node(2) == 4
        store.assert_consistent()

    def test_prune_unknown_node(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        with pytest.raises(NodeNotFound):
            store.prune(42)

    def test_pruned_ids_are_not_reissued(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        assert store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8])) == (2, 3)
        store.prune(ROOT_NODE_ID)
        assert store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8])) == (4, 5)
        assert [n.id for n in store.nodes.fetch_all_nodes()] == [1, 4, 5]
        store.assert_consistent()

    def test_id_counter_survives_reopening(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        store.prune(ROOT_NODE_ID)
        reopened = TreeStore.open(training_db, "t1")
        assert reopened.nodes.next_node_id() == 4
        training_db.rollback()


class TestLocks:
    def test_lock_is_exclusive(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        assert store.nodes.set_being_analysed(ROOT_NODE_ID, True)
        assert not store.nodes.set_being_analysed(ROOT_NODE_ID, True)
        assert store.nodes.most_urgent_leaf(1) is None
        assert store.nodes.set_being_analysed(ROOT_NODE_ID, False)
        assert store.nodes.most_urgent_leaf(1)[0] == ROOT_NODE_ID

    def test_split_node_cannot_be_locked(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        assert not store.nodes.set_being_analysed(ROOT_NODE_ID, True)

    def test_stale_lock_is_reported_and_released(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        store.nodes.set_being_analysed(ROOT_NODE_ID, True)
        report = store.check_consistency()
        assert report.locked_nodes == [ROOT_NODE_ID]
        assert not report.ok
        assert report.problems(allow_locked=True) == []
        with pytest.raises(ConsistencyViolation):
            store.assert_consistent()

        assert store.nodes.locked_nodes() == [ROOT_NODE_ID]
        assert store.nodes.release_locks() == 1
        assert store.check_consistency().ok


class TestConsistency:
    def test_most_urgent_leaf_prefers_highest_loss(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        assert store.nodes.most_urgent_leaf(1) == (2, 0.5)
        assert store.nodes.most_urgent_leaf(1, exclude=[2]) == (3, 0.25)
        assert store.nodes.most_urgent_leaf(5) is None

    def test_detects_tampered_quantity(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        training_db.query(NodeRecord).filter(NodeRecord.id == 2).update({NodeRecord.data_quantity: 3})
        training_db.commit()
        report = store.check_consistency()
        assert report.mismatched_leaves == {2: (3, 4)}
        assert report.leaf_quantity_total == 7
        assert not report.ok

    def test_detects_stray_buckets(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]))
        store.examples.reassign_examples([1], ROOT_NODE_ID)
        training_db.commit()
        report = store.check_consistency()
        assert report.stray_buckets == {ROOT_NODE_ID: 1}
        assert "problems" in report.to_dict()


class TestExampleStore:
    def test_columns_line_up(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        targets = store.examples.load_targets_in_node(ROOT_NODE_ID)
        column = store.examples.load_context_column_in_node(ROOT_NODE_ID, 1)
        assert [i for i, _ in targets] == [i for i, _ in column] == list(range(1, 9))
        assert column[0][1] == parse("1.2.1")

    def test_load_examples_in_node(self, training_db, rng):
        store = _bootstrapped(training_db, rng)
        examples = store.examples.load_examples_in_node(ROOT_NODE_ID)
        assert len(examples) == 8
        assert examples[1].context == (parse("3.1.2"), parse("5.2"))

    def test_load_dataset(self, training_db):
        examples = load_dataset(training_db, "training", limit=3)
        assert [e.id for e in examples] == [1, 2, 3]
        assert examples[0].target == parse("1.2")
        assert load_dataset(training_db, "validation") == []


class TestAsOf:
    def _grow(self, db, rng):
        store = _bootstrapped(db, rng)
        born = store.nodes.fetch_node(ROOT_NODE_ID).created_at
        first, second = born + timedelta(minutes=1), born + timedelta(minutes=2)
        store.commit_split(ROOT_NODE_ID, _decision([1, 3, 5, 7], [2, 4, 6, 8]), when=first)
        store.commit_split(2, _decision([1, 3], [5, 7], k=2, region="5.1"), when=second)
        return store, born, first, second

    def test_before_the_root(self, training_db, rng):
        store, born, _, _ = self._grow(training_db, rng)
        assert store.nodes.fetch_nodes_as_of(born - timedelta(seconds=1)) == []
        with pytest.raises(RootNotFound):
            InferenceEngine.from_store(store, as_of=born - timedelta(seconds=1)).infer(["1.2.1", "5.1"])

    def test_between_splits(self, training_db, rng):
        store, _, first, _ = self._grow(training_db, rng)
        snapshot = index_nodes(store.nodes.fetch_nodes_as_of(first))
        assert sorted(snapshot) == [1, 2, 3]
        assert snapshot[ROOT_NODE_ID].has_children
        # node 2 got its children later, so here it is still a leaf
        assert snapshot[2].is_leaf
        assert snapshot[2].inner_child_id is None

        result = InferenceEngine.from_store(store, as_of=first).infer(["1.2.1", "5.1"])
        assert (result.leaf_node_id, result.depth) == (2, 1)

    def test_after_the_last_change(self, training_db, rng):
        store, _, _, second = self._grow(training_db, rng)
        everything = store.nodes.fetch_all_nodes()
        assert store.nodes.fetch_nodes_as_of(second) == everything
        assert store.nodes.fetch_nodes_as_of(second + timedelta(days=1)) == everything

        result = InferenceEngine.from_store(store, as_of=second).infer(["1.2.1", "5.1"])
        assert (result.leaf_node_id, result.depth) == (4, 2)

    def test_projecting_twice_changes_nothing(self, training_db, rng):
        store, born, first, second = self._grow(training_db, rng)
        for cutoff in (born, first, second):
            once = store.nodes.fetch_nodes_as_of(cutoff)
            assert nodes_as_of(once, cutoff) == once
