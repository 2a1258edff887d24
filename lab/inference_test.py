"""
Tests for single-tree and ensemble inference
"""

import pytest

from conftest import T0
from ultratree.errors import (ContextIndexOutOfRange, DanglingChildReference, EmptyEnsemble, MalformedPath,
                              MissingExemplar, RootNotFound)
from ultratree.inference import EnsembleInference, InferenceEngine, consensus, infer_ensemble
from ultratree.node import Node, nodes_as_of
from ultratree.paths import parse


def _leaf_model(path, name):
    return InferenceEngine([Node(1, parse(path), 1, 0.0, T0)], name=name)


class TestInferenceEngine:
    def test_inside_inside(self, small_tree):
        result = InferenceEngine(small_tree).infer(["1.2", "5.1.3"])
        assert result.leaf_node_id == 4
        assert result.predicted_path == parse("1.2.3")
        assert result.depth == 2
        assert result.inner_match_count == 2

    def test_inside_outside(self, small_tree):
        result = InferenceEngine(small_tree).infer(["1", "5.2"])
        assert result.leaf_node_id == 5
        assert result.inner_match_count == 1

    def test_outside(self, small_tree):
        result = InferenceEngine(small_tree).infer([parse("3"), parse("5.1")])
        assert result.leaf_node_id == 3
        assert result.depth == 1
        assert result.inner_match_count == 0

    def test_region_is_a_component_prefix(self, small_tree):
        # 1.2 tests "context2 in 5.1"; 5.10 is outside it
        assert InferenceEngine(small_tree).infer(["1", "5.10"]).leaf_node_id == 5

    def test_root_only_snapshot(self, small_tree):
        result = InferenceEngine(nodes_as_of(small_tree, T0)).infer(["1.2", "5.1"])
        assert result.leaf_node_id == 1
        assert result.depth == 0

    def test_context_too_short(self, small_tree):
        with pytest.raises(ContextIndexOutOfRange) as e:
            InferenceEngine(small_tree).infer(["1.2"])
        assert e.value.node_id == 2
        assert e.value.context_k == 2

    def test_root_not_found(self, small_tree):
        with pytest.raises(RootNotFound):
            InferenceEngine(small_tree[1:]).infer(["1", "5"])

    def test_leaf_without_exemplar(self):
        with pytest.raises(MissingExemplar) as e:
            InferenceEngine([Node(1, None, None, None, T0)]).infer(["1"])
        assert e.value.node_id == 1

    def test_dangling_child(self, small_tree):
        without_3 = [n for n in small_tree if n.id != 3]
        with pytest.raises(DanglingChildReference) as e:
            InferenceEngine(without_3).infer(["2", "5"])
        assert e.value.parent_id == 1
        assert e.value.child_id == 3

    def test_malformed_context(self, small_tree):
        with pytest.raises(MalformedPath):
            InferenceEngine(small_tree).infer(["1", "five"])

    def test_size(self, small_tree):
        assert InferenceEngine(small_tree).size == 5


class TestEnsemble:
    def test_consensus(self):
        assert consensus([parse("1.2.3"), parse("1.2.4"), parse("7.7")]) == parse("1.2.3")

    def test_outlier_rejected(self):
        models = [_leaf_model("9", "a"), _leaf_model("1.2.3", "b"), _leaf_model("1.2.3", "c")]
        result = EnsembleInference(models).infer(["1"])
        assert result.predicted_path == parse("1.2.3")
        assert result.predictions == [parse("9"), parse("1.2.3"), parse("1.2.3")]
        assert result.failures == 0

    def test_single_model(self):
        result = infer_ensemble([_leaf_model("4.4", "a")], ["1"])
        assert result.predicted_path == parse("4.4")
        assert result.leaf_node_id == 1

    def test_empty(self):
        with pytest.raises(EmptyEnsemble):
            EnsembleInference([])
        with pytest.raises(EmptyEnsemble):
            infer_ensemble([], ["1"])

    def test_failing_model_is_skipped(self, small_tree):
        broken = InferenceEngine(small_tree[1:], name="broken")
        models = [broken, _leaf_model("1.2", "a"), _leaf_model("1.2.9", "b")]
        result = EnsembleInference(models).infer(["1", "5"])
        assert result.failures == 1
        assert result.predicted_path in (parse("1.2"), parse("1.2.9"))

    def test_unsummarised_model_is_skipped(self):
        empty_root = InferenceEngine([Node(1, None, None, None, T0)], name="fresh")
        result = EnsembleInference([empty_root, _leaf_model("1.2", "a")]).infer(["1"])
        assert result.failures == 1
        assert result.predicted_path == parse("1.2")

    def test_all_models_fail(self, small_tree):
        broken = [InferenceEngine(small_tree[1:], name="x"), InferenceEngine([], name="y")]
        with pytest.raises(RootNotFound):
            EnsembleInference(broken).infer(["1", "5"])

    def test_chosen_carries_the_winning_walk(self, small_tree):
        models = [InferenceEngine(small_tree, name="tree"), _leaf_model("3.1", "leaf")]
        result = EnsembleInference(models).infer(["3", "5"])
        # both predict 3.1; the tie goes to the first model
        assert result.chosen.leaf_node_id == 3
        assert result.chosen.depth == 1
