"""Ultrametric trees: predict a taxonomy path from the paths that precede it."""

from .config import TrainConfig, load_config
from .errors import (ConsistencyViolation, ContextIndexOutOfRange, DanglingChildReference, EmptyEnsemble,
                     EmptyInputError, MalformedPath, MissingExemplar, NoFeasibleSplit, NodeNotFound,
                     PathNotDecoded, RootNotFound, TreeNotFound, UltraTreeError)
from .exemplar import find_best_exemplar
from .inference import EnsembleInference, InferenceEngine, InferenceResult, infer_ensemble
from .node import Node, nodes_as_of
from .paths import PathValue, cost, parse
from .splitter import SplitEngine
from .trainer import TrainingScheduler, TrainingState
from .tree_store import TreeStore

__version__ = "0.1.0"
