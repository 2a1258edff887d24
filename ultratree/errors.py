from __future__ import annotations


class UltraTreeError(Exception):
    """Base class for every error raised by the ultratree core."""


class MalformedPath(UltraTreeError, ValueError):
    def __init__(self, text: str, reason: str = "invalid path"):
        super().__init__(f"{reason}: {text!r}")
        self.text = text
        self.reason = reason


class EmptyInputError(UltraTreeError):
    """Exemplar search was asked to summarise zero examples."""


class NoFeasibleSplit(UltraTreeError):
    def __init__(self, node_id: int, split_trials: int):
        super().__init__(
            f"node {node_id}: no candidate region separated its examples in {split_trials} trials"
        )
        self.node_id = node_id
        self.split_trials = split_trials


class ContextIndexOutOfRange(UltraTreeError, IndexError):
    def __init__(self, node_id: int, context_k: int, context_length: int):
        super().__init__(
            f"node {node_id} tests context{context_k} but the context only has {context_length} entries"
        )
        self.node_id = node_id
        self.context_k = context_k
        self.context_length = context_length


class RootNotFound(UltraTreeError):
    """The node snapshot has no node 1."""


class MissingExemplar(UltraTreeError):
    def __init__(self, node_id: int):
        super().__init__(f"node {node_id} is a leaf with no exemplar yet")
        self.node_id = node_id


class DanglingChildReference(UltraTreeError):
    def __init__(self, parent_id: int, child_id: int | None):
        super().__init__(f"node {parent_id} refers to child {child_id}, which is not in the snapshot")
        self.parent_id = parent_id
        self.child_id = child_id


class EmptyEnsemble(UltraTreeError):
    """No models were supplied to an ensemble."""


class ConsistencyViolation(UltraTreeError):
    """The bucket mapping and the node hierarchy disagree."""


class PathNotDecoded(UltraTreeError, KeyError):
    def __init__(self, path: str):
        super().__init__(path)
        self.path = path

    def __str__(self) -> str:
        return f"no word found for path: {self.path}"


class TreeNotFound(UltraTreeError, LookupError):
    pass


class NodeNotFound(UltraTreeError, LookupError):
    pass
