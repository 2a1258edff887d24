from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np

from .errors import EmptyInputError
from .paths import PathValue, cost


def estimate_loss(candidate: PathValue, targets: Sequence[PathValue], cost_trials: int,
                  rng: np.random.Generator) -> float:
    """Sample ``cost_trials`` comparators (with replacement) and extrapolate the
    mean cost to the whole of ``targets``."""
    n = len(targets)
    picks = rng.integers(0, n, size=cost_trials)
    total = 0.0
    for j in picks:
        total += cost(candidate, targets[j])
    return total / cost_trials * n


def find_best_exemplar(targets: Sequence[PathValue], exemplar_trials: int, cost_trials: int,
                       rng: np.random.Generator) -> Tuple[PathValue, float]:
    """Randomised medoid search.

    Draws ``exemplar_trials`` candidates uniformly from ``targets``, scores each
    with :func:`estimate_loss` and returns the cheapest ``(exemplar, loss)``.
    The work is O(exemplar_trials * cost_trials) regardless of ``len(targets)``.
    Given the same generator state the result is reproducible.
    """
    if len(targets) == 0:
        raise EmptyInputError("no targets provided to find_best_exemplar")
    if exemplar_trials < 1 or cost_trials < 1:
        raise ValueError(
            f"exemplar_trials and cost_trials must be positive (got {exemplar_trials}, {cost_trials})"
        )

    best_exemplar = None
    best_loss = math.inf
    n = len(targets)
    for _ in range(exemplar_trials):
        candidate = targets[int(rng.integers(0, n))]
        loss = estimate_loss(candidate, targets, cost_trials, rng)
        if loss < best_loss:
            best_exemplar = candidate
            best_loss = loss
    return best_exemplar, best_loss
