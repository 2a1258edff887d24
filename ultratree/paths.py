from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Tuple

from .errors import MalformedPath


@dataclass(frozen=True, order=True)
class PathValue:
    """A position in a taxonomy, e.g. ``1.4.2`` (WordNet-style synset path).

    Immutable and hashable; ordering is plain tuple ordering so collections of
    paths can be sorted deterministically.
    """

    parts: Tuple[int, ...]

    def __post_init__(self):
        if not self.parts:
            raise MalformedPath("", "empty path")
        for p in self.parts:
            if p < 0:
                raise MalformedPath(".".join(str(x) for x in self.parts), "negative component")

    def __str__(self) -> str:
        return ".".join(str(p) for p in self.parts)

    def __len__(self) -> int:
        return len(self.parts)

    def is_prefix_of(self, other: "PathValue") -> bool:
        n = len(self.parts)
        return n <= len(other.parts) and other.parts[:n] == self.parts

    def truncations(self) -> List["PathValue"]:
        """Every non-empty prefix of this path, shortest first (self included)."""
        return [PathValue(self.parts[:i]) for i in range(1, len(self.parts) + 1)]


def parse(text: str) -> PathValue:
    if text is None or text == "":
        raise MalformedPath("" if text is None else text, "empty path")
    parts = []
    for component in text.split("."):
        # isdigit() rejects '', '-2', '+2' and ' 2'
        if not component.isdigit() or not component.isascii():
            raise MalformedPath(text, "invalid path component")
        # "02" would come back as "2"
        if len(component) > 1 and component[0] == "0":
            raise MalformedPath(text, "leading zero in path component")
        parts.append(int(component))
    return PathValue(tuple(parts))


def as_path(value) -> PathValue:
    if isinstance(value, PathValue):
        return value
    return parse(value)


def common_prefix_length(a: PathValue, b: PathValue) -> int:
    n = 0
    for x, y in zip(a.parts, b.parts):
        if x != y:
            break
        n += 1
    return n


def cost(a: PathValue, b: PathValue) -> float:
    """Ultrametric dissimilarity: ``2 ** -(shared prefix length)``.

    Exemplar 1.2.3 against 1.4.3 shares one component, so costs 0.5; against
    1.2.3.1.5 it shares three, so costs 0.125.
    """
    return 2.0 ** -common_prefix_length(a, b)


def all_truncations(values: Iterable[PathValue]) -> List[PathValue]:
    """Distinct truncations of every value, sorted.

    {1.2.3, 1.4, 2.3.4} -> [1, 1.2, 1.2.3, 1.4, 2, 2.3, 2.3.4]
    """
    seen = set()
    for v in values:
        seen.update(v.truncations())
    return sorted(seen)
