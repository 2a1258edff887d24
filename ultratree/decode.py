from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .database import Decoding
from .errors import PathNotDecoded
from .node import Node
from .paths import PathValue


class DecodeService:
    """Maps a path back to the word most often assigned to it.

    Diagnostics only: nothing in training or inference depends on it. Lookups
    are cached on the instance, so a service should live for one run.
    """

    def __init__(self, db: Session):
        self.db = db
        self._cache: Dict[str, Optional[str]] = {}
        self.log = logging.getLogger("ultratree.decode")

    def decode(self, path: PathValue | str) -> str:
        key = str(path)
        if key not in self._cache:
            row = (self.db.query(Decoding.word, func.count(Decoding.id).label("n"))
                   .filter(Decoding.path == key)
                   .group_by(Decoding.word)
                   .order_by(func.count(Decoding.id).desc(), Decoding.word)
                   .first())
            self._cache[key] = row[0] if row else None
        word = self._cache[key]
        if word is None:
            raise PathNotDecoded(key)
        return word

    def label(self, path: PathValue | str) -> str:
        """``decode`` with the raw path as the fallback."""
        try:
            return self.decode(path)
        except PathNotDecoded:
            return str(path)

    def show_context(self, context: Iterable[PathValue | str]) -> str:
        # context1 is the nearest word, so reverse into reading order
        words = []
        for path in context:
            try:
                words.append(self.decode(path))
            except PathNotDecoded:
                words.append(f"<unknown:{path}>")
        return " ".join(reversed(words))

    def describe_ancestry(self, chain: List[Node], node: Node) -> str:
        """Human-readable route from the root to ``node``.

        ``chain`` is the root-first ancestry of ``node`` (see ``node.ancestry``).
        """
        steps = []
        route = chain + [node]
        for parent, child in zip(route, route[1:]):
            side = "inside" if child.id == parent.inner_child_id else "outside"
            region = parent.inner_region_prefix
            steps.append(f"[Node {parent.id}] if context{parent.context_k} is {side} "
                         f"{region} ({self.label(region)})")
        exemplar = node.exemplar_value
        said = f"{exemplar} ({self.label(exemplar)})" if exemplar is not None else "nothing yet"
        steps.append(f"[Node {node.id} says 'predict {said}']")
        return " AND ".join(steps)
