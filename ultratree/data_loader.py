from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy.orm import Session

from .database import Decoding, Example, ExampleContext
from .errors import MalformedPath
from .paths import parse


def _read_jsonl(path: str | Path) -> Iterator[dict]:
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{lineno}: not valid JSON ({e})") from e


class DataLoader:
    """Loads prepared examples and decodings into the database.

    Input files are JSON lines. Examples look like
    ``{"id": 7, "target": "1.4.2", "context": ["1.2", "3.1.1", ...]}`` with
    ``context[0]`` the nearest preceding value; decodings look like
    ``{"path": "1.4.2", "word": "dog"}``.
    """

    def __init__(self, db: Session):
        self.db = db
        self.log = logging.getLogger("ultratree.data_loader")

    def clear_dataset(self, dataset: str) -> int:
        self.db.query(ExampleContext).filter(ExampleContext.dataset == dataset).delete(synchronize_session=False)
        return self.db.query(Example).filter(Example.dataset == dataset).delete(synchronize_session=False)

    def load_examples(self, path: str | Path, dataset: str, context_length: Optional[int] = None,
                      replace: bool = False, batch_size: int = 1000) -> int:
        """
        Insert every example in ``path`` into ``dataset``. Values are
        validated as paths before anything is written; a bad line aborts the
        whole load.
        """
        if replace:
            removed = self.clear_dataset(dataset)
            if removed:
                self.log.info("Removed %d existing examples from dataset %s", removed, dataset)

        pending = []
        total = 0
        try:
            for row in _read_jsonl(path):
                eid = int(row["id"])
                target = str(parse(row["target"]))
                context = [str(parse(c)) for c in row["context"]]
                if context_length is not None and len(context) != context_length:
                    raise ValueError(
                        f"example {eid} has {len(context)} context values, expected {context_length}"
                    )
                pending.append(Example(dataset=dataset, id=eid, target=target))
                pending.extend(ExampleContext(dataset=dataset, example_id=eid, position=i, path=c)
                               for i, c in enumerate(context, start=1))
                total += 1
                if len(pending) >= batch_size:
                    # Bulk insert for better performance
                    self.db.bulk_save_objects(pending)
                    pending = []
            if pending:
                self.db.bulk_save_objects(pending)
            self.db.commit()
        except (KeyError, MalformedPath, ValueError):
            self.db.rollback()
            raise

        self.log.info("Loaded %d examples into dataset %s", total, dataset)
        return total

    def load_decodings(self, path: str | Path) -> int:
        rows = []
        for row in _read_jsonl(path):
            rows.append(Decoding(path=str(parse(row["path"])), word=row["word"]))
        self.db.bulk_save_objects(rows)
        self.db.commit()
        self.log.info("Loaded %d decodings", len(rows))
        return len(rows)
