#!/usr/bin/env python3
"""
Ultrametric tree builder

Grows binary trees that predict a taxonomy path (e.g. a WordNet sense path)
from the window of paths that precede it, and queries them.

CLI:
- load <examples.jsonl> --dataset NAME [--decodings decodings.jsonl]
- train --tree NAME --dataset NAME [--config config.json] [--max-splits N] [--time-limit SECONDS]
- evaluate --tree A,B,... --dataset NAME --description TEXT [--as-of TIME]
- inspect --tree NAME [--node ID | --context p1 p2 ...] [--as-of TIME]
- timeline --tree NAME [--context-usage]
- prune --tree NAME --node ID
- check --tree NAME [--release-locks]

Every command takes --db (SQLAlchemy URL or SQLite path, default from
ULTRATREE_DATABASE_URL or ./ultratree.db) and prints JSON to stdout.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import signal
import sys
from datetime import datetime
from typing import List, Optional

import numpy as np

from ultratree.config import database_url, load_config
from ultratree.data_loader import DataLoader
from ultratree.database import create_tables, make_engine, make_session_factory
from ultratree.decode import DecodeService
from ultratree.errors import UltraTreeError
from ultratree.evaluation import evaluate
from ultratree.inference import EnsembleInference, InferenceEngine
from ultratree.node import ancestry, index_nodes
from ultratree.timeline import analyze_timeline, context_usage
from ultratree.trainer import TrainingScheduler
from ultratree.tree_store import TreeStore

log = logging.getLogger("ultratree.cli")


def _timestamp(text: str) -> datetime:
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a timestamp (YYYY-MM-DD HH:MM:SS): {text!r}")


# -----------------------
# CLI
# -----------------------
def _parse_args(argv: List[str]) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", default=None, help="Database URL or SQLite path (default: $ULTRATREE_DATABASE_URL or ./ultratree.db)")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    ap = argparse.ArgumentParser(description="Ultrametric tree builder")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_l = sub.add_parser("load", parents=[common], help="Load prepared examples (JSON lines) into a dataset")
    ap_l.add_argument("examples", nargs="?", help="Examples file: {\"id\", \"target\", \"context\": [...]} per line")
    ap_l.add_argument("--dataset", default="training", help="Dataset name (default: training)")
    ap_l.add_argument("--context-length", type=int, default=None, help="Reject examples with a different context length")
    ap_l.add_argument("--replace", action="store_true", help="Delete the dataset's existing examples first")
    ap_l.add_argument("--decodings", default=None, help="Decodings file: {\"path\", \"word\"} per line")

    ap_t = sub.add_parser("train", parents=[common], help="Grow (or resume growing) a tree")
    ap_t.add_argument("--tree", required=True, help="Tree name")
    ap_t.add_argument("--dataset", default="training", help="Training dataset (default: training)")
    ap_t.add_argument("--config", default=None, help="Optional JSON config file")
    ap_t.add_argument("--seed", type=int, default=None, help="Random seed (default from config: 1)")
    ap_t.add_argument("--max-splits", type=int, default=None, help="Stop after this many splits")
    ap_t.add_argument("--time-limit", type=float, default=None, help="Stop after this many seconds")
    ap_t.add_argument("--verify", action="store_true", help="Check tree/bucket consistency after every split")
    ap_t.add_argument("--no-decode", action="store_true", help="Do not decode paths in the training log")

    ap_e = sub.add_parser("evaluate", parents=[common], help="Evaluate one tree or an ensemble on a dataset")
    ap_e.add_argument("--tree", required=True, help="Comma-separated tree names")
    ap_e.add_argument("--dataset", default="validation", help="Held-out dataset (default: validation)")
    ap_e.add_argument("--description", required=True, help="An informative name for the evaluation run")
    ap_e.add_argument("--as-of", type=_timestamp, default=None, help="Only use nodes that existed at this time")
    ap_e.add_argument("--limit", type=int, default=None, help="Stop after this many examples")

    ap_i = sub.add_parser("inspect", parents=[common], help="Show a node, or run inference on a context")
    ap_i.add_argument("--tree", required=True, help="Tree name (comma-separated for an ensemble with --context)")
    ap_i.add_argument("--node", type=int, default=None, help="Node id to show (default: list all nodes)")
    ap_i.add_argument("--context", nargs="+", default=None, help="Context paths, nearest first")
    ap_i.add_argument("--as-of", type=_timestamp, default=None, help="Look at the tree as it was at this time")

    ap_h = sub.add_parser("timeline", parents=[common], help="Loss and size of the tree at every change")
    ap_h.add_argument("--tree", required=True, help="Tree name")
    ap_h.add_argument("--context-usage", action="store_true", help="Report how often each context position is tested instead")

    ap_p = sub.add_parser("prune", parents=[common], help="Remove everything below a node")
    ap_p.add_argument("--tree", required=True, help="Tree name")
    ap_p.add_argument("--node", type=int, required=True, help="Node to turn back into a leaf")

    ap_c = sub.add_parser("check", parents=[common], help="Check that buckets and nodes agree")
    ap_c.add_argument("--tree", required=True, help="Tree name")
    ap_c.add_argument("--release-locks", action="store_true", help="Clear locks left behind by a crashed trainer")

    return ap.parse_args(argv)


def _engines(db, names: str, as_of: Optional[datetime], decoder: Optional[DecodeService]) -> List[InferenceEngine]:
    return [InferenceEngine.from_store(TreeStore.open(db, name.strip()), as_of=as_of, decoder=decoder)
            for name in names.split(",") if name.strip()]


def _train(db, ns) -> dict:
    cfg = load_config(ns.config)
    cfg = dataclasses.replace(
        cfg,
        seed=(ns.seed if ns.seed is not None else cfg.seed),
        max_splits=(ns.max_splits if ns.max_splits is not None else cfg.max_splits),
        time_limit=(ns.time_limit if ns.time_limit is not None else cfg.time_limit),
        verify_each_step=(True if ns.verify else cfg.verify_each_step),
    )
    decoder = None if ns.no_decode else DecodeService(db)
    scheduler = TrainingScheduler(db, ns.tree, ns.dataset, cfg, rng=np.random.default_rng(cfg.seed),
                                  decoder=decoder)
    # Ctrl-C finishes the current split, then stops
    previous = signal.signal(signal.SIGINT, lambda *_: scheduler.request_stop())
    try:
        summary = scheduler.run()
    finally:
        signal.signal(signal.SIGINT, previous)
    return {
        "tree": ns.tree,
        "splits": summary.splits_done,
        "skipped": summary.skipped,
        "converged": summary.converged,
        "stop_reason": summary.stop_reason,
        "elapsed": summary.elapsed,
        "nodes": scheduler.store.nodes.count(),
    }


def _inspect(db, ns) -> dict:
    decoder = DecodeService(db)
    if ns.context:
        models = _engines(db, ns.tree, ns.as_of, decoder)
        if len(models) == 1:
            result = models[0].infer(ns.context, verbose=ns.verbose).to_dict()
        else:
            result = EnsembleInference(models).infer(ns.context).to_dict()
        result["context"] = decoder.show_context(ns.context)
        result["predicted_word"] = decoder.label(result["predicted_path"])
        return result

    store = TreeStore.open(db, ns.tree)
    nodes = store.nodes.fetch_nodes_as_of(ns.as_of)
    if ns.node is None:
        return {"tree": store.name, "dataset": store.dataset, "nodes": [n.to_dict() for n in nodes]}
    index = index_nodes(nodes)
    if ns.node not in index:
        raise SystemExit(f"node {ns.node} does not exist in tree {store.name!r} at that time")
    node = index[ns.node]
    chain = ancestry(index, node.id)
    info = node.to_dict()
    if node.exemplar_value is not None:
        info["exemplar_word"] = decoder.label(node.exemplar_value)
    info["ancestry"] = decoder.describe_ancestry(chain, node)
    return info


def main(argv: List[str] | None = None) -> None:
    ns = _parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=logging.DEBUG if ns.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(message)s")
    engine = make_engine(database_url(ns.db))
    create_tables(engine)
    db = make_session_factory(engine)()
    try:
        if ns.cmd == "load":
            loader = DataLoader(db)
            out = {}
            if ns.examples:
                out["examples"] = loader.load_examples(ns.examples, ns.dataset,
                                                       context_length=ns.context_length, replace=ns.replace)
            if ns.decodings:
                out["decodings"] = loader.load_decodings(ns.decodings)
            if not out:
                raise SystemExit("nothing to load: give an examples file and/or --decodings")
        elif ns.cmd == "train":
            out = _train(db, ns)
        elif ns.cmd == "evaluate":
            decoder = DecodeService(db)
            models = _engines(db, ns.tree, ns.as_of, decoder)
            out = evaluate(db, models, ns.dataset, ns.description, cutoff=ns.as_of, limit=ns.limit,
                           decoder=decoder, verbose=ns.verbose).to_dict()
        elif ns.cmd == "inspect":
            out = _inspect(db, ns)
        elif ns.cmd == "timeline":
            nodes = TreeStore.open(db, ns.tree).nodes.fetch_all_nodes()
            if ns.context_usage:
                out = {str(k): v for k, v in context_usage(nodes).items()}
            else:
                out = [p.to_dict() for p in analyze_timeline(nodes)]
        elif ns.cmd == "prune":
            out = {"tree": ns.tree, "node": ns.node, "deleted": TreeStore.open(db, ns.tree).prune(ns.node)}
        elif ns.cmd == "check":
            store = TreeStore.open(db, ns.tree)
            released = store.nodes.release_locks() if ns.release_locks else 0
            out = store.check_consistency().to_dict()
            out["released_locks"] = released
        else:
            raise SystemExit(2)
    except UltraTreeError as e:
        log.error("%s", e)
        raise SystemExit(1) from e
    finally:
        db.close()
    print(json.dumps(out, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
