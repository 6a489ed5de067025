# Purpose: CLI entrypoint: create the store, ingest guideline dumps, run the benchmark, validate a case file, serve the API.
from __future__ import annotations
import argparse, json
from pathlib import Path
from typing import List, Optional

import uvicorn

from oncocheck.config import configure_logging, load_settings
from oncocheck.eval.benchmark import run_benchmark
from oncocheck.ingest.chunker import ingest_dump
from oncocheck.policies.rules import load_rules
from oncocheck.store.db import open_store
from oncocheck.validation.rule_engine import RuleEngine
from oncocheck.validation.types import CaseInput

SERVER_APP = "oncocheck.api.server:app"


def _dump(obj) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="oncocheck")
    ap.add_argument("--config", default=None, help="path to app.yaml (default: configs/app.yaml or $ONCO_CONFIG)")
    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="create tables in the configured SQLite file")
    p_ing = sub.add_parser("ingest", help="load a JSON dump of guideline documents")
    p_ing.add_argument("dump")
    p_bench = sub.add_parser("benchmark", help="score the engine on data/benchmark/*.json")
    p_bench.add_argument("--dataset-version", default="v1")
    p_val = sub.add_parser("validate", help="validate one case JSON file")
    p_val.add_argument("case")
    p_srv = sub.add_parser("serve", help="run the HTTP API")
    p_srv.add_argument("--host", default="127.0.0.1")
    p_srv.add_argument("--port", type=int, default=8000)
    args = ap.parse_args(argv)

    settings = load_settings(args.config)
    configure_logging(settings)
    if args.command == "serve":
        uvicorn.run(SERVER_APP, host=args.host, port=args.port, log_level=settings.log_level.lower())
        return 0

    store = open_store(settings)
    rules = load_rules(settings.rules_path)
    try:
        if args.command == "init-db":
            _dump({"db_path": settings.db_path, "tables": store.table_names()})
        elif args.command == "ingest":
            _dump(ingest_dump(store, args.dump, tag_table=rules.tags))
        elif args.command == "benchmark":
            report = run_benchmark(store, dataset_version=args.dataset_version,
                                   data_dir=settings.benchmark_dir, rules=rules)
            _dump(report.model_dump())
        elif args.command == "validate":
            case = CaseInput.model_validate_json(Path(args.case).read_text(encoding="utf-8"))
            _dump(RuleEngine(store, rules=rules).validate(case).model_dump())
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
