"""Command line interface for Quorum."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from quorum.categories import CategoryClassifier, CategoryTable, load_table
from quorum.config import Config, get_config
from quorum.consensus import ConsensusSettings
from quorum.errors import QuorumError
from quorum.health import health_payload
from quorum.pipeline import ValuationPipeline
from quorum.providers.registry import ProviderRegistry
from quorum.store import ValuationStore

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2))


def _table(config: Config) -> CategoryTable:
    path = config.category_table_path
    return CategoryTable.load(path) if path else load_table()


def cmd_valuate(args: argparse.Namespace) -> None:
    config = get_config()
    images = [Path(p).expanduser().read_bytes() for p in args.image or []]
    pipeline = ValuationPipeline.from_config(config)
    try:
        report = pipeline.valuate_detailed(images, args.name, args.category)
    finally:
        pipeline.close()
    if args.json:
        _print(report.to_dict())
    else:
        _print({"run_id": report.run_id, **report.result.to_dict(), "category": report.category.category})


def cmd_classify(args: argparse.Namespace) -> None:
    classifier = CategoryClassifier(_table(get_config()))
    detection = classifier.classify(args.name, hint=args.hint, ai_vote=args.ai_vote)
    payload = detection.to_dict()
    payload["authority_sources"] = list(classifier.table.authority_sources(detection.category))
    _print(payload)


def _registry(config: Config) -> ProviderRegistry:
    return ProviderRegistry.load(config.providers)


def cmd_providers(args: argparse.Namespace) -> None:
    config = get_config()
    registry = _registry(config)
    if args.providers_cmd == "status":
        _print({"statuses": [s.to_dict() for s in registry.statuses()]})
        return
    _print({"providers": [
        {
            "id": p.id,
            "name": p.name,
            "kind": p.kind,
            "model": p.model,
            "capabilities": sorted(c.value for c in p.capabilities),
            "base_weight": p.base_weight,
            "market_lookup": p.market_lookup,
            "tiebreaker": p.tiebreaker,
        }
        for p in registry.providers
    ]})


def cmd_health(args: argparse.Namespace) -> None:
    config = get_config()
    payload = health_payload(_registry(config), ConsensusSettings.from_config(config.consensus))
    payload["category_table_version"] = _table(config).version
    _print(payload)
    if not payload.get("ok", False):
        raise SystemExit(2)


def cmd_runs(args: argparse.Namespace) -> None:
    store = ValuationStore(get_config().data_dir)
    if args.runs_cmd == "latest":
        _print(store.latest() or {})
    elif args.runs_cmd == "show":
        run = store.get_run(args.run_id)
        if run is None:
            _print({"error": "not found", "run_id": args.run_id})
            raise SystemExit(1)
        _print(run)
    else:
        _print({"runs": store.list_runs(limit=getattr(args, "limit", 10))})


def cmd_serve(args: argparse.Namespace) -> None:
    from quorum.server import main as serve_main
    serve_main(host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quorum", description="Multi-model consensus valuation")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    sub = parser.add_subparsers(dest="command")

    valuate = sub.add_parser("valuate", help="Value an item from photos and/or a name")
    valuate.add_argument("--image", action="append", help="Image path (repeatable)")
    valuate.add_argument("--name", help="Item name or seller description")
    valuate.add_argument("--category", help="Category hint")
    valuate.add_argument("--json", action="store_true", help="Print the full report with votes and stages")

    classify = sub.add_parser("classify", help="Classify an item name")
    classify.add_argument("--name", required=True)
    classify.add_argument("--hint")
    classify.add_argument("--ai-vote")

    providers = sub.add_parser("providers")
    providers_sub = providers.add_subparsers(dest="providers_cmd")
    providers_sub.add_parser("list")
    providers_sub.add_parser("status")

    sub.add_parser("health")

    runs = sub.add_parser("runs")
    runs_sub = runs.add_subparsers(dest="runs_cmd")
    runs_sub.add_parser("latest")
    list_cmd = runs_sub.add_parser("list")
    list_cmd.add_argument("--limit", type=int, default=10)
    show = runs_sub.add_parser("show")
    show.add_argument("run_id")

    serve = sub.add_parser("serve")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    return parser


COMMANDS = {
    "valuate": cmd_valuate,
    "classify": cmd_classify,
    "providers": cmd_providers,
    "health": cmd_health,
    "runs": cmd_runs,
    "serve": cmd_serve,
}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    level = args.log_level or get_config().log_level
    # stdout carries JSON output, so logs go to stderr
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT, stream=sys.stderr)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        raise SystemExit(1)
    try:
        handler(args)
    except QuorumError as exc:
        _print({"ok": False, "error": str(exc), "type": type(exc).__name__})
        raise SystemExit(1)


if __name__ == "__main__":
    main()
