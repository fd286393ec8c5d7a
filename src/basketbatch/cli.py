from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from basketbatch.env import load_dotenv_if_present

Json = Dict[str, Any]

log = logging.getLogger("basketbatch.cli")


def _print(obj: Json) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _display_quote(q: Optional[Json]) -> Optional[Json]:
    if not q:
        return None
    from basketbatch.ledger.fixed_point import format_units

    return {
        "batch_id": q["batch_id"],
        "direction": q["direction"],
        "supplied": format_units(q["supplied_total"]),
        "expected_output": format_units(q["expected_output"]),
        "minimum_output": format_units(q["minimum_output"]),
        "slippage_bps": q["slippage_bps"],
    }


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="basketbatch", description="Batch mint/redeem engine (SQLite-backed)")
    ap.add_argument("--config", dest="config_path", default=os.environ.get("BASKETBATCH_CONFIG_PATH", ""))
    ap.add_argument("--db", dest="db_path", default=None, help="Overrides the configured db_path")

    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Current batches, timings and pending submissions")

    dep = sub.add_parser("deposit", help="Add funds to the open batch of a direction")
    dep.add_argument("--direction", required=True, choices=["mint", "redeem"])
    dep.add_argument("--account", required=True)
    dep.add_argument("--amount", required=True, help='Decimal amount in whole units, e.g. "1000"')

    proc = sub.add_parser("process", help="Freeze, price and submit the open batch")
    proc.add_argument("--direction", required=True, choices=["mint", "redeem"])
    proc.add_argument("--slippage-bps", dest="slippage_bps", type=int, default=None)
    proc.add_argument("--dry-run", dest="dry_run", action="store_true", help="Price only; nothing is frozen or submitted")

    conf = sub.add_parser("confirm", help="Report the realized output of a submitted settlement")
    conf.add_argument("--batch", dest="batch_id", required=True)
    conf.add_argument("--output", dest="output_total", required=True, help="Realized output in whole units")

    cl = sub.add_parser("claim", help="Claim an account's share of a settled batch")
    cl.add_argument("--batch", dest="batch_id", required=True)
    cl.add_argument("--account", required=True)

    bl = sub.add_parser("batches", help="Batches an account deposited into")
    bl.add_argument("--account", required=True)

    return ap.parse_args(argv)


def _run(args: argparse.Namespace) -> Json:
    from dataclasses import replace

    from basketbatch.ledger.fixed_point import format_units, parse_units
    from basketbatch.runtime.engine_boot import build_engine
    from basketbatch.runtime.engine_config import load_engine_config

    cfg = load_engine_config(config_path=str(args.config_path or "") or None)
    if args.db_path is not None:
        cfg = replace(cfg, db_path=str(args.db_path))
    engine = build_engine(cfg)

    if args.command == "status":
        return engine.status()

    if args.command == "deposit":
        batch = engine.deposit(args.direction, args.account, parse_units(args.amount))
        return {"ok": True, "batch": batch.to_json()}

    if args.command == "process":
        res = engine.process(args.direction, slippage_bps=args.slippage_bps, dry_run=bool(args.dry_run))
        out = {"ok": True, **res.to_json()}
        out["display"] = _display_quote(out.get("quote"))
        return out

    if args.command == "confirm":
        batch = engine.confirm(args.batch_id, parse_units(args.output_total))
        return {"ok": True, "batch": batch.to_json()}

    if args.command == "claim":
        amount = engine.claim(args.batch_id, args.account)
        return {"ok": True, "batch_id": args.batch_id, "amount": amount, "amount_display": format_units(amount)}

    if args.command == "batches":
        return {"ok": True, "account": args.account, "batches": [v.to_json() for v in engine.account_batches(args.account)]}

    raise ValueError(f"unknown command: {args.command!r}")


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv_if_present()

    from basketbatch.api.structured_logging import configure_structured_logging
    from basketbatch.runtime.errors import BatchError

    configure_structured_logging(os.environ.get("BASKETBATCH_LOG_LEVEL") or "WARNING")
    args = _parse_args(argv)

    try:
        _print(_run(args))
    except BatchError as e:
        _print({"ok": False, "error": e.to_json()})
        return 1
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
