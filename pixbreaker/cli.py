"""Command line entry point that runs the harness and writes a JSON report."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from .harness import Harness, HarnessConfig
from .http_target import HTTPTarget
from .memory_target import MemoryTarget, MemoryTargetConfig
from .types import Target


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pixbreaker", description="Attack a payment target and report invariant breaks."
    )
    parser.add_argument("--mode", default="memory", help="memory|http")
    parser.add_argument("--base-url", default="", help="HTTP target base URL")
    parser.add_argument("--out", default="report.json", help="output report path")
    parser.add_argument("--concurrency", type=int, default=100,
                        help="number of concurrent create requests")
    parser.add_argument("--replays", type=int, default=25,
                        help="number of webhook replay rounds")
    parser.add_argument("--seed", type=int, default=None, help="random seed")
    parser.add_argument("--merchant-id", default="merchant-001", help="merchant id")
    parser.add_argument("--idempotency-key", default="idem-001", help="idempotency key")
    parser.add_argument("--amount-cents", type=int, default=1234,
                        help="payment amount in cents")
    parser.add_argument("--webhook-duplicates", type=int, default=10,
                        help="duplicate webhook deliveries per round")
    parser.add_argument("--demo-bugs", action="store_true",
                        help="enable fault injection in memory target")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the harness; return 0 on success, 1 on an unsafe verdict or write error, 2 on bad usage."""
    args = _parser().parse_args(argv)
    seed = args.seed if args.seed is not None else time.time_ns()

    target: Target
    if args.mode == "memory":
        target = MemoryTarget(MemoryTargetConfig(demo_bugs=args.demo_bugs, seed=seed))
    elif args.mode == "http":
        if not args.base_url:
            print("base-url is required in http mode", file=sys.stderr)
            return 2
        target = HTTPTarget(args.base_url)
    else:
        print(f"invalid mode: {args.mode}", file=sys.stderr)
        return 2

    harness = Harness(target, HarnessConfig(
        seed=seed,
        concurrency=args.concurrency,
        replays=args.replays,
        webhook_duplicates=args.webhook_duplicates,
        merchant_id=args.merchant_id,
        idempotency_key=args.idempotency_key,
        amount_cents=args.amount_cents,
    ))
    report = harness.run()

    data = json.dumps(report.to_dict(), indent=2)
    try:
        Path(args.out).write_text(data, encoding="utf-8")
    except OSError as exc:
        print(f"write report: {exc}", file=sys.stderr)
        return 1

    print(f"report written to {args.out}")
    if report.final_verdict.status in ("UNSAFE", "BROKEN"):
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())