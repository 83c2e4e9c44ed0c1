#!/usr/bin/env python3
"""Operator CLI: run the housekeeping sweep from cron, inspect the ledger."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.storefront.db.core import SessionLocal, engine, init_db  # noqa: E402
from backend.storefront.errors import CheckoutError  # noqa: E402
from backend.storefront.logging_config import configure_structlog  # noqa: E402
from backend.storefront.services import CheckoutServices, build_services  # noqa: E402
from backend.storefront.settings import settings  # noqa: E402
from backend.storefront.states import EventOutcome  # noqa: E402


def _jsonable(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


def _dump(payload: dict[str, Any]) -> None:
    print(json.dumps({k: _jsonable(v) for k, v in payload.items()}, ensure_ascii=False, indent=2))


async def _run(args: argparse.Namespace, services: CheckoutServices) -> int:
    if args.command == "sweep":
        report = await services.orchestrator.run_sweep()
        _dump(report.as_dict())
    elif args.command == "show":
        attempt = await services.ledger.get(args.attempt_id)
        _dump(asdict(attempt))
    elif args.command == "unapplied":
        for event in await services.ledger.list_unapplied(reason=args.reason, limit=args.limit):
            _dump(asdict(event))
    elif args.command == "confirm-invoice":
        confirmed = await services.orchestrator.confirm_manual_payment(
            args.attempt_id,
            EventOutcome(args.outcome),
            operator=args.operator,
            note=args.note,
        )
        _dump(
            {
                "attempt_id": confirmed.attempt.id,
                "status": confirmed.status,
                "result": confirmed.result,
            }
        )
    await services.dispatcher.drain()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Storefront checkout ledger tools.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sweep", help="Expire stale attempts and abandon stale invoices once")

    show = sub.add_parser("show", help="Print one checkout attempt")
    show.add_argument("attempt_id")

    unapplied = sub.add_parser("unapplied", help="List acknowledged-but-unapplied provider events")
    unapplied.add_argument("--reason", default=None, help="orphaned, amount_mismatch, ...")
    unapplied.add_argument("--limit", type=int, default=50)

    confirm = sub.add_parser("confirm-invoice", help="Record an operator decision on a PayPal invoice")
    confirm.add_argument("attempt_id")
    confirm.add_argument("--outcome", choices=["succeeded", "failed"], required=True)
    confirm.add_argument("--operator", required=True, help="Who confirmed the payment")
    confirm.add_argument("--note", default=None)
    return parser


async def _main(args: argparse.Namespace) -> int:
    await init_db(engine)
    services = build_services(settings, SessionLocal)
    try:
        return await _run(args, services)
    except CheckoutError as exc:
        print(f"error: {exc.kind}: {exc}", file=sys.stderr)
        return 2
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_structlog(json_logs=True, stream=sys.stderr)
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
