from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys

from pydantic import TypeAdapter

from postureguard.core.logging import configure_logging
from postureguard.persistence.db import SessionLocal
from postureguard.services.inventory import ObservedResource, record_inventory_sync


_RECORDS = TypeAdapter(list[ObservedResource])


def _build_parser() -> argparse.ArgumentParser:
    # Feed a collector's normalized JSON export into the snapshot pipeline.
    parser = argparse.ArgumentParser(description="Record an inventory sync from a JSON file")
    parser.add_argument("--account", required=True, help="Account id")
    parser.add_argument("--input", required=True, help="JSON array of normalized resource records")
    parser.add_argument("--resource-type", action="append", default=None, dest="resource_types")
    parser.add_argument("--no-evaluate", action="store_true", help="Skip the follow-up evaluation")
    return parser


async def _run(account_id: str, path: Path, resource_types: list[str] | None, evaluate: bool) -> int:
    records = _RECORDS.validate_python(json.loads(path.read_text(encoding="utf-8")))
    async with SessionLocal() as session:
        report = await record_inventory_sync(
            session,
            account_id,
            records,
            resource_types=resource_types,
            trigger_evaluation=evaluate,
        )
    print(json.dumps(report.as_dict(), indent=2, sort_keys=True))
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_run(args.account, Path(args.input), args.resource_types, not args.no_evaluate))
    except Exception as exc:  # noqa: BLE001 - surface failure for CI diagnostics.
        print(f"sync_inventory failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
