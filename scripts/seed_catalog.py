from __future__ import annotations

import argparse
import asyncio
import sys

from postureguard.core.logging import configure_logging
from postureguard.persistence.db import SessionLocal
from postureguard.services.compliance.catalog import seed_catalog


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Load the built-in rules and compliance profiles")
    parser.add_argument("--dry-run", action="store_true", help="Roll back instead of committing")
    return parser


async def _run(dry_run: bool) -> int:
    async with SessionLocal() as session:
        counts = await seed_catalog(session)
        if dry_run:
            await session.rollback()
        else:
            await session.commit()
    for key, value in sorted(counts.items()):
        print(f"{key}={value}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_run(args.dry_run))
    except Exception as exc:  # noqa: BLE001 - surface failure for CI diagnostics.
        print(f"seed_catalog failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
