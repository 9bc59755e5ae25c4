from __future__ import annotations

import argparse
import asyncio
import json
import sys

from postureguard.core.logging import configure_logging
from postureguard.persistence.db import SessionLocal
from postureguard.services.compliance.orchestrator import TRIGGER_MANUAL, TRIGGERS, run_evaluation
from postureguard.services.compliance.queue import EvaluationJobPayload, enqueue_evaluation


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Evaluate one account's compliance rules")
    parser.add_argument("--account", required=True, help="Account id")
    parser.add_argument("--trigger", default=TRIGGER_MANUAL, choices=list(TRIGGERS))
    parser.add_argument("--wait", action="store_true", help="Wait for a run already in progress")
    parser.add_argument("--enqueue", action="store_true", help="Queue the run for the worker instead")
    return parser


async def _run(account_id: str, trigger: str, wait: bool, enqueue: bool) -> int:
    if enqueue:
        job_id = await enqueue_evaluation(EvaluationJobPayload(account_id=account_id, trigger=trigger))
        print(f"job_id={job_id}")
        return 0
    async with SessionLocal() as session:
        summary = await run_evaluation(session, account_id, trigger=trigger, wait=wait)
    print(json.dumps(summary.as_dict(), indent=2, sort_keys=True))
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_run(args.account, args.trigger, args.wait, args.enqueue))
    except Exception as exc:  # noqa: BLE001 - surface failure for CI diagnostics.
        print(f"run_evaluation failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
