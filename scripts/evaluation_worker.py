from __future__ import annotations

from arq import run_worker

from postureguard.core.logging import configure_logging
from postureguard.workers.evaluation_worker import WorkerSettings


def main() -> None:
    # Run the arq worker that drains queued account evaluations.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
