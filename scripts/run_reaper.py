from __future__ import annotations

import argparse
import asyncio
import sys

from certintake.core.logging import configure_logging
from certintake.services.ingest.reaper import reap_stuck_jobs


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fail ingestion jobs stuck in PROCESSING")
    parser.add_argument(
        "--timeout-seconds",
        type=int,
        default=None,
        help="Override REAPER_TIMEOUT_SECONDS for this run",
    )
    return parser


async def _run(timeout_s: int | None) -> int:
    report = await reap_stuck_jobs(timeout_s=timeout_s)
    print(f"jobs_failed={len(report.jobs_failed)}")
    print(f"certificates_failed={len(report.certificates_failed)}")
    print(f"skipped={len(report.skipped)}")
    print(f"errors={len(report.errors)}")
    return 1 if report.errors else 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args.timeout_seconds))
    except Exception as exc:  # noqa: BLE001 - surface reaper failures clearly
        print(f"run_reaper failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
