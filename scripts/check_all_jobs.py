#!/usr/bin/env python3
"""Check every active job's apply URL and print the SQL that deactivates the dead ones."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--env-file", type=Path, default=None, help="Extra .env file to load before connecting.")
    parser.add_argument("--company", default=None, help="Only check jobs whose company name contains this text.")
    parser.add_argument("--batch-size", type=int, default=10)
    parser.add_argument("--mark-dead", action="store_true", help="Also flag dead jobs in Convex.")
    parser.add_argument("--json", dest="json_out", type=Path, default=None, help="Write the full report as JSON.")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    # Imported late so the env files above are applied before settings are read.
    from job_verify_application.services.job_store import get_job_store
    from job_verify_application.verification.offline import run_offline_check
    from job_verify_application.verification.orchestrator import VerifyOptions

    options = VerifyOptions.from_runtime_config(
        batch_size=args.batch_size,
        company=args.company,
        mark_dead=args.mark_dead,
    )
    report = await run_offline_check(options=options, store=get_job_store())
    if args.mark_dead:
        print(f"\nFlagged {report.summary.dead_marked} dead jobs in Convex.")
    if args.json_out:
        args.json_out.write_text(json.dumps(report.model_dump(by_alias=True, mode="json"), indent=2))
        print(f"Wrote report to {args.json_out}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    load_dotenv()
    if args.env_file:
        load_dotenv(args.env_file, override=True)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
