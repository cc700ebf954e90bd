"""Command-line entry point for cron: run the auto-release sweep and reconciliation once.

Usage:
  taskpay-sweep                 # sweep, then reconcile
  taskpay-sweep --no-reconcile  # sweep only
  taskpay-sweep --limit 50
"""

import argparse
import asyncio
import json
import logging
import sys

from taskpay.database import async_session_factory, engine
from taskpay.services.auto_release import run_auto_release_sweep
from taskpay.services.reconciliation import reconcile_disbursements

logger = logging.getLogger("taskpay.cli")


async def run_once(limit: int | None, reconcile: bool) -> dict:
    try:
        async with async_session_factory() as db:
            sweep = await run_auto_release_sweep(db, limit=limit)
            output = {"sweep": sweep.to_dict()}
            if reconcile:
                output["reconciliation"] = (await reconcile_disbursements(db, limit=limit)).to_dict()
    finally:
        await engine.dispose()
    return output


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="taskpay-sweep", description=__doc__.splitlines()[0])
    parser.add_argument("--limit", type=int, default=None, help="max payments per run")
    parser.add_argument("--no-reconcile", action="store_true", help="skip disbursement retries")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    output = asyncio.run(run_once(args.limit, not args.no_reconcile))
    print(json.dumps(output, indent=2))
    return 1 if output["sweep"]["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
