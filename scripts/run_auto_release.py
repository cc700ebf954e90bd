#!/usr/bin/env python3
"""Cron wrapper for the auto-release sweep.

Run:
  python scripts/run_auto_release.py [--limit N] [--no-reconcile]

Equivalent to the installed ``taskpay-sweep`` command. For deployments that
only allow HTTP triggers, call ``POST /internal/auto-release/run`` with the
``X-Service-Key`` header instead.
"""

import sys

from taskpay.cli import main

if __name__ == "__main__":
    sys.exit(main())
