#!/usr/bin/env python3
"""Raise every clinic's patient counter to its highest existing patient id.

Run once after importing patients so that newly allocated identifiers never
collide with imported ones.  Safe to re-run.
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from clinicledger.db import session_scope
from clinicledger.identifiers import backfill_counters
from clinicledger.observability import configure_logging


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL for this run",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    with session_scope() as session:
        synced = backfill_counters(session)
    if not synced:
        print("No clinics found; nothing to backfill.")
        return 0
    for clinic_id, value in sorted(synced.items()):
        print(f"clinic {clinic_id}: patient counter at {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
