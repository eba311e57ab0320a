#!/usr/bin/env python3
"""Verify the hash chain of the HIPAA audit ledger.

Exits non-zero when any chain is broken so the script can gate deployments
or run from cron.
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from clinicledger import audit
from clinicledger.db import session_scope
from clinicledger.observability import configure_logging


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--chain", help="Verify a single chain id (e.g. clinic:3 or global)")
    group.add_argument("--clinic", type=int, help="Verify the chain of one clinic")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL for this run")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    with session_scope() as session:
        if args.chain:
            results = [audit.verify_chain(session, args.chain)]
        elif args.clinic is not None:
            results = [audit.verify_chain(session, audit.chain_id_for(args.clinic))]
        else:
            results = audit.verify_all_chains(session)

    broken = 0
    for result in results:
        if result.valid:
            print(f"{result.chain_id}: ok ({result.checked} entries)")
        else:
            broken += 1
            print(f"{result.chain_id}: BROKEN at entry {result.first_invalid_id} ({result.reason})")
    if not results:
        print("No audit entries recorded.")
    return 1 if broken else 0


if __name__ == "__main__":
    sys.exit(main())
