#!/usr/bin/env python3
"""
Minimum depth query for ledger transactions.

Reads the SQLite ledger built by reindex.py and reports, for one txid or
for every transaction of a block, how many backward hops through the ring
members are needed before every path ends in a block reward.
"""

import re
import sys
import sqlite3
import argparse

from database import LedgerDB, default_database
from depth import DepthConfig, select_start_txids, trace_many, format_report
from ledger import DepthError

TXID_RE = re.compile(r'^[0-9a-fA-F]{64}$')


class _ArgumentParser(argparse.ArgumentParser):
    # every usage error exits with status 1
    def error(self, message):
        self.print_usage(sys.stderr)
        raise SystemExit(f"{self.prog}: error: {message}")


def build_parser():
    parser = _ArgumentParser(
        description="Get the minimum depth of ledger transactions from the SQLite ledger."
    )
    parser.add_argument(
        "--database",
        default=None,
        help="SQLite ledger file (default: DEPTH_DATABASE or a per-network blockchain.db).",
    )
    network = parser.add_mutually_exclusive_group()
    network.add_argument("--testnet", action="store_true", help="Use the testnet ledger.")
    network.add_argument("--stagenet", action="store_true", help="Use the stagenet ledger.")
    parser.add_argument("--txid", default=None, help="Get min depth for this txid.")
    parser.add_argument(
        "--height",
        type=int,
        default=None,
        help="Get min depth for all txes at this height (default: 0 when --txid is not given).",
    )
    parser.add_argument(
        "--include-coinbase",
        action="store_true",
        help="Include the block-reward transaction of --height in the average.",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail when an output key is found in more than one transaction of its block.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Report progress on stderr.")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.txid is not None and args.height is not None:
        raise SystemExit("txid and height cannot be given at the same time")
    if args.txid is not None and not TXID_RE.match(args.txid):
        raise SystemExit("Invalid txid")
    if args.height is not None and args.height < 0:
        raise SystemExit("Invalid height")

    network = 'testnet' if args.testnet else ('stagenet' if args.stagenet else 'mainnet')
    db_path = args.database or default_database(network)
    config = DepthConfig(verbose=args.verbose, include_coinbase=args.include_coinbase,
                         strict_owner=args.strict)

    if args.verbose:
        print(f"[init] Loading ledger from {db_path} ...", file=sys.stderr)
    try:
        db = LedgerDB.open(db_path)
    except sqlite3.Error as e:
        raise SystemExit(f"Error opening database: {e}")

    try:
        with db:
            if args.txid is not None:
                start_txids = [args.txid.lower()]
            else:
                start_txids = select_start_txids(db, args.height or 0, config.include_coinbase)

            if not start_txids:
                raise SystemExit("No transaction(s) to check")

            results = trace_many(db, start_txids, config)
    except DepthError as e:
        raise SystemExit(str(e))
    except sqlite3.Error as e:
        raise SystemExit(f"Ledger read error: {e}")

    for line in format_report(results):
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
