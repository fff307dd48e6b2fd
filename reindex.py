#!/usr/bin/env python3
import sys
import argparse

from database import reindex_db, reindex_db_continue, default_database, CONTINUE_REWIND


def main(argv=None):
    parser = argparse.ArgumentParser(description='Ledger indexer utilities (node JSON-RPC -> SQLite)')
    parser.add_argument('--reindex', action='store_true',
                        help='Full reindex (drops tables). Combine with --height to reindex from a given height without dropping earlier data.')
    parser.add_argument('--continue', dest='cont', action='store_true',
                        help='Continue indexing to tip, rewinding a few blocks first to be safe.')
    parser.add_argument('--height', type=int, default=None,
                        help='Start height for partial reindex (used with --reindex).')
    parser.add_argument('--rewind', type=int, default=None,
                        help='Override number of blocks to rewind for --continue (default CONTINUE_REWIND or 10).')
    parser.add_argument('--database', default=None,
                        help='SQLite ledger file (default: DEPTH_DATABASE or a per-network blockchain.db).')
    network = parser.add_mutually_exclusive_group()
    network.add_argument('--testnet', action='store_true', help='Index a testnet node.')
    network.add_argument('--stagenet', action='store_true', help='Index a stagenet node.')

    args = parser.parse_args(argv)
    net = 'testnet' if args.testnet else ('stagenet' if args.stagenet else 'mainnet')
    db_path = args.database or default_database(net)

    if args.cont:
        rw = args.rewind if args.rewind is not None else CONTINUE_REWIND
        ok = reindex_db_continue(rewind=rw, db_path=db_path, network=net)
    elif args.reindex:
        if args.height and args.height > 0:
            ok = reindex_db(start_height=args.height, db_path=db_path, network=net)
        else:
            ok = reindex_db(db_path=db_path, network=net)
    else:
        parser.print_help()
        return 1
    return 0 if ok else 1


if __name__ == '__main__':
    sys.exit(main())
