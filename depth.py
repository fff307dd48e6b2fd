"""
Minimum confirmation depth of ledger transactions.

Starting from a transaction, every keyed input is resolved to the
transactions that created each output of its ring; those transactions
form the next frontier. The depth is the number of such backward hops
needed until a frontier member carries a block-reward (gen) input.
"""

import sys
from dataclasses import dataclass

from ledger import (
    KeyedInput,
    TerminalInput,
    MissingTransaction,
    MissingOutput,
    MalformedBlock,
    OutputOwnerNotFound,
    AmbiguousOutputOwner,
    InvalidInputType,
    UnreachableTerminal,
)


@dataclass(frozen=True)
class DepthConfig:
    verbose: bool = False
    include_coinbase: bool = False
    # scan the whole block and refuse duplicate keys instead of taking the first match
    strict_owner: bool = False


def _progress(config: DepthConfig, msg: str):
    if config.verbose:
        print(msg, file=sys.stderr, flush=True)


def _has_key(tx, pubkey) -> bool:
    return any(out.pubkey == pubkey for out in tx.outputs)


def find_output_owner(reader, amount: int, index: int, strict: bool = False) -> str:
    """
    Return the txid of the transaction that created output (amount, index).

    The block-reward transaction of the output's block is checked first,
    then the regular transactions in block order. The first transaction
    holding the output's key wins unless `strict` is set, in which case
    every transaction is checked and more than one holder is an error.
    """
    loc = reader.resolve_output(amount, index)
    if loc is None:
        raise MissingOutput(amount, index)

    block = reader.get_block_by_height(loc.height)
    if block is None:
        raise MalformedBlock(loc.height, "missing from db")

    owners = []
    if _has_key(block.miner_tx, loc.pubkey):
        if not strict:
            return block.miner_tx.txid
        owners.append(block.miner_tx.txid)

    for block_txid in block.tx_hashes:
        tx = reader.get_transaction(block_txid)
        if tx is None:
            raise MissingTransaction(block_txid)
        if _has_key(tx, loc.pubkey):
            if not strict:
                return block_txid
            owners.append(block_txid)

    if not owners:
        raise OutputOwnerNotFound(amount, index, loc.height, loc.pubkey)
    if len(owners) > 1:
        raise AmbiguousOutputOwner(loc.height, loc.pubkey, owners)
    return owners[0]


def trace_depth(reader, start_txid: str, config: DepthConfig = None) -> int:
    """Return the minimum depth of `start_txid`; raises a DepthError on any ledger problem."""
    config = config or DepthConfig()
    depth = 0
    txids = {start_txid}
    expanded = set()
    owners = {}  # (amount, index) -> owning txid

    while True:
        _progress(config, f"[depth] Considering {len(txids)} transaction(s) at depth {depth}")

        new_txids = set()
        coinbase = False
        for txid in sorted(txids):
            tx = reader.get_transaction(txid)
            if tx is None:
                raise MissingTransaction(txid)
            expanded.add(txid)

            for vin in tx.inputs:
                if isinstance(vin, TerminalInput):
                    coinbase = True
                    break
                elif isinstance(vin, KeyedInput):
                    for index in vin.absolute_offsets():
                        key = (vin.amount, index)
                        if key not in owners:
                            owners[key] = find_output_owner(reader, vin.amount, index, config.strict_owner)
                        new_txids.add(owners[key])
                else:
                    raise InvalidInputType(txid, getattr(vin, 'kind', type(vin).__name__))

        if coinbase:
            return depth

        # A transaction expanded at a shallower depth cannot lead to a shallower terminal
        new_txids -= expanded
        if not new_txids:
            raise UnreachableTerminal(start_txid, depth)
        txids = new_txids
        depth += 1


def select_start_txids(reader, height: int, include_coinbase: bool = False):
    """Regular transactions of the block at `height`, then optionally its block-reward tx."""
    block = reader.get_block_by_height(height)
    if block is None:
        raise MalformedBlock(height, "missing from db")
    start_txids = list(block.tx_hashes)
    if include_coinbase:
        start_txids.append(block.miner_tx.txid)
    return start_txids


def trace_many(reader, start_txids, config: DepthConfig = None):
    """Trace each start txid in order; returns [(txid, depth), ...]."""
    config = config or DepthConfig()
    results = []
    for start_txid in start_txids:
        depth = trace_depth(reader, start_txid, config)
        _progress(config, f"[depth] Min depth for txid {start_txid}: {depth}")
        results.append((start_txid, depth))
    return results


def mean_depth(depths) -> float:
    depths = list(depths)
    if not depths:
        raise ValueError("mean of an empty depth list")
    return sum(depths) / float(len(depths))


def median_depth(depths):
    """Classic median: the middle value, or the mean of the two middle values."""
    values = sorted(depths)
    n = len(values)
    if n == 0:
        raise ValueError("median of an empty depth list")
    mid = n // 2
    if n % 2 == 1:
        return values[mid]
    return (values[mid - 1] + values[mid]) / 2.0


def format_report(results):
    """Human-readable result lines: one per txid, then the average and median."""
    depths = [d for _, d in results]
    lines = [f"Min depth for txid {txid}: {depth}" for txid, depth in results]
    lines.append(f"Average min depth for {len(depths)} transaction(s): {mean_depth(depths)}")
    lines.append(f"Median min depth for {len(depths)} transaction(s): {median_depth(depths)}")
    return lines
