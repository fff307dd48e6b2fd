"""
Ledger record types and trace errors.

Records are plain frozen dataclasses; an input is a TerminalInput (minted
by a block reward), a KeyedInput (references a ring of earlier outputs by
amount class and relative offsets) or an UnknownInput carrying a kind the
tracer cannot follow.
"""

from dataclasses import dataclass
from typing import List, Tuple, Union


@dataclass(frozen=True)
class TerminalInput:
    height: int


@dataclass(frozen=True)
class KeyedInput:
    amount: int
    key_offsets: Tuple[int, ...]

    def absolute_offsets(self) -> List[int]:
        return relative_to_absolute(self.key_offsets)


@dataclass(frozen=True)
class UnknownInput:
    """An input kind this tool does not trace (e.g. to_script); rejected when a trace reaches it."""
    kind: str


TxInput = Union[TerminalInput, KeyedInput, UnknownInput]


@dataclass(frozen=True)
class Output:
    amount: int
    pubkey: str


@dataclass(frozen=True)
class Transaction:
    txid: str
    inputs: Tuple[TxInput, ...] = ()
    outputs: Tuple[Output, ...] = ()
    version: int = 1

    @property
    def is_coinbase(self) -> bool:
        return bool(self.inputs) and isinstance(self.inputs[0], TerminalInput)


@dataclass(frozen=True)
class Block:
    block_hash: str
    height: int
    miner_tx: Transaction
    tx_hashes: Tuple[str, ...] = ()
    prev_hash: str = ""
    timestamp: int = 0


@dataclass(frozen=True)
class OutputLocation:
    """Where an (amount, global index) pair was created."""
    height: int
    pubkey: str


def relative_to_absolute(offsets):
    """
    Decode a ring's relative key offsets into absolute output indices.

    The first offset is absolute, every following one is the distance from
    the previous index, so the result is a running sum.
    """
    out = []
    total = 0
    for off in offsets:
        total += int(off)
        out.append(total)
    return out


def absolute_to_relative(indices):
    out = []
    prev = 0
    for i, idx in enumerate(sorted(indices)):
        out.append(idx - prev if i else idx)
        prev = idx
    return out


# ----------- errors -----------

class DepthError(Exception):
    """Base class for fatal trace errors; `kind` is what the CLI reports."""
    kind = "DepthError"

    def __str__(self):
        return f"{self.kind}: {self.args[0] if self.args else ''}"


class MissingTransaction(DepthError):
    kind = "MissingTransaction"

    def __init__(self, txid):
        super().__init__(f"txid {txid} not found in ledger")
        self.txid = txid


class MissingOutput(DepthError):
    kind = "MissingOutput"

    def __init__(self, amount, index):
        super().__init__(f"output (amount {amount}, index {index}) not found in ledger")
        self.amount = amount
        self.index = index


class MalformedBlock(DepthError):
    kind = "MalformedBlock"

    def __init__(self, height, reason="bad block from db"):
        super().__init__(f"block at height {height}: {reason}")
        self.height = height


class OutputOwnerNotFound(DepthError):
    kind = "OutputOwnerNotFound"

    def __init__(self, amount, index, height, pubkey):
        super().__init__(
            f"no transaction in block {height} owns output (amount {amount}, index {index}), key {pubkey}"
        )
        self.amount = amount
        self.index = index
        self.height = height
        self.pubkey = pubkey


class AmbiguousOutputOwner(DepthError):
    kind = "AmbiguousOutputOwner"

    def __init__(self, height, pubkey, txids):
        super().__init__(
            f"key {pubkey} appears in {len(txids)} transactions of block {height}: {', '.join(txids)}"
        )
        self.height = height
        self.pubkey = pubkey
        self.txids = list(txids)


class InvalidInputType(DepthError):
    kind = "InvalidInputType"

    def __init__(self, txid, input_type):
        super().__init__(f"bad vin type {input_type!r} in txid {txid}")
        self.txid = txid
        self.input_type = input_type


class UnreachableTerminal(DepthError):
    kind = "UnreachableTerminal"

    def __init__(self, txid, depth):
        super().__init__(f"trace from txid {txid} ran out of transactions at depth {depth}")
        self.txid = txid
        self.depth = depth
