"""Shared fixtures: synthetic ledgers built from node-style block JSON."""

import sys
import hashlib
from pathlib import Path

import pytest

# flat modules live in the project root
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import database  # noqa: E402
from ledger import (  # noqa: E402
    Block,
    KeyedInput,
    Output,
    OutputLocation,
    TerminalInput,
    Transaction,
    absolute_to_relative,
)

BLOCK_REWARD = 600000000000


def h(label):
    return hashlib.sha256(label.encode()).hexdigest()


class MemoryLedger:
    """Dict-backed reader with the same interface as database.LedgerDB."""

    def __init__(self):
        self.transactions = {}
        self.blocks = {}
        self.outputs = {}  # (amount, index) -> OutputLocation
        self.calls = 0

    def get_transaction(self, txid):
        self.calls += 1
        return self.transactions.get(txid)

    def get_block_by_height(self, height):
        self.calls += 1
        return self.blocks.get(height)

    def resolve_output(self, amount, index):
        self.calls += 1
        return self.outputs.get((amount, index))


def decode_tx(txid, tx):
    inputs = []
    for vin in tx['vin']:
        if 'gen' in vin:
            inputs.append(TerminalInput(vin['gen']['height']))
        else:
            inputs.append(KeyedInput(vin['key']['amount'], tuple(vin['key']['key_offsets'])))
    outputs = tuple(Output(v['amount'], database.vout_pubkey(v)) for v in tx['vout'])
    return Transaction(txid=txid, inputs=tuple(inputs), outputs=outputs, version=tx['version'])


class ChainBuilder:
    """
    Builds a chain of node-style blocks. Every transaction gets one output;
    a regular transaction is described by its rings, each ring being the
    list of earlier txids whose output it references.
    """

    def __init__(self):
        self.blocks = []
        self.txs = {}
        self.first_output = {}  # txid -> global index (amount class 0)
        self.locations = {}     # global index -> (height, pubkey)
        self._next_index = 0

    def _outputs(self, txid, height, amount=0):
        key = h(f"key-{txid}")
        self.first_output[txid] = self._next_index
        self.locations[self._next_index] = (height, key)
        self._next_index += 1
        return [{"amount": amount, "target": {"tagged_key": {"key": key, "view_tag": "5a"}}}]

    def add_block(self, txs=()):
        height = len(self.blocks)
        miner_txid = h(f"miner-{height}")
        self.txs[miner_txid] = {
            "version": 2,
            "unlock_time": height + 60,
            "vin": [{"gen": {"height": height}}],
            "vout": self._outputs(miner_txid, height, amount=BLOCK_REWARD),
        }
        tx_hashes = []
        for n, rings in enumerate(txs):
            txid = h(f"tx-{height}-{n}")
            vin = []
            for ring in rings:
                indices = sorted(self.first_output[t] for t in ring)
                vin.append({"key": {"amount": 0,
                                    "key_offsets": absolute_to_relative(indices),
                                    "k_image": h(f"ki-{txid}-{len(vin)}")}})
            self.txs[txid] = {"version": 2, "unlock_time": 0, "vin": vin,
                              "vout": self._outputs(txid, height)}
            tx_hashes.append(txid)

        block = {
            "hash": h(f"block-{height}"),
            "height": height,
            "prev_hash": self.blocks[-1]["hash"] if self.blocks else "0" * 64,
            "timestamp": 1397818193 + 120 * height,
            "miner_tx_hash": miner_txid,
            "miner_tx": self.txs[miner_txid],
            "tx_hashes": tx_hashes,
        }
        self.blocks.append(block)
        return block

    def miner(self, height):
        return self.blocks[height]["miner_tx_hash"]

    def tx(self, height, n=0):
        return self.blocks[height]["tx_hashes"][n]

    def to_memory(self):
        ledger = MemoryLedger()
        for txid, tx in self.txs.items():
            ledger.transactions[txid] = decode_tx(txid, tx)
        for b in self.blocks:
            ledger.blocks[b["height"]] = Block(
                block_hash=b["hash"],
                height=b["height"],
                miner_tx=ledger.transactions[b["miner_tx_hash"]],
                tx_hashes=tuple(b["tx_hashes"]),
                prev_hash=b["prev_hash"],
                timestamp=b["timestamp"],
            )
        for index, (height, key) in self.locations.items():
            ledger.outputs[(0, index)] = OutputLocation(height, key)
        return ledger

    def write_sqlite(self, db_path):
        conn = database.connect(str(db_path))
        try:
            database.ensure_tables_exist(conn)
            counters = database.next_output_indices(conn)
            for b in self.blocks:
                txs = {t: self.txs[t] for t in b["tx_hashes"]}
                database.replace_block_in_db(conn, b, txs, counters)
            conn.commit()
        finally:
            conn.close()
        return db_path


@pytest.fixture
def builder():
    return ChainBuilder()


@pytest.fixture
def chain(builder):
    """
    Four blocks:
      0: block reward only
      1: tx A spends block 0's reward                      -> depth 1
      2: tx B spends A                                     -> depth 2
      3: tx C spends B, tx D spends a ring {A, reward 2}   -> depths 3 and 1
    """
    builder.add_block()
    builder.add_block([[[builder.miner(0)]]])
    builder.add_block([[[builder.tx(1)]]])
    builder.add_block([
        [[builder.tx(2)]],
        [[builder.tx(1), builder.miner(2)]],
    ])
    return builder


@pytest.fixture
def memory_ledger(chain):
    return chain.to_memory()


@pytest.fixture
def ledger_db_path(chain, tmp_path):
    return chain.write_sqlite(tmp_path / "blockchain.db")
