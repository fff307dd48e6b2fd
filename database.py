import sqlite3
import requests
import json
from dotenv import load_dotenv
import os
from pathlib import Path

# Reusable HTTP session for RPC calls
from requests.adapters import HTTPAdapter
from requests.auth import HTTPDigestAuth

from ledger import (
    Block,
    KeyedInput,
    Output,
    OutputLocation,
    TerminalInput,
    Transaction,
    UnknownInput,
    MalformedBlock,
)

_session = requests.Session()
_session.headers.update({'content-type': 'application/json', 'Connection': 'keep-alive'})
_session.mount('http://', HTTPAdapter(pool_connections=8, pool_maxsize=8, max_retries=0))
_session.mount('https://', HTTPAdapter(pool_connections=8, pool_maxsize=8, max_retries=0))


load_dotenv()  # This loads the variables from .env into the environment

NETWORK_PORTS = {'mainnet': 18081, 'testnet': 28081, 'stagenet': 38081}
NETWORK_DATABASES = {
    'mainnet': 'blockchain.db',
    'testnet': 'blockchain-testnet.db',
    'stagenet': 'blockchain-stagenet.db',
}

rpc_user = os.getenv("RPC_USER")
rpc_password = os.getenv("RPC_PASSWORD")
rpc_host = os.getenv("RPC_HOST", "127.0.0.1")
rpc_port = os.getenv("RPC_PORT")
rpc_prefix = os.getenv("RPC_PREFIX", "http")

COMMIT_INTERVAL = int(os.getenv("INDEX_COMMIT_INTERVAL", "100"))
TX_BATCH_CHUNK = int(os.getenv("TX_BATCH_CHUNK", "100"))
CONTINUE_REWIND = int(os.getenv("CONTINUE_REWIND", "10"))

DATABASE = os.getenv("DEPTH_DATABASE", NETWORK_DATABASES['mainnet'])


def default_database(network='mainnet'):
    """DEPTH_DATABASE wins; otherwise a per-network file name."""
    env = os.getenv("DEPTH_DATABASE")
    if env:
        return env
    return NETWORK_DATABASES.get(network, DATABASE)


# ----------- node RPC -----------

class RPCError(Exception):
    pass


def _rpc_base_url(network='mainnet'):
    port = rpc_port or NETWORK_PORTS.get(network, NETWORK_PORTS['mainnet'])
    return f"{rpc_prefix}://{rpc_host}:{port}"


def _rpc_auth():
    if rpc_user:
        return HTTPDigestAuth(rpc_user, rpc_password or "")
    return None


def rpc_request(method, params=None, network='mainnet'):
    payload = {
        "jsonrpc": "2.0",
        "id": "0",
        "method": method,
        "params": params or {}
    }
    try:
        _response = _session.post(
            f"{_rpc_base_url(network)}/json_rpc",
            data=json.dumps(payload),
            auth=_rpc_auth(),
            timeout=60,
        )
        _response.raise_for_status()
        body = _response.json()
    except (requests.exceptions.RequestException, ValueError) as e:
        raise RPCError(f"RPC call {method} failed: {e}") from e
    if body.get('error'):
        raise RPCError(f"RPC call {method} failed: {body['error']}")
    return body.get('result')


def rpc_other(path, payload, network='mainnet'):
    """POST to one of the node's plain JSON endpoints (e.g. /get_transactions)."""
    try:
        _response = _session.post(
            f"{_rpc_base_url(network)}/{path.lstrip('/')}",
            data=json.dumps(payload),
            auth=_rpc_auth(),
            timeout=120,
        )
        _response.raise_for_status()
        body = _response.json()
    except (requests.exceptions.RequestException, ValueError) as e:
        raise RPCError(f"RPC call {path} failed: {e}") from e
    status = body.get('status')
    if status is not None and status != 'OK':
        raise RPCError(f"RPC call {path} returned status {status}")
    return body


def get_block_count(network='mainnet'):
    result = rpc_request('get_block_count', network=network)
    return int(result['count'])


def get_block(height, network='mainnet'):
    """
    Fetch one block and return a dict:
      {'hash', 'height', 'prev_hash', 'timestamp', 'miner_tx_hash', 'miner_tx', 'tx_hashes'}
    'miner_tx' is the decoded block-reward transaction JSON.
    """
    result = rpc_request('get_block', {'height': int(height)}, network=network)
    if not result:
        raise RPCError(f"Empty get_block result for height {height}")
    header = result.get('block_header', {})
    try:
        block_json = json.loads(result['json'])
    except (KeyError, TypeError, ValueError) as e:
        raise RPCError(f"Block {height} came back without decodable json: {e}") from e
    tx_hashes = result.get('tx_hashes') or block_json.get('tx_hashes') or []
    return {
        'hash': header.get('hash'),
        'height': int(header.get('height', height)),
        'prev_hash': header.get('prev_hash') or block_json.get('prev_id', ''),
        'timestamp': int(header.get('timestamp') or block_json.get('timestamp') or 0),
        'miner_tx_hash': result.get('miner_tx_hash'),
        'miner_tx': block_json['miner_tx'],
        'tx_hashes': list(tx_hashes),
    }


def get_transactions(txids, network='mainnet', chunk=TX_BATCH_CHUNK):
    """
    Fetch decoded transactions in chunks to avoid overloading the node.
    Returns {txid: tx_json}; a hash the node does not know raises RPCError.
    """
    out = {}
    for i in range(0, len(txids), max(1, chunk)):
        part = txids[i:i + chunk]
        body = rpc_other('get_transactions',
                         {'txs_hashes': part, 'decode_as_json': True, 'prune': True},
                         network=network)
        missed = body.get('missed_tx') or []
        if missed:
            raise RPCError(f"Node does not know transaction(s): {', '.join(missed)}")
        for item in body.get('txs', []):
            out[item['tx_hash']] = json.loads(item['as_json'])
    return out


# ----------- schema -----------

def connect(db_path=DATABASE):
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def _tune_for_bulk(conn):
    conn.execute('PRAGMA journal_mode=WAL')
    conn.execute('PRAGMA synchronous=NORMAL')
    conn.execute('PRAGMA temp_store=MEMORY')
    conn.execute('PRAGMA cache_size=-20000')
    conn.execute('PRAGMA foreign_keys=OFF')
    conn.execute('PRAGMA busy_timeout=5000')


def _create_tables(c):
    c.execute('''
    CREATE TABLE IF NOT EXISTS blocks (
        block_hash TEXT PRIMARY KEY,
        block_height INTEGER NOT NULL,
        timestamp INTEGER NOT NULL,
        prev_hash TEXT,
        miner_txid TEXT NOT NULL
    )
    ''')
    # position 0 is the block-reward transaction, regular transactions follow in block order
    c.execute('''
    CREATE TABLE IF NOT EXISTS transactions (
        txid TEXT PRIMARY KEY,
        block_hash TEXT NOT NULL,
        block_height INTEGER NOT NULL,
        position INTEGER NOT NULL,
        version INTEGER NOT NULL,
        is_coinbase BOOLEAN NOT NULL,
        FOREIGN KEY (block_hash) REFERENCES blocks(block_hash)
    )
    ''')
    c.execute('''
    CREATE TABLE IF NOT EXISTS vin (
        txid TEXT NOT NULL,
        ind INTEGER NOT NULL,
        kind TEXT NOT NULL,
        gen_height INTEGER,
        amount INTEGER,
        key_offsets TEXT,
        FOREIGN KEY (txid) REFERENCES transactions(txid)
    )
    ''')
    c.execute('''
    CREATE TABLE IF NOT EXISTS vout (
        txid TEXT NOT NULL,
        ind INTEGER NOT NULL,
        amount INTEGER NOT NULL,
        amount_class INTEGER NOT NULL,
        global_index INTEGER NOT NULL,
        pubkey TEXT NOT NULL,
        block_hash TEXT NOT NULL,
        created_block_height INTEGER NOT NULL,
        FOREIGN KEY (txid) REFERENCES transactions(txid),
        FOREIGN KEY (block_hash) REFERENCES blocks(block_hash)
    )
    ''')


def reinitialize_tables(db_path=DATABASE):
    conn = sqlite3.connect(db_path, timeout=10)
    c = conn.cursor()

    for table in ['blocks', 'transactions', 'vin', 'vout']:
        c.execute(f"DROP TABLE IF EXISTS {table}")
        print(f"Table {table} dropped.")

    _create_tables(c)
    create_indices(conn)

    conn.commit()
    conn.close()
    print("All tables reinitialized.")


def create_indices(conn):
    c = conn.cursor()
    c.execute('CREATE UNIQUE INDEX IF NOT EXISTS idx_blocks_height ON blocks(block_height)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_tx_block           ON transactions(block_hash, position)')
    c.execute('CREATE UNIQUE INDEX IF NOT EXISTS idx_vin_txn     ON vin(txid, ind)')
    c.execute('CREATE UNIQUE INDEX IF NOT EXISTS idx_vout_txn    ON vout(txid, ind)')
    c.execute('CREATE UNIQUE INDEX IF NOT EXISTS idx_vout_global ON vout(amount_class, global_index)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_vout_blockhash     ON vout(block_hash)')
    c.close()


def ensure_tables_exist(conn):
    """
    Create the ledger tables if they are missing (non-destructive).
    This allows an incremental index to run on a fresh DB without a full reindex.
    """
    c = conn.cursor()
    try:
        _create_tables(c)
        create_indices(conn)
        conn.commit()
    finally:
        c.close()


def _purge_from_height(conn, start_height: int):
    """
    Delete all rows at or after a given block height so we can safely rebuild
    from that height without unique/duplicate conflicts.
    """
    c = conn.cursor()
    try:
        c.execute('''
            DELETE FROM vin
            WHERE txid IN (SELECT txid FROM transactions WHERE block_height >= ?)
        ''', (start_height,))
        c.execute('DELETE FROM vout WHERE created_block_height >= ?', (start_height,))
        c.execute('DELETE FROM transactions WHERE block_height >= ?', (start_height,))
        c.execute('DELETE FROM blocks WHERE block_height >= ?', (start_height,))
        conn.commit()
    finally:
        c.close()


# ----------- write path -----------

def vin_row(vin: dict):
    """
    Map one decoded input to (kind, gen_height, amount, key_offsets_json).
    Inputs other than 'gen' and 'key' are stored under their own kind and
    rejected when read back.
    """
    if 'gen' in vin:
        return 'gen', int(vin['gen']['height']), None, None
    if 'key' in vin:
        key = vin['key']
        return 'key', None, int(key.get('amount', 0)), json.dumps([int(o) for o in key['key_offsets']])
    kind = next(iter(vin), 'unknown')
    return kind, None, None, None


def vout_pubkey(vout: dict) -> str:
    target = vout.get('target', {})
    if 'key' in target:
        return target['key']
    if 'tagged_key' in target:
        return target['tagged_key']['key']
    raise ValueError(f"Unsupported output target: {sorted(target)}")


def amount_class(tx_json: dict, vout: dict) -> int:
    # RingCT (version 2+) outputs, block reward included, are all indexed under amount 0
    if int(tx_json.get('version', 1)) >= 2:
        return 0
    return int(vout.get('amount', 0))


def next_output_indices(conn):
    """Next free global index per amount class."""
    c = conn.cursor()
    c.execute('SELECT amount_class, MAX(global_index) FROM vout GROUP BY amount_class')
    counters = {int(amount): int(top) + 1 for amount, top in c.fetchall()}
    c.close()
    return counters


def replace_transaction_in_db(conn, txid, tx_json, block_hash, block_height, position, counters,
                              is_coinbase=False):
    """
    Insert one transaction with its inputs and outputs. `counters` maps amount
    class -> next global output index and is advanced in place.
    """
    c = conn.cursor()
    try:
        c.execute('''
            INSERT INTO transactions (txid, block_hash, block_height, position, version, is_coinbase)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (txid, block_hash, block_height, position, int(tx_json.get('version', 1)), int(is_coinbase)))

        for ind, vin in enumerate(tx_json.get('vin', [])):
            kind, gen_height, amount, offsets = vin_row(vin)
            c.execute('''
                INSERT INTO vin (txid, ind, kind, gen_height, amount, key_offsets)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (txid, ind, kind, gen_height, amount, offsets))

        for ind, vout in enumerate(tx_json.get('vout', [])):
            klass = amount_class(tx_json, vout)
            global_index = counters.get(klass, 0)
            counters[klass] = global_index + 1
            c.execute('''
                INSERT INTO vout (txid, ind, amount, amount_class, global_index, pubkey, block_hash,
                                  created_block_height)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (txid, ind, int(vout.get('amount', 0)), klass, global_index, vout_pubkey(vout),
                  block_hash, block_height))
    finally:
        c.close()


def replace_block_in_db(conn, block_info, txs, counters):
    """
    Store a block, its block-reward transaction and its regular transactions.
    `txs` maps txid -> decoded tx JSON for every hash in block_info['tx_hashes'].
    Outputs are numbered block-reward first, then in block order.
    """
    _block_hash = block_info['hash']
    _block_height = int(block_info['height'])
    _miner_txid = block_info['miner_tx_hash']

    c = conn.cursor()
    c.execute('REPLACE INTO blocks (block_hash, block_height, timestamp, prev_hash, miner_txid) '
              'VALUES (?, ?, ?, ?, ?)',
              (_block_hash, _block_height, int(block_info.get('timestamp') or 0),
               block_info.get('prev_hash'), _miner_txid))
    c.close()

    replace_transaction_in_db(conn, _miner_txid, block_info['miner_tx'], _block_hash, _block_height,
                              0, counters, is_coinbase=True)
    for position, txid in enumerate(block_info.get('tx_hashes', []), start=1):
        replace_transaction_in_db(conn, txid, txs[txid], _block_hash, _block_height, position, counters)


# ----------- indexing from the node -----------

def _last_saved_height(conn):
    c = conn.cursor()
    c.execute('SELECT MAX(block_height) FROM blocks')
    result = c.fetchone()
    c.close()
    return result[0] if result and result[0] is not None else None


def index_blocks(conn, start_h, end_h, network='mainnet'):
    """Fetch and store blocks start_h..end_h (inclusive), committing every COMMIT_INTERVAL blocks."""
    counters = next_output_indices(conn)

    if not conn.in_transaction:
        conn.execute('BEGIN IMMEDIATE')

    idx = 0
    for height in range(start_h, end_h + 1):
        block_info = get_block(height, network=network)
        txs = get_transactions(block_info['tx_hashes'], network=network) if block_info['tx_hashes'] else {}
        replace_block_in_db(conn, block_info, txs, counters)

        idx += 1
        if idx % COMMIT_INTERVAL == 0:
            conn.commit()
            conn.execute('BEGIN IMMEDIATE')
            print(f"[index] … up to block {height}", flush=True)

    conn.commit()
    return idx


def reindex_db(start_height=None, db_path=DATABASE, network='mainnet'):
    """
    Full reindex when start_height is None (drop & recreate tables).
    Partial reindex when start_height >= 1: purge data from that height and rebuild to tip.
    Returns True on success.
    """
    if start_height is None:
        reinitialize_tables(db_path)
        start_h = 0
    else:
        start_h = max(0, int(start_height))

    conn = sqlite3.connect(db_path, timeout=10)
    try:
        _tune_for_bulk(conn)
        ensure_tables_exist(conn)
        _purge_from_height(conn, start_h)

        current_block_height = get_block_count(network=network) - 1
        print(f"[index] Rebuilding from {start_h}, tip is {current_block_height}")
        if start_h > current_block_height:
            print("Start height is above current tip; nothing to do.")
            return True

        count = index_blocks(conn, start_h, current_block_height, network=network)
        print(f"[index] Stored {count} block(s).")
        return True
    except (RPCError, sqlite3.Error, KeyError, ValueError) as e:
        print(f"Failed reindex from {start_h}: {e}")
        conn.rollback()
        return False
    finally:
        conn.close()


def reindex_db_continue(rewind: int = CONTINUE_REWIND, db_path=DATABASE, network='mainnet'):
    """
    Resume indexing, but first rewind N blocks (default CONTINUE_REWIND=10) to
    avoid inconsistencies if the last run was interrupted. Returns True on success.
    """
    conn = sqlite3.connect(db_path, timeout=10)
    try:
        _tune_for_bulk(conn)
        ensure_tables_exist(conn)

        last_saved = _last_saved_height(conn)
        print(f"Last saved block height: {last_saved}")

        current_block_height = get_block_count(network=network) - 1
        print(f"Current block height: {current_block_height}")

        if last_saved is not None and current_block_height <= last_saved:
            print("No new blocks to add.")
            return True

        start_h = 0 if last_saved is None else max(0, last_saved - int(rewind))
        print(f"Continuing with rewind={rewind}: rebuilding from {start_h} to {current_block_height}.")
        _purge_from_height(conn, start_h)
        index_blocks(conn, start_h, current_block_height, network=network)
        return True
    except (RPCError, sqlite3.Error, KeyError, ValueError) as e:
        print(f"Failed to continue indexing: {e}")
        conn.rollback()
        return False
    finally:
        conn.close()


# ----------- read path -----------

class LedgerDB:
    """
    Read-only view of the SQLite ledger implementing the reader interface
    used by depth.py: get_transaction, get_block_by_height, resolve_output.
    Lookups that find nothing return None.
    """

    def __init__(self, conn):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, db_path=DATABASE):
        if not Path(db_path).is_file():
            raise sqlite3.OperationalError(f"unable to open database file {db_path}")
        conn = sqlite3.connect(db_path, timeout=10)
        try:
            conn.execute('PRAGMA query_only=ON')
            # fail early on a file that is not a ledger
            conn.execute('SELECT 1 FROM blocks LIMIT 1').fetchall()
        except sqlite3.Error:
            conn.close()
            raise
        return cls(conn)

    def close(self):
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @staticmethod
    def _decode_vin(row):
        kind = row['kind']
        if kind == 'gen':
            return TerminalInput(height=int(row['gen_height']))
        if kind == 'key':
            return KeyedInput(amount=int(row['amount']), key_offsets=tuple(json.loads(row['key_offsets'])))
        # the tracer rejects these only if a trace actually reaches the input
        return UnknownInput(kind=kind)

    def get_transaction(self, txid):
        c = self.conn.cursor()
        try:
            c.execute('SELECT txid, version FROM transactions WHERE txid = ?', (txid,))
            tx_row = c.fetchone()
            if tx_row is None:
                return None
            c.execute('SELECT kind, gen_height, amount, key_offsets FROM vin WHERE txid = ? ORDER BY ind',
                      (txid,))
            inputs = tuple(self._decode_vin(row) for row in c.fetchall())
            c.execute('SELECT amount, pubkey FROM vout WHERE txid = ? ORDER BY ind', (txid,))
            outputs = tuple(Output(amount=int(r['amount']), pubkey=r['pubkey']) for r in c.fetchall())
            return Transaction(txid=tx_row['txid'], inputs=inputs, outputs=outputs,
                               version=int(tx_row['version']))
        finally:
            c.close()

    def get_block_by_height(self, height):
        c = self.conn.cursor()
        try:
            c.execute('SELECT block_hash, block_height, timestamp, prev_hash, miner_txid '
                      'FROM blocks WHERE block_height = ?', (int(height),))
            row = c.fetchone()
            if row is None:
                return None
            c.execute('SELECT txid FROM transactions WHERE block_hash = ? AND is_coinbase = 0 ORDER BY position',
                      (row['block_hash'],))
            tx_hashes = tuple(r['txid'] for r in c.fetchall())
        finally:
            c.close()

        miner_tx = self.get_transaction(row['miner_txid'])
        if miner_tx is None:
            raise MalformedBlock(height, f"block-reward tx {row['miner_txid']} missing")
        return Block(block_hash=row['block_hash'], height=int(row['block_height']), miner_tx=miner_tx,
                     tx_hashes=tx_hashes, prev_hash=row['prev_hash'] or "", timestamp=int(row['timestamp']))

    def resolve_output(self, amount, index):
        c = self.conn.cursor()
        try:
            c.execute('SELECT created_block_height, pubkey FROM vout WHERE amount_class = ? AND global_index = ?',
                      (int(amount), int(index)))
            row = c.fetchone()
        finally:
            c.close()
        if row is None:
            return None
        return OutputLocation(height=int(row['created_block_height']), pubkey=row['pubkey'])

    def tip_height(self):
        return _last_saved_height(self.conn)
