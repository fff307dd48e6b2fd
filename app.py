from flask import Flask, request, jsonify
import re
import sqlite3

from database import DATABASE, LedgerDB
from depth import DepthConfig, trace_depth, select_start_txids, trace_many, mean_depth, median_depth
from ledger import DepthError, MissingTransaction, MissingOutput

app = Flask(__name__)
app.config.setdefault('DATABASE', DATABASE)

# record-not-found errors are 404s; everything else means the ledger is inconsistent
NOT_FOUND_KINDS = (MissingTransaction, MissingOutput)


def get_ledger():
    return LedgerDB.open(app.config['DATABASE'])


def _flag(name):
    return request.args.get(name, '0').strip().lower() in ('1', 'true', 'yes')


def _depth_error(e: DepthError):
    status = 404 if isinstance(e, NOT_FOUND_KINDS) else 422
    return jsonify({'ok': False, 'kind': e.kind, 'error': str(e)}), status


def _ledger_unavailable(e: sqlite3.Error):
    print(f"Warn: ledger database {app.config['DATABASE']} unavailable: {e}")
    return jsonify({'ok': False, 'error': f'ledger unavailable: {e}'}), 503


@app.route('/api/status')
def status_api():
    try:
        with get_ledger() as db:
            tip = db.tip_height()
    except sqlite3.Error as e:
        return _ledger_unavailable(e)
    return jsonify({'ok': True, 'tip_height': tip})


@app.route('/api/depth/<txid>')
def depth_api(txid):
    txid = txid.strip().lower()
    if not re.fullmatch(r'[0-9a-f]{64}', txid):
        return jsonify({'ok': False, 'error': 'invalid txid'}), 400

    config = DepthConfig(strict_owner=_flag('strict'))
    try:
        with get_ledger() as db:
            depth = trace_depth(db, txid, config)
    except DepthError as e:
        return _depth_error(e)
    except sqlite3.Error as e:
        return _ledger_unavailable(e)
    return jsonify({'ok': True, 'txid': txid, 'depth': depth})


@app.route('/api/depth/block/<int:height>')
def block_depth_api(height):
    config = DepthConfig(include_coinbase=_flag('include_coinbase'), strict_owner=_flag('strict'))
    try:
        with get_ledger() as db:
            start_txids = select_start_txids(db, height, config.include_coinbase)
            if not start_txids:
                return jsonify({'ok': False, 'error': 'no transaction(s) to check'}), 404
            results = trace_many(db, start_txids, config)
    except DepthError as e:
        return _depth_error(e)
    except sqlite3.Error as e:
        return _ledger_unavailable(e)

    depths = [d for _, d in results]
    return jsonify({
        'ok': True,
        'height': height,
        'include_coinbase': config.include_coinbase,
        'transactions': [{'txid': txid, 'depth': d} for txid, d in results],
        'mean': mean_depth(depths),
        'median': median_depth(depths),
    })


if __name__ == '__main__':
    app.run(debug=False)
