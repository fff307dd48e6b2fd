"""Tests for the JSON depth API."""

import sqlite3

import pytest

import database
from app import app


@pytest.fixture
def client(ledger_db_path):
    app.config.update(TESTING=True, DATABASE=str(ledger_db_path))
    with app.test_client() as client:
        yield client


def test_status(client):
    body = client.get('/api/status').get_json()
    assert body == {'ok': True, 'tip_height': 3}


def test_depth_of_txid(client, chain):
    resp = client.get(f'/api/depth/{chain.tx(2)}')
    assert resp.status_code == 200
    assert resp.get_json() == {'ok': True, 'txid': chain.tx(2), 'depth': 2}


def test_invalid_txid(client):
    resp = client.get('/api/depth/xyz')
    assert resp.status_code == 400
    assert resp.get_json()['ok'] is False


def test_unknown_txid(client):
    resp = client.get(f'/api/depth/{"ef" * 32}')
    body = resp.get_json()
    assert resp.status_code == 404
    assert body['kind'] == 'MissingTransaction'


def test_block_depths(client, chain):
    body = client.get('/api/depth/block/3').get_json()
    assert body['ok'] is True
    assert body['include_coinbase'] is False
    assert body['transactions'] == [
        {'txid': chain.tx(3, 0), 'depth': 3},
        {'txid': chain.tx(3, 1), 'depth': 1},
    ]
    assert body['mean'] == 2.0
    assert body['median'] == 2.0


def test_block_depths_with_coinbase(client, chain):
    body = client.get('/api/depth/block/3?include_coinbase=1').get_json()
    assert [t['txid'] for t in body['transactions']][-1] == chain.miner(3)
    assert len(body['transactions']) == 3
    assert body['median'] == 1


def test_empty_block(client):
    resp = client.get('/api/depth/block/0')
    assert resp.status_code == 404


def test_inconsistent_ledger(client, chain, ledger_db_path):
    conn = database.connect(str(ledger_db_path))
    conn.execute('UPDATE vout SET created_block_height = 1 WHERE global_index = ?',
                 (chain.first_output[chain.miner(0)],))
    conn.commit()
    conn.close()

    resp = client.get(f'/api/depth/{chain.tx(1)}')
    assert resp.status_code == 422
    assert resp.get_json()['kind'] == 'OutputOwnerNotFound'


@pytest.mark.parametrize('path', ['/api/status', f'/api/depth/{"ab" * 32}', '/api/depth/block/3'])
def test_missing_database_is_unavailable(tmp_path, path):
    app.config.update(TESTING=True, DATABASE=str(tmp_path / 'absent.db'))
    with app.test_client() as client:
        resp = client.get(path)
    assert resp.status_code == 503
    body = resp.get_json()
    assert body['ok'] is False
    assert body['error'].startswith('ledger unavailable')


def test_database_without_ledger_tables_is_unavailable(tmp_path):
    path = tmp_path / 'empty.db'
    sqlite3.connect(str(path)).close()
    app.config.update(TESTING=True, DATABASE=str(path))
    with app.test_client() as client:
        resp = client.get('/api/depth/block/1')
    assert resp.status_code == 503
    assert resp.get_json()['ok'] is False
