#!/usr/bin/env python3
"""
SqliteStore - persistent storage backend for the co-sign gateway.
------------------------------------------------------------------
- One sqlite file holds the authorization ledger, the reward-epoch
  readiness tables and the named key table.
- Connections are opened per call (WAL, autocommit) and closed right away,
  so the store is safe to use from worker threads.
- Multi-statement writes run inside BEGIN IMMEDIATE ... COMMIT.
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator

SCHEMA = """
CREATE TABLE IF NOT EXISTS authorization_records (
    id INTEGER PRIMARY KEY,
    wallet TEXT NOT NULL,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    expected_hash TEXT,
    message_signature TEXT,
    last_valid_block_height INTEGER,
    context TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS authorization_reward_links (
    record_id INTEGER NOT NULL REFERENCES authorization_records(id),
    reward_id INTEGER NOT NULL,
    PRIMARY KEY (record_id, reward_id)
);

CREATE TABLE IF NOT EXISTS reward_epochs (
    id INTEGER PRIMARY KEY,
    status TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reward_epoch_node_links (
    reward_epoch_id INTEGER NOT NULL REFERENCES reward_epochs(id),
    nfnode_id INTEGER NOT NULL,
    owner_payment_status TEXT NOT NULL DEFAULT 'pending',
    host_payment_status TEXT NOT NULL DEFAULT 'pending',
    PRIMARY KEY (reward_epoch_id, nfnode_id)
);

CREATE TABLE IF NOT EXISTS keys (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SqliteStore:
    def __init__(self, db_path: str):
        self._db_path = str(db_path)
        self._lock = threading.RLock()
        self._init_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._session() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # -----------------------------------------------------
    # Core schema
    # -----------------------------------------------------
    def _init_schema(self) -> None:
        os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        with self._session() as conn:
            conn.executescript(SCHEMA)
