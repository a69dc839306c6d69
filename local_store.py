"""
Local persistent cache
SQLite store of seen transfers and annotation events; every write is an idempotent upsert
"""

import json
import logging
import sqlite3
import threading
from typing import Any, Dict, Iterable, List, Optional

from config import config
from models import Token, Transaction

logger = logging.getLogger(__name__)


class LocalCache:
    """SQLite store shared across sessions behind one lock"""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize database"""
        self.db_path = db_path or config.DB_PATH
        self.conn: Optional[sqlite3.Connection] = None
        self.lock = threading.RLock()
        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema"""
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            cursor = self.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    chain TEXT NOT NULL,
                    tx_hash TEXT NOT NULL,
                    log_index INTEGER NOT NULL DEFAULT -1,
                    tx_index INTEGER NOT NULL DEFAULT 0,
                    block_number INTEGER NOT NULL,
                    timestamp INTEGER,
                    from_address TEXT NOT NULL,
                    to_address TEXT NOT NULL,
                    value TEXT NOT NULL,
                    token_address TEXT NOT NULL,
                    token TEXT NOT NULL,
                    PRIMARY KEY (chain, tx_hash, log_index)
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_from ON transactions(chain, from_address)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_to ON transactions(chain, to_address)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_block ON transactions(chain, block_number)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_token ON transactions(chain, token_address)")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS nostr_events (
                    event_id TEXT PRIMARY KEY,
                    uri TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    event TEXT NOT NULL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_nostr_uri ON nostr_events(uri)")

            self.conn.commit()
            logger.info("Local cache initialized successfully")
        except sqlite3.Error as e:
            logger.error(f"Local cache initialization error: {e}")
            raise

    # ==================== TRANSACTIONS ====================

    def bulk_upsert_transactions(self, transactions: Iterable[Transaction], chain: str) -> int:
        """Insert transfers not yet stored; returns how many were new"""
        rows = [
            (
                chain.lower(),
                tx.tx_hash.lower(),
                tx.log_index if tx.log_index is not None else -1,
                tx.tx_index,
                tx.block_number,
                tx.timestamp,
                tx.from_address,
                tx.to_address,
                tx.value,
                tx.token.address.lower(),
                json.dumps(tx.token.to_dict()),
            )
            for tx in transactions
        ]
        with self.lock:
            before = self.conn.total_changes
            self.conn.executemany("""
                INSERT OR IGNORE INTO transactions (
                    chain, tx_hash, log_index, tx_index, block_number, timestamp,
                    from_address, to_address, value, token_address, token
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)
            self.conn.commit()
            return self.conn.total_changes - before

    def _select(self, where: str, params: tuple) -> List[Transaction]:
        with self.lock:
            cursor = self.conn.execute(
                f"SELECT * FROM transactions WHERE {where} "
                f"ORDER BY block_number DESC, tx_index DESC, log_index DESC",
                params,
            )
            return [self._row_to_transaction(row) for row in cursor.fetchall()]

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            tx_hash=row["tx_hash"],
            block_number=row["block_number"],
            tx_index=row["tx_index"],
            log_index=row["log_index"] if row["log_index"] >= 0 else None,
            timestamp=row["timestamp"],
            from_address=row["from_address"],
            to_address=row["to_address"],
            value=row["value"],
            token=Token.from_dict(json.loads(row["token"])),
        )

    def get_transactions_by_address(self, chain: str, address: str) -> List[Transaction]:
        """Transfers into or out of address, newest first"""
        return self._select(
            "chain = ? AND (lower(from_address) = ? OR lower(to_address) = ?)",
            (chain.lower(), address.lower(), address.lower()),
        )

    def get_transactions_by_block_range(self, chain: str, from_block: int, to_block: int) -> List[Transaction]:
        return self._select(
            "chain = ? AND block_number BETWEEN ? AND ?", (chain.lower(), from_block, to_block)
        )

    def get_transactions_by_time_range(
        self, chain: str, address: str, start: int, end: int
    ) -> List[Transaction]:
        return self._select(
            "chain = ? AND (lower(from_address) = ? OR lower(to_address) = ?) AND timestamp BETWEEN ? AND ?",
            (chain.lower(), address.lower(), address.lower(), start, end),
        )

    def get_transactions_by_token(self, chain: str, token_address: str) -> List[Transaction]:
        return self._select("chain = ? AND token_address = ?", (chain.lower(), token_address.lower()))

    def get_latest_block_number(self, chain: str) -> Optional[int]:
        with self.lock:
            row = self.conn.execute(
                "SELECT MAX(block_number) FROM transactions WHERE chain = ?", (chain.lower(),)
            ).fetchone()
            return row[0] if row else None

    # ==================== ANNOTATIONS ====================

    def add_nostr_event(self, uri: str, event: Dict[str, Any]) -> bool:
        """Store an annotation event once per event id"""
        with self.lock:
            cursor = self.conn.execute("""
                INSERT OR IGNORE INTO nostr_events (event_id, uri, created_at, event)
                VALUES (?, ?, ?, ?)
            """, (event["id"], uri.lower(), int(event.get("created_at", 0)), json.dumps(event)))
            self.conn.commit()
            return cursor.rowcount > 0

    def get_nostr_events_by_uris(self, uris: Iterable[str]) -> List[Dict[str, Any]]:
        """Stored events for the URIs, newest first"""
        uris = [uri.lower() for uri in uris]
        if not uris:
            return []
        placeholders = ",".join("?" for _ in uris)
        with self.lock:
            cursor = self.conn.execute(
                f"SELECT event FROM nostr_events WHERE uri IN ({placeholders}) ORDER BY created_at DESC",
                tuple(uris),
            )
            return [json.loads(row["event"]) for row in cursor.fetchall()]

    def close(self) -> None:
        with self.lock:
            if self.conn:
                self.conn.close()
                self.conn = None
