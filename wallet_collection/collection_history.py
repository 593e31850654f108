"""
Collection History Database

SQLite log of sweep runs for reconciliation by the admin CLI.

Tables:
- sweep_runs: One row per batch sweep (timing and counts)
- collections: One row per wallet/asset result

Amounts are stored as decimal strings so totals stay exact.
"""

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .sweep_orchestrator import CollectionResult, CollectionSummary
from .units import format_amount


class CollectionHistoryDB:
    """
    SQLite database for collection history

    Features:
    - Sweep run logging
    - Per-wallet result tracking
    - Failed collection queries (manual reconciliation)
    - Statistics
    """

    def __init__(self, db_path: str = "collection_history.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database (":memory:" for tests)
        """
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"Collection history database initialized: {self.db_path}")

    def _initialize_db(self):
        """Initialize database and create tables"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        """Create database tables"""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sweep_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TIMESTAMP NOT NULL,
                finished_at TIMESTAMP,
                wallets INTEGER DEFAULT 0,
                succeeded INTEGER DEFAULT 0,
                skipped INTEGER DEFAULT 0,
                faults INTEGER DEFAULT 0
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS collections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER,
                user_id TEXT NOT NULL,
                wallet_address TEXT,
                asset TEXT NOT NULL,
                success BOOLEAN DEFAULT 0,
                tx_hash TEXT,
                amount TEXT,
                error_kind TEXT,
                error_message TEXT,
                gas_topped_up BOOLEAN DEFAULT 0,
                recorded_at TIMESTAMP NOT NULL,
                FOREIGN KEY (run_id) REFERENCES sweep_runs(id),
                CONSTRAINT valid_asset CHECK (asset IN ('token', 'native'))
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_collections_wallet ON collections(wallet_address)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_collections_user ON collections(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_collections_run ON collections(run_id)")

        self.conn.commit()
        logger.debug("Database tables created successfully")

    def record_result(self, result: CollectionResult, run_id: Optional[int] = None) -> bool:
        """
        Record a single collection result

        Args:
            result: Collection result
            run_id: Owning sweep run, if any

        Returns:
            Success status
        """
        try:
            self._insert_result(result, run_id)
            self.conn.commit()
            logger.debug(f"Collection recorded: {result.user_id}/{result.asset}")
            return True
        except sqlite3.Error as e:
            logger.error(f"✗ Error recording collection: {e}")
            self.conn.rollback()
            return False

    def _insert_result(self, result: CollectionResult, run_id: Optional[int]):
        recorded_at = result.completed_at or datetime.now(timezone.utc)
        self.conn.execute("""
            INSERT INTO collections (
                run_id, user_id, wallet_address, asset, success, tx_hash, amount,
                error_kind, error_message, gas_topped_up, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            run_id,
            result.user_id,
            result.wallet_address,
            result.asset,
            result.success,
            result.tx_hash,
            format_amount(result.amount) if result.amount is not None else None,
            result.error_kind,
            result.error_message,
            result.gas_topped_up,
            recorded_at.isoformat(),
        ))

    def record_summary(self, summary: CollectionSummary) -> Optional[int]:
        """
        Record a batch sweep and all of its results

        Args:
            summary: Collection summary

        Returns:
            Run id, or None on failure
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO sweep_runs (started_at, finished_at, wallets, succeeded, skipped, faults)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                summary.started_at.isoformat(),
                summary.finished_at.isoformat() if summary.finished_at else None,
                len({r.user_id for r in summary.results}),
                len(summary.succeeded),
                len(summary.skipped),
                len(summary.faults),
            ))
            run_id = cursor.lastrowid

            for result in summary.results:
                self._insert_result(result, run_id)

            self.conn.commit()
            logger.info(f"✓ Sweep run recorded: #{run_id} ({len(summary.results)} results)")
            return run_id

        except sqlite3.Error as e:
            logger.error(f"✗ Error recording sweep run: {e}")
            self.conn.rollback()
            return None

    def get_failed_collections(self) -> List[Dict]:
        """Faults needing reconciliation (skipped dust excluded)"""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT * FROM collections
            WHERE success = 0
              AND (error_kind IS NULL OR error_kind NOT IN ('InsufficientBalance', 'BelowMinimum'))
            ORDER BY recorded_at DESC
        """)
        return [dict(row) for row in cursor.fetchall()]

    def get_collections_for_wallet(self, wallet_address: str) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT * FROM collections
            WHERE lower(wallet_address) = lower(?)
            ORDER BY recorded_at DESC
        """, (wallet_address,))
        return [dict(row) for row in cursor.fetchall()]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get collection statistics

        Returns:
            Statistics dictionary
        """
        cursor = self.conn.cursor()

        cursor.execute("SELECT COUNT(*) FROM sweep_runs")
        total_runs = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM collections")
        total_collections = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM collections WHERE success = 1")
        successful = cursor.fetchone()[0]

        failed = len(self.get_failed_collections())

        # Exact per-asset totals
        totals: Dict[str, Decimal] = {}
        cursor.execute("SELECT asset, amount FROM collections WHERE success = 1 AND amount IS NOT NULL")
        for row in cursor.fetchall():
            totals[row['asset']] = totals.get(row['asset'], Decimal("0")) + Decimal(row['amount'])

        return {
            'total_runs': total_runs,
            'total_collections': total_collections,
            'successful_collections': successful,
            'failed_collections': failed,
            'skipped_collections': total_collections - successful - failed,
            'success_rate': (successful / total_collections * 100) if total_collections > 0 else 0,
            'total_collected': {asset: format_amount(amount) for asset, amount in totals.items()},
        }

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed")
