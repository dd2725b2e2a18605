"""SQLite optimization record store.

This module provides the OptimizationStore class: an append-only log of
confirmed reallocations plus the set of users the service tracks. Records
can be inserted and read, never updated or deleted (enforced by triggers in
schema.sql).
"""

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd

from src.storage.models import OptimizationRecord
from src.utils.exceptions import StorageError
from src.utils.logging import get_logger
from src.utils.units import normalize_address

logger = get_logger(__name__)


class OptimizationStore:
    """Persists optimization records in SQLite.

    One connection per thread; the store is safe to share between the
    scheduler thread and manual triggers.

    Attributes:
        db_path: Path to the SQLite database file.

    Example:
        >>> store = OptimizationStore("data/reallocator.db")
        >>> saved = store.save_optimization(record)
        >>> store.get_stats()["total_optimizations"]
        1
    """

    def __init__(self, db_path: str):
        """Initialize the store and create tables.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self.create_tables()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local database connection."""
        if not hasattr(self._local, "connection"):
            self._local.connection = sqlite3.connect(self.db_path)
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    def create_tables(self) -> None:
        """Create tables and triggers if they don't exist."""
        schema_path = Path(__file__).parent / "schema.sql"
        try:
            schema = schema_path.read_text(encoding="utf-8")
            conn = self._get_connection()
            conn.executescript(schema)
            conn.commit()
            logger.info("Optimization store initialized at %s", self.db_path)
        except (OSError, sqlite3.Error) as e:
            logger.error("Failed to create tables: %s", e)
            raise StorageError(f"Database initialization failed: {e}") from e

    def save_optimization(self, record: OptimizationRecord) -> OptimizationRecord:
        """Append a record.

        Returns:
            The record with ``record_id`` set

        Raises:
            StorageError: If the insert fails
        """
        insert_sql = """
            INSERT INTO optimizations
            (user_address, position_index, from_vault, to_vault, assets_reallocated,
             previous_apy, new_apy, tx_hash, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            record.user,
            record.position_index,
            record.from_vault,
            record.to_vault,
            str(record.assets_reallocated),
            record.previous_apy,
            record.new_apy,
            record.tx_hash,
            _to_utc(record.timestamp).isoformat(),
        )

        conn = self._get_connection()
        try:
            with conn:
                cursor = conn.execute(insert_sql, params)
                conn.execute(
                    "INSERT OR IGNORE INTO tracked_users (user_address) VALUES (?)",
                    (record.user,),
                )
            record_id = cursor.lastrowid
        except sqlite3.Error as e:
            logger.error("Failed to save optimization for %s: %s", record.user, e)
            raise StorageError(f"Failed to save optimization: {e}") from e

        logger.info(
            "Saved optimization %d for %s#%d (%s -> %s)",
            record_id,
            record.user,
            record.position_index,
            record.from_vault,
            record.to_vault,
        )
        return OptimizationRecord(
            user=record.user,
            position_index=record.position_index,
            from_vault=record.from_vault,
            to_vault=record.to_vault,
            assets_reallocated=record.assets_reallocated,
            previous_apy=record.previous_apy,
            new_apy=record.new_apy,
            tx_hash=record.tx_hash,
            timestamp=record.timestamp,
            record_id=record_id,
        )

    def get_user_optimizations(self, user: str, limit: int = 50) -> List[OptimizationRecord]:
        """Records for ``user``, newest first."""
        query = """
            SELECT * FROM optimizations
            WHERE user_address = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        """
        df = self._read(query, (normalize_address(user), int(limit)))
        return [_row_to_record(row) for row in df.to_dict("records")]

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate statistics over every record.

        Returns:
            Dict with total_optimizations, successful_optimizations (records
            with a transaction hash), success_rate, total_assets_reallocated
            (decimal string) and average_apy_improvement (percentage points)
        """
        df = self._read(
            "SELECT assets_reallocated, previous_apy, new_apy, tx_hash FROM optimizations", ()
        )

        if df.empty:
            return {
                "total_optimizations": 0,
                "successful_optimizations": 0,
                "success_rate": 0.0,
                "total_assets_reallocated": "0",
                "average_apy_improvement": 0.0,
            }

        total = len(df)
        successful = int(df["tx_hash"].notna().sum())
        # Summed as Python ints: uint256 values overflow int64
        total_assets = sum(int(value) for value in df["assets_reallocated"])
        improvement = float((df["new_apy"] - df["previous_apy"]).mean())

        return {
            "total_optimizations": total,
            "successful_optimizations": successful,
            "success_rate": successful / total,
            "total_assets_reallocated": str(total_assets),
            "average_apy_improvement": improvement,
        }

    def track_user(self, user: str) -> None:
        """Remember ``user`` as a position holder (idempotent)."""
        conn = self._get_connection()
        try:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO tracked_users (user_address) VALUES (?)",
                    (normalize_address(user),),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to track user: {e}") from e

    def get_tracked_users(self) -> List[str]:
        df = self._read("SELECT user_address FROM tracked_users ORDER BY first_seen, user_address", ())
        return df["user_address"].tolist() if not df.empty else []

    def _read(self, query: str, params: tuple) -> pd.DataFrame:
        conn = self._get_connection()
        try:
            return pd.read_sql_query(query, conn, params=params)
        except (sqlite3.Error, pd.errors.DatabaseError) as e:
            logger.error("Query failed: %s", e)
            raise StorageError(f"Failed to query records: {e}") from e

    def close(self):
        """Close the thread-local connection."""
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            del self._local.connection


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_record(row: Dict[str, Any]) -> OptimizationRecord:
    tx_hash = row.get("tx_hash")
    return OptimizationRecord(
        user=row["user_address"],
        position_index=int(row["position_index"]),
        from_vault=row["from_vault"],
        to_vault=row["to_vault"],
        assets_reallocated=int(row["assets_reallocated"]),
        previous_apy=float(row["previous_apy"]),
        new_apy=float(row["new_apy"]),
        tx_hash=tx_hash if isinstance(tx_hash, str) else None,
        timestamp=datetime.fromisoformat(row["timestamp"]),
        record_id=int(row["id"]),
    )
