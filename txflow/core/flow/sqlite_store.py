"""SQLite-backed TransactionStore.

Uses ``aiosqlite`` in WAL mode. Each flow is stored as its JSON record
with ``user_id``, ``status`` and ``tx_type`` broken out into indexed columns.
"""

import json
import sqlite3
from pathlib import Path
from typing import List, Optional

import aiosqlite

from .models import TransactionFlow, TransactionStatistics, TransactionStatus
from .store import TransactionStore, FlowContribution, apply_contribution


class SQLiteTransactionStore(TransactionStore):
    """
    Durable flow store.

    Parameters
    ----------
    db_path:
        Filesystem path to the database file, or ``":memory:"``.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.db_path)
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.row_factory = sqlite3.Row
        await self._migrate()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _migrate(self) -> None:
        if self._conn is None:
            raise RuntimeError("Store not connected. Call connect() first.")
        await self._conn.executescript(
            """\
            CREATE TABLE IF NOT EXISTS transaction_flows (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                status TEXT NOT NULL,
                tx_type TEXT NOT NULL,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_flows_user ON transaction_flows(user_id);
            CREATE INDEX IF NOT EXISTS idx_flows_status ON transaction_flows(status);
            """
        )
        await self._conn.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Store not connected. Call connect() first.")
        return self._conn

    # ------------------------------------------------------------------
    # TransactionStore
    # ------------------------------------------------------------------

    async def save(self, flow: TransactionFlow) -> None:
        record = flow.to_dict()
        await self.conn.execute(
            """
            INSERT INTO transaction_flows (id, user_id, status, tx_type, record_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                user_id = excluded.user_id,
                status = excluded.status,
                tx_type = excluded.tx_type,
                record_json = excluded.record_json,
                updated_at = excluded.updated_at
            """,
            (
                flow.id,
                flow.user_id,
                flow.status.value,
                flow.request.type.value,
                json.dumps(record),
                record["createdAt"],
                record["updatedAt"],
            ),
        )
        await self.conn.commit()

    async def load(self, flow_id: str) -> Optional[TransactionFlow]:
        cursor = await self.conn.execute(
            "SELECT record_json FROM transaction_flows WHERE id = ?", (flow_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return TransactionFlow.from_dict(json.loads(row["record_json"]))

    async def update(self, flow: TransactionFlow) -> bool:
        cursor = await self.conn.execute(
            "SELECT 1 FROM transaction_flows WHERE id = ?", (flow.id,)
        )
        if await cursor.fetchone() is None:
            return False
        await self.save(flow)
        return True

    async def delete(self, flow_id: str) -> bool:
        cursor = await self.conn.execute("DELETE FROM transaction_flows WHERE id = ?", (flow_id,))
        await self.conn.commit()
        return cursor.rowcount > 0

    async def _fetch(self, where: str, params: tuple) -> List[TransactionFlow]:
        cursor = await self.conn.execute(
            f"SELECT record_json FROM transaction_flows WHERE {where} ORDER BY created_at",
            params,
        )
        rows = await cursor.fetchall()
        return [TransactionFlow.from_dict(json.loads(r["record_json"])) for r in rows]

    async def find_by_status(self, status: TransactionStatus) -> List[TransactionFlow]:
        return await self._fetch("status = ?", (status.value,))

    async def find_by_user(self, user_id: str) -> List[TransactionFlow]:
        return await self._fetch("user_id = ?", (user_id,))

    async def get_statistics(self) -> TransactionStatistics:
        stats = TransactionStatistics()
        for flow in await self._fetch("1 = 1", ()):
            apply_contribution(stats, FlowContribution.of(flow), 1)
        return stats
