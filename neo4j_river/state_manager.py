"""
State Manager

Tracks river synchronization state:
- Per-river checkpoint (monotonic sequence + source ordinal)
- Per-node ledger (content hash of the last applied node state)
- Atomic commit of ledger and checkpoint after the index acknowledges writes

PostgreSQL (asyncpg) is the durable store; MemoryStateManager keeps the
same state in process for tests and ephemeral runs.
"""

import asyncpg
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from .watchers.base import ChangeRecord, Checkpoint

logger = logging.getLogger("neo4j_river.state_manager")


@dataclass
class NodeState:
    """Ledger entry for a node that has been applied to the index"""
    river_name: str
    node_id: str
    content_hash: str
    ordinal: int = 0  # Timestamp property value in microseconds
    synced_at: Optional[datetime] = None


class BaseStateManager(ABC):
    """Interface shared by the state stores"""

    async def initialize(self):
        """Prepare the store"""
        pass

    async def close(self):
        """Release resources"""
        pass

    @abstractmethod
    async def get_checkpoint(self, river_name: str) -> Checkpoint:
        """Last committed checkpoint (zero checkpoint if never committed)"""
        pass

    @abstractmethod
    async def get_node_states(self, river_name: str) -> Dict[str, NodeState]:
        """All ledger entries for a river, keyed by node id"""
        pass

    @abstractmethod
    async def commit(self, river_name: str, checkpoint: Checkpoint,
                     records: Iterable[ChangeRecord]):
        """
        Record `records` as applied and move the checkpoint to `checkpoint`
        in one step. Raises ValueError if the checkpoint would regress.
        """
        pass

    @abstractmethod
    async def get_sync_stats(self, river_name: str) -> Dict:
        """Ledger size and checkpoint for a river"""
        pass

    @abstractmethod
    async def delete_river(self, river_name: str):
        """Drop the checkpoint and ledger of a removed river"""
        pass

    @staticmethod
    def _check_monotonic(river_name: str, current: Checkpoint, new: Checkpoint):
        if new.sequence < current.sequence or new.ordinal < current.ordinal:
            raise ValueError(
                f"Checkpoint for river {river_name} would regress: "
                f"{current.to_dict()} -> {new.to_dict()}"
            )


class MemoryStateManager(BaseStateManager):
    """In-process state store"""

    def __init__(self):
        self._checkpoints: Dict[str, Checkpoint] = {}
        self._ledgers: Dict[str, Dict[str, NodeState]] = {}

    async def get_checkpoint(self, river_name: str) -> Checkpoint:
        return self._checkpoints.get(river_name, Checkpoint())

    async def get_node_states(self, river_name: str) -> Dict[str, NodeState]:
        return dict(self._ledgers.get(river_name, {}))

    async def commit(self, river_name: str, checkpoint: Checkpoint,
                     records: Iterable[ChangeRecord]):
        current = await self.get_checkpoint(river_name)
        self._check_monotonic(river_name, current, checkpoint)

        # Apply to a copy so a failure leaves the ledger untouched
        ledger = dict(self._ledgers.get(river_name, {}))
        now = datetime.now(timezone.utc)
        for record in records:
            if record.is_deletion:
                ledger.pop(record.node_id, None)
            else:
                ledger[record.node_id] = NodeState(
                    river_name=river_name,
                    node_id=record.node_id,
                    content_hash=record.content_hash,
                    ordinal=record.ordinal,
                    synced_at=now,
                )

        self._ledgers[river_name] = ledger
        self._checkpoints[river_name] = checkpoint

    async def get_sync_stats(self, river_name: str) -> Dict:
        checkpoint = await self.get_checkpoint(river_name)
        return {
            "river_name": river_name,
            "tracked_nodes": len(self._ledgers.get(river_name, {})),
            **checkpoint.to_dict(),
        }

    async def delete_river(self, river_name: str):
        self._checkpoints.pop(river_name, None)
        self._ledgers.pop(river_name, None)


class StateManager(BaseStateManager):
    """Manages river synchronization state in PostgreSQL"""

    def __init__(self, postgres_url: str):
        self.postgres_url = postgres_url
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize connection pool and create schema"""
        self.pool = await asyncpg.create_pool(self.postgres_url)
        await self._create_schema()

    async def close(self):
        """Close connection pool"""
        if self.pool:
            await self.pool.close()

    async def _create_schema(self):
        """Create checkpoint and ledger tables if not exists"""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS river_checkpoint (
                    river_name TEXT PRIMARY KEY,
                    sequence BIGINT NOT NULL DEFAULT 0,
                    ordinal BIGINT NOT NULL DEFAULT 0,
                    committed_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS river_node_state (
                    river_name TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    ordinal BIGINT NOT NULL DEFAULT 0,
                    synced_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (river_name, node_id)
                )
            """)

    async def get_checkpoint(self, river_name: str) -> Checkpoint:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT sequence, ordinal FROM river_checkpoint WHERE river_name = $1",
                river_name
            )
            if not row:
                return Checkpoint()
            return Checkpoint(sequence=row['sequence'], ordinal=row['ordinal'])

    async def get_node_states(self, river_name: str) -> Dict[str, NodeState]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM river_node_state WHERE river_name = $1",
                river_name
            )

            states = {}
            for row in rows:
                states[row['node_id']] = NodeState(
                    river_name=row['river_name'],
                    node_id=row['node_id'],
                    content_hash=row['content_hash'],
                    ordinal=row['ordinal'],
                    synced_at=row['synced_at']
                )
            return states

    async def commit(self, river_name: str, checkpoint: Checkpoint,
                     records: Iterable[ChangeRecord]):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT sequence, ordinal FROM river_checkpoint WHERE river_name = $1 FOR UPDATE",
                    river_name
                )
                current = Checkpoint(row['sequence'], row['ordinal']) if row else Checkpoint()
                self._check_monotonic(river_name, current, checkpoint)

                for record in records:
                    if record.is_deletion:
                        await conn.execute(
                            "DELETE FROM river_node_state WHERE river_name = $1 AND node_id = $2",
                            river_name, record.node_id
                        )
                    else:
                        await conn.execute("""
                            INSERT INTO river_node_state
                            (river_name, node_id, content_hash, ordinal)
                            VALUES ($1, $2, $3, $4)
                            ON CONFLICT (river_name, node_id) DO UPDATE SET
                                content_hash = EXCLUDED.content_hash,
                                ordinal = EXCLUDED.ordinal,
                                synced_at = NOW()
                        """, river_name, record.node_id, record.content_hash, record.ordinal)

                await conn.execute("""
                    INSERT INTO river_checkpoint (river_name, sequence, ordinal, committed_at)
                    VALUES ($1, $2, $3, NOW())
                    ON CONFLICT (river_name) DO UPDATE SET
                        sequence = EXCLUDED.sequence,
                        ordinal = EXCLUDED.ordinal,
                        committed_at = NOW(),
                        updated_at = NOW()
                """, river_name, checkpoint.sequence, checkpoint.ordinal)

    async def get_sync_stats(self, river_name: str) -> Dict:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT
                    (SELECT COUNT(*) FROM river_node_state WHERE river_name = $1) AS tracked_nodes,
                    c.sequence,
                    c.ordinal,
                    c.committed_at
                FROM (SELECT 1) AS one
                LEFT JOIN river_checkpoint c ON c.river_name = $1
            """, river_name)

            stats = dict(row) if row else {}
            stats["river_name"] = river_name
            stats["sequence"] = stats.get("sequence") or 0
            stats["ordinal"] = stats.get("ordinal") or 0
            return stats

    async def delete_river(self, river_name: str):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM river_node_state WHERE river_name = $1", river_name)
                await conn.execute("DELETE FROM river_checkpoint WHERE river_name = $1", river_name)
        logger.info(f"Deleted checkpoint and ledger for river {river_name}")
