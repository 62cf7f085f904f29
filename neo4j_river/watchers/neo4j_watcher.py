"""
Neo4j Source Watcher

Detects node changes by diffing the graph against the river's node ledger:
- Node not in the ledger -> CREATED
- Node whose content hash differs from the ledger -> UPDATED
- Ledger entry whose node no longer exists -> DELETED

When the river has a timestamp property (integer epoch milliseconds, as
written by Cypher's timestamp()), only nodes modified at or after the
checkpoint ordinal are fetched with their properties; node ids are still
listed in full to detect deletions.
"""

import logging
from typing import Dict, List, Optional, Tuple

from neo4j import AsyncGraphDatabase, RoutingControl
from neo4j.exceptions import (
    AuthError,
    ClientError,
    ConfigurationError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from ..errors import SourceRejected, SourceUnavailable
from .base import (
    ChangeRecord,
    ChangeType,
    Checkpoint,
    NodeSnapshot,
    SourceWatcher,
    compute_content_hash,
)

logger = logging.getLogger("neo4j_river.watchers.neo4j")


class Neo4jWatcher(SourceWatcher):
    """
    Polling watcher for a Neo4j database.

    Configuration (RiverConfig):
        source_uri: bolt/neo4j URI (required)
        source_username / source_password: credentials (optional)
        source_database: database name (optional, server default otherwise)
        label: only watch nodes with this label (optional)
        id_property: node property used as id (optional, elementId otherwise)
        timestamp_property: integer epoch-millisecond modification time (optional)
        batch_size: maximum change records per poll
    """

    def __init__(self, config, driver=None):
        super().__init__(config)

        if not config.source_uri:
            raise ValueError("Neo4jWatcher requires 'source_uri' in config")

        self.uri = config.source_uri
        self.database = config.source_database
        self.label = config.label
        self.id_property = config.id_property
        self.timestamp_property = config.timestamp_property
        self.batch_size = config.batch_size

        self.driver = driver
        self._owns_driver = driver is None

        # Statistics
        self.polls = 0
        self.errors_count = 0

        logger.info(f"Neo4jWatcher initialized - uri={self.uri}, label={self.label}, "
                    f"id_property={self.id_property or 'elementId'}, "
                    f"timestamp_property={self.timestamp_property}")

    async def start(self):
        """Create the driver (connections are opened lazily by the first poll)"""
        if self.driver is None:
            auth = None
            if self.config.source_username:
                auth = (self.config.source_username, self.config.source_password or "")
            try:
                self.driver = AsyncGraphDatabase.driver(self.uri, auth=auth)
            except ConfigurationError as e:
                raise SourceRejected(f"Invalid Neo4j configuration for {self.uri}: {e}") from e
            except ValueError as e:
                raise SourceRejected(f"Invalid Neo4j URI {self.uri}: {e}") from e
        self._running = True

    async def stop(self):
        """Close the driver if this watcher created it"""
        self._running = False
        if self.driver is not None and self._owns_driver:
            await self.driver.close()
            self.driver = None
        logger.info(f"Neo4j watcher stopped - polls={self.polls}, errors={self.errors_count}")

    # ------------------------------------------------------------------
    # Cypher
    # ------------------------------------------------------------------

    def _match_clause(self) -> str:
        if self.label:
            return f"MATCH (n:`{self.label}`)"
        return "MATCH (n)"

    def _id_expression(self) -> str:
        if self.id_property:
            return "toString(n[$id_property])"
        return "elementId(n)"

    def _conditions(self, with_timestamp: bool) -> List[str]:
        conditions = []
        if self.id_property:
            conditions.append("n[$id_property] IS NOT NULL")
        if with_timestamp:
            conditions.append("n[$timestamp_property] >= $since")
        return conditions

    def _build_query(self, with_properties: bool, since_ms: Optional[int] = None) -> str:
        with_timestamp = since_ms is not None
        parts = [self._match_clause()]

        conditions = self._conditions(with_timestamp)
        if conditions:
            parts.append("WHERE " + " AND ".join(conditions))

        returns = [f"{self._id_expression()} AS node_id"]
        if with_properties:
            returns.append("properties(n) AS props")
        if with_timestamp:
            returns.append("n[$timestamp_property] AS ts")
        parts.append("RETURN " + ", ".join(returns))

        if with_timestamp:
            parts.append("ORDER BY ts, node_id")
        elif with_properties:
            parts.append("ORDER BY node_id")
        return "\n".join(parts)

    def _parameters(self, since_ms: Optional[int] = None) -> Dict:
        params = {}
        if self.id_property:
            params["id_property"] = self.id_property
        if since_ms is not None:
            params["timestamp_property"] = self.timestamp_property
            params["since"] = since_ms
        return params

    async def _run(self, query: str, params: Dict) -> list:
        """Run a read query, translating driver errors into river errors"""
        if self.driver is None:
            await self.start()
        try:
            result = await self.driver.execute_query(
                query,
                params,
                database_=self.database,
                routing_=RoutingControl.READ,
            )
        except (ServiceUnavailable, SessionExpired, TransientError, OSError) as e:
            self.errors_count += 1
            raise SourceUnavailable(f"Neo4j at {self.uri} unavailable: {e}") from e
        except (AuthError, ConfigurationError, ClientError) as e:
            self.errors_count += 1
            raise SourceRejected(f"Neo4j at {self.uri} rejected query: {e}") from e
        except Neo4jError as e:
            # DatabaseError and other server-side failures
            self.errors_count += 1
            raise SourceUnavailable(f"Neo4j at {self.uri} failed: {e}") from e
        return result.records

    async def list_node_ids(self) -> List[str]:
        """Ids of all watched nodes"""
        records = await self._run(self._build_query(with_properties=False), self._parameters())
        return [record["node_id"] for record in records]

    async def fetch_nodes(self, since: Checkpoint) -> List[NodeSnapshot]:
        """Watched nodes with properties, in change order"""
        since_ms = None
        if self.timestamp_property:
            since_ms = since.ordinal // 1000

        records = await self._run(
            self._build_query(with_properties=True, since_ms=since_ms),
            self._parameters(since_ms),
        )

        snapshots = []
        for record in records:
            ordinal = 0
            if since_ms is not None and isinstance(record["ts"], int):
                ordinal = record["ts"] * 1000
            snapshots.append(NodeSnapshot(
                node_id=record["node_id"],
                properties=dict(record["props"]),
                ordinal=ordinal,
            ))
        return snapshots

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll(self, since: Checkpoint) -> Tuple[List[ChangeRecord], Checkpoint]:
        if self.state_manager is None or self.river_name is None:
            raise RuntimeError("Neo4jWatcher requires state_manager and river_name to be injected")

        self.polls += 1
        ledger = await self.state_manager.get_node_states(self.river_name)

        snapshots = await self.fetch_nodes(since)
        if self.timestamp_property:
            current_ids = set(await self.list_node_ids())
        else:
            current_ids = {snapshot.node_id for snapshot in snapshots}

        # (change_type, node_id, properties, ordinal, hash) in change order
        upserts = []
        for snapshot in snapshots:
            content_hash = compute_content_hash(snapshot.properties)
            state = ledger.get(snapshot.node_id)
            if state is None:
                change_type = ChangeType.CREATED
            elif state.content_hash != content_hash:
                change_type = ChangeType.UPDATED
            else:
                continue
            upserts.append((change_type, snapshot.node_id, snapshot.properties,
                            snapshot.ordinal, content_hash))

        deletions = [(ChangeType.DELETED, node_id, None, 0, "")
                     for node_id in sorted(set(ledger) - current_ids)]

        pending = upserts + deletions
        if len(pending) > self.batch_size:
            # Half of a full batch is reserved for pending deletions
            reserved = min(len(deletions), max(self.batch_size - len(upserts), (self.batch_size + 1) // 2))
            logger.debug(f"  {len(pending)} pending changes, returning {self.batch_size - reserved} "
                         f"create/update(s) and {reserved} deletion(s)")
            pending = upserts[:self.batch_size - reserved] + deletions[:reserved]

        records = []
        checkpoint = since
        for offset, (change_type, node_id, properties, ordinal, content_hash) in enumerate(pending, start=1):
            record = ChangeRecord(
                change_type=change_type,
                node_id=node_id,
                sequence=since.sequence + offset,
                properties=properties,
                ordinal=ordinal,
                content_hash=content_hash,
            )
            records.append(record)
            checkpoint = checkpoint.advance(record)

        if records:
            logger.info(f"Polled {len(records)} change(s) from {self.uri} for river {self.river_name}")
        return records, checkpoint
