"""
Shared fixtures: in-memory stand-ins for the Neo4j driver and the
Elasticsearch client, plus river/watcher/writer wiring around them.
"""

import re
from dataclasses import dataclass
from typing import Dict, List

import pytest
from elastic_transport import ApiResponseMeta, HttpHeaders, NodeConfig

from neo4j_river.engine import RiverSyncEngine
from neo4j_river.river_config import RiverConfig
from neo4j_river.state_manager import MemoryStateManager
from neo4j_river.watchers import Neo4jWatcher
from neo4j_river.writer import ElasticsearchIndexWriter


@dataclass
class FakeResult:
    records: List[Dict]


class FakeNeo4jDriver:
    """
    Answers the watcher's read queries from an in-memory node table.

    Understands the clauses the watcher generates: optional label match,
    elementId or id-property ids, timestamp filtering and ordering.
    """

    def __init__(self):
        self.nodes: Dict[str, tuple] = {}  # element id -> (labels, properties)
        self.queries = []
        self.errors = []  # raised by the next execute_query calls, in order
        self.closed = False
        self._next_id = 0

    def create_node(self, *labels, **properties) -> str:
        self._next_id += 1
        element_id = f"4:fake:{self._next_id:04d}"
        self.nodes[element_id] = (set(labels), dict(properties))
        return element_id

    def set_properties(self, element_id: str, **properties):
        self.nodes[element_id][1].update(properties)

    def delete_node(self, element_id: str):
        del self.nodes[element_id]

    def delete_where(self, **properties):
        for element_id, (_, props) in list(self.nodes.items()):
            if all(props.get(k) == v for k, v in properties.items()):
                del self.nodes[element_id]

    async def execute_query(self, query, parameters=None, database_=None, routing_=None):
        self.queries.append((query, parameters, database_))
        if self.errors:
            raise self.errors.pop(0)

        params = parameters or {}
        label = re.search(r"MATCH \(n:`([^`]+)`\)", query)

        records = []
        for element_id, (labels, props) in list(self.nodes.items()):
            if label and label.group(1) not in labels:
                continue

            if "$id_property" in query:
                value = props.get(params["id_property"])
                if value is None:
                    continue
                record = {"node_id": str(value)}
            else:
                record = {"node_id": element_id}

            if "$since" in query:
                ts = props.get(params["timestamp_property"])
                if ts is None or ts < params["since"]:
                    continue
                record["ts"] = ts

            if "properties(n)" in query:
                record["props"] = dict(props)
            records.append(record)

        if "ORDER BY ts" in query:
            records.sort(key=lambda r: (r["ts"], r["node_id"]))
        elif "ORDER BY node_id" in query:
            records.sort(key=lambda r: r["node_id"])
        return FakeResult(records)

    async def close(self):
        self.closed = True


class FakeIndices:
    def __init__(self):
        self.refreshed = []

    async def refresh(self, index):
        self.refreshed.append(index)


class FakeElasticsearch:
    """
    In-memory bulk/count endpoint.

    Set `errors` to make the next bulk calls raise, or `reject_from` to have
    every bulk item from that position on fail with a 503 item status.
    Set `hold` to an asyncio.Event to park bulk calls until it is set;
    `bulk_started` is set once a call is parked.
    """

    def __init__(self):
        self.indexes: Dict[str, Dict[str, Dict]] = {}
        self.indices = FakeIndices()
        self.bulk_calls = []
        self.errors = []
        self.reject_from = None
        self.hold = None
        self.bulk_started = None
        self.closed = False

    def documents(self, index: str) -> Dict[str, Dict]:
        return self.indexes.get(index, {})

    async def bulk(self, operations, refresh=None):
        self.bulk_calls.append((operations, refresh))
        if self.errors:
            raise self.errors.pop(0)
        if self.hold is not None:
            if self.bulk_started is not None:
                self.bulk_started.set()
            await self.hold.wait()

        items = []
        i = 0
        position = 0
        while i < len(operations):
            action, meta = next(iter(operations[i].items()))
            index = self.indexes.setdefault(meta["_index"], {})
            doc_id = meta["_id"]

            if self.reject_from is not None and position >= self.reject_from:
                items.append({action: {
                    "_id": doc_id,
                    "status": 503,
                    "error": {"type": "unavailable_shards_exception", "reason": "primary shard is not active"},
                }})
            elif action == "index":
                status = 200 if doc_id in index else 201
                index[doc_id] = dict(operations[i + 1])
                items.append({action: {"_id": doc_id, "status": status}})
            else:
                status = 200 if index.pop(doc_id, None) is not None else 404
                items.append({action: {"_id": doc_id, "status": status}})

            i += 2 if action == "index" else 1
            position += 1

        return {"errors": any(next(iter(item.values()))["status"] >= 300 for item in items), "items": items}

    async def count(self, index, query):
        filters = [next(iter(f["match_phrase"].items())) for f in query["bool"]["filter"]]
        docs = self.documents(index).values()
        return {"count": sum(1 for doc in docs if all(doc.get(k) == v for k, v in filters))}

    async def close(self):
        self.closed = True


def es_meta(status: int) -> ApiResponseMeta:
    """Response metadata for constructing Elasticsearch ApiError subclasses"""
    return ApiResponseMeta(
        status=status,
        http_version="1.1",
        headers=HttpHeaders(),
        duration=0.0,
        node=NodeConfig("http", "localhost", 9200),
    )


def make_river_config(**overrides) -> RiverConfig:
    fields = {
        "name": "test-river",
        "source_uri": "bolt://localhost:7687",
        "index_name": "testindex",
        "index_type": "musician",
        "interval_seconds": 0.01,
        "batch_size": 100,
        "backoff_initial_seconds": 0.01,
        "backoff_max_seconds": 0.04,
        "failure_log_threshold": 3,
    }
    fields.update(overrides)
    return RiverConfig(**fields)


@pytest.fixture
def fake_driver():
    return FakeNeo4jDriver()


@pytest.fixture
def fake_es():
    return FakeElasticsearch()


@pytest.fixture
def state_manager():
    return MemoryStateManager()


@pytest.fixture
def river_config():
    return make_river_config()


@pytest.fixture
def watcher(river_config, fake_driver, state_manager):
    watcher = Neo4jWatcher(river_config, driver=fake_driver)
    watcher.state_manager = state_manager
    watcher.river_name = river_config.name
    return watcher


@pytest.fixture
def writer(river_config, fake_es):
    return ElasticsearchIndexWriter(fake_es, river_config.index_name, river_config.index_type)


@pytest.fixture
def engine(river_config, watcher, writer, state_manager):
    return RiverSyncEngine(river_config, watcher, writer, state_manager)
