"""
Tests for a single sync cycle: end-to-end propagation, checkpoint
boundaries, re-delivery and skipped records.
"""

import pytest
from elasticsearch import ConnectionError as ESConnectionError
from neo4j.exceptions import ServiceUnavailable

from neo4j_river.engine import RiverSyncEngine
from neo4j_river.errors import PartialWriteFailure, SinkUnavailable, SourceUnavailable
from neo4j_river.state_manager import MemoryStateManager
from neo4j_river.translator import TYPE_FIELD
from neo4j_river.watchers import Checkpoint, Neo4jWatcher
from neo4j_river.writer import ElasticsearchIndexWriter


class FlakyCommitStateManager(MemoryStateManager):
    """Fails the next `failures` commits, as if the process died before committing"""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def commit(self, river_name, checkpoint, records):
        if self.failures:
            self.failures -= 1
            raise ConnectionResetError("state store connection lost")
        await super().commit(river_name, checkpoint, records)


def _engine(river_config, driver, es, state_manager):
    watcher = Neo4jWatcher(river_config, driver=driver)
    watcher.state_manager = state_manager
    watcher.river_name = river_config.name
    writer = ElasticsearchIndexWriter(es, river_config.index_name, river_config.index_type)
    return RiverSyncEngine(river_config, watcher, writer, state_manager)


async def test_create_then_remove_node(engine, fake_driver):
    fake_driver.create_node(name="chris", band="coldplay")

    result = await engine.run_cycle()
    assert result.committed == 1
    assert await engine.writer.count("name", "chris") == 1

    fake_driver.delete_where(name="chris")
    await engine.run_cycle()
    assert await engine.writer.count("name", "chris") == 0


async def test_second_musician_is_counted_independently(engine, fake_driver):
    fake_driver.create_node(name="chris", band="coldplay")
    await engine.run_cycle()
    fake_driver.delete_where(name="chris")
    await engine.run_cycle()

    assert await engine.writer.count("name", "ian") == 0
    fake_driver.create_node(name="ian", band="jethro tull")
    await engine.run_cycle()
    assert await engine.writer.count("name", "ian") == 1

    fake_driver.delete_where(name="ian")
    await engine.run_cycle()
    assert await engine.writer.count("name", "ian") == 0


async def test_empty_poll_keeps_checkpoint(engine, state_manager):
    result = await engine.run_cycle()

    assert result.polled == 0
    assert result.checkpoint == Checkpoint()
    assert await state_manager.get_checkpoint(engine.river_name) == Checkpoint()


async def test_last_write_wins(engine, fake_driver, fake_es):
    node = fake_driver.create_node(name="chris", band="coldplay")
    await engine.run_cycle()

    fake_driver.set_properties(node, band="solo")
    await engine.run_cycle()
    assert fake_es.documents("testindex")[node] == {"name": "chris", "band": "solo", TYPE_FIELD: "musician"}

    fake_driver.delete_node(node)
    await engine.run_cycle()
    assert node not in fake_es.documents("testindex")


async def test_checkpoint_is_monotonic(engine, fake_driver):
    seen = []
    for i in range(4):
        fake_driver.create_node(name=f"n{i}")
        await engine.run_cycle()
        seen.append(engine.checkpoint.sequence)

    assert seen == sorted(seen)
    assert seen[-1] == 4


async def test_source_outage_commits_nothing(engine, fake_driver, state_manager):
    fake_driver.create_node(name="chris")
    fake_driver.errors.append(ServiceUnavailable("connection refused"))

    with pytest.raises(SourceUnavailable):
        await engine.run_cycle()

    assert engine.checkpoint == Checkpoint()
    assert await state_manager.get_node_states(engine.river_name) == {}


async def test_sink_outage_commits_nothing(engine, fake_driver, fake_es, state_manager):
    fake_driver.create_node(name="chris")
    fake_es.errors.append(ESConnectionError("connection refused"))

    with pytest.raises(SinkUnavailable):
        await engine.run_cycle()

    assert engine.checkpoint == Checkpoint()
    assert await state_manager.get_checkpoint(engine.river_name) == Checkpoint()

    # The whole batch is retried on the next cycle
    result = await engine.run_cycle()
    assert result.committed == 1
    assert await engine.writer.count("name", "chris") == 1


async def test_partial_write_commits_acknowledged_prefix(engine, fake_driver, fake_es, state_manager):
    for name in ("a", "b", "c"):
        fake_driver.create_node(name=name)
    fake_es.reject_from = 1

    with pytest.raises(PartialWriteFailure) as exc_info:
        await engine.run_cycle()

    assert exc_info.value.acked == 1
    assert exc_info.value.total == 3
    assert engine.checkpoint.sequence == 1
    assert await state_manager.get_checkpoint(engine.river_name) == Checkpoint(sequence=1)
    assert len(await state_manager.get_node_states(engine.river_name)) == 1

    fake_es.reject_from = None
    result = await engine.run_cycle()

    assert result.committed == 2
    assert engine.checkpoint.sequence == 3
    assert sorted(doc["name"] for doc in fake_es.documents("testindex").values()) == ["a", "b", "c"]


async def test_crash_before_commit_is_redelivered(river_config, fake_driver, fake_es):
    state_manager = FlakyCommitStateManager(failures=1)
    engine = _engine(river_config, fake_driver, fake_es, state_manager)
    node = fake_driver.create_node(name="chris", band="coldplay")

    with pytest.raises(ConnectionResetError):
        await engine.run_cycle()
    assert engine.checkpoint == Checkpoint()
    written = dict(fake_es.documents("testindex"))

    # A restarted engine resumes from the last committed checkpoint
    restarted = _engine(river_config, fake_driver, fake_es, state_manager)
    await restarted.load_checkpoint()
    result = await restarted.run_cycle()

    assert result.committed == 1
    assert fake_es.documents("testindex") == written
    assert list(written) == [node]
    assert restarted.checkpoint.sequence == 1


async def test_unsupported_record_is_skipped_and_committed(engine, fake_driver, fake_es, state_manager):
    bad = fake_driver.create_node(name="bad", score=float("nan"))
    good = fake_driver.create_node(name="good")

    result = await engine.run_cycle()

    assert result.skipped == [bad]
    assert result.committed == 2
    assert list(fake_es.documents("testindex")) == [good]
    assert bad in await state_manager.get_node_states(engine.river_name)

    # Not re-emitted until the node changes again
    result = await engine.run_cycle()
    assert result.polled == 0


async def test_skipped_record_before_failure_boundary_is_committed(engine, fake_driver, fake_es):
    fake_driver.create_node(name="bad", blob=b"\x00")
    fake_driver.create_node(name="first")
    fake_driver.create_node(name="second")
    fake_es.reject_from = 1

    with pytest.raises(PartialWriteFailure):
        await engine.run_cycle()

    assert engine.checkpoint.sequence == 2


async def test_batch_larger_than_poll_limit_drains_over_cycles(river_config, fake_driver, fake_es):
    config = river_config.model_copy(update={"batch_size": 2})
    engine = _engine(config, fake_driver, fake_es, MemoryStateManager())
    for i in range(5):
        fake_driver.create_node(name=f"n{i}")

    polled = [(await engine.run_cycle()).polled for _ in range(4)]

    assert polled == [2, 2, 1, 0]
    assert len(fake_es.documents("testindex")) == 5
