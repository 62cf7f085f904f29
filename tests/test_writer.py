"""
Tests for the Elasticsearch index writer: bulk acknowledgement counting,
idempotence and error mapping.
"""

import pytest
from elasticsearch import ApiError, AuthenticationException, ConnectionError as ESConnectionError

from conftest import es_meta
from neo4j_river.errors import SinkRejected, SinkUnavailable
from neo4j_river.translator import TYPE_FIELD, DeletionMarker, IndexDocument


def _doc(doc_id, **fields):
    return IndexDocument(doc_id=doc_id, doc_type="musician", fields=fields)


async def test_apply_indexes_documents(writer, fake_es):
    acked = await writer.apply([_doc("1", name="chris"), _doc("2", name="ian")])

    assert acked == 2
    assert fake_es.documents("testindex") == {
        "1": {"name": "chris", TYPE_FIELD: "musician"},
        "2": {"name": "ian", TYPE_FIELD: "musician"},
    }


async def test_apply_empty_batch_makes_no_request(writer, fake_es):
    assert await writer.apply([]) == 0
    assert fake_es.bulk_calls == []


async def test_apply_builds_bulk_operations_in_order(writer, fake_es):
    await writer.apply([_doc("1", name="chris"), DeletionMarker("2")])

    operations, refresh = fake_es.bulk_calls[0]
    assert operations == [
        {"index": {"_index": "testindex", "_id": "1"}},
        {"name": "chris", TYPE_FIELD: "musician"},
        {"delete": {"_index": "testindex", "_id": "2"}},
    ]
    assert refresh == "false"


async def test_apply_is_idempotent(writer, fake_es):
    batch = [_doc("1", name="chris"), _doc("2", name="ian"), DeletionMarker("2")]

    assert await writer.apply(batch) == 3
    first = dict(fake_es.documents("testindex"))
    assert await writer.apply(batch) == 3

    assert fake_es.documents("testindex") == first == {"1": {"name": "chris", TYPE_FIELD: "musician"}}


async def test_delete_of_absent_document_is_acknowledged(writer):
    assert await writer.apply([DeletionMarker("missing")]) == 1
    assert writer.last_error is None


async def test_partial_failure_reports_leading_acknowledged(writer, fake_es):
    fake_es.reject_from = 2

    acked = await writer.apply([_doc("1", a=1), _doc("2", a=2), _doc("3", a=3), _doc("4", a=4)])

    assert acked == 2
    assert "unavailable_shards_exception" in writer.last_error


async def test_connection_error_is_sink_unavailable(writer, fake_es):
    fake_es.errors.append(ESConnectionError("connection refused"))

    with pytest.raises(SinkUnavailable):
        await writer.apply([_doc("1", a=1)])


async def test_server_error_is_sink_unavailable(writer, fake_es):
    fake_es.errors.append(ApiError("service unavailable", meta=es_meta(503), body={}))

    with pytest.raises(SinkUnavailable):
        await writer.apply([_doc("1", a=1)])


async def test_too_many_requests_is_sink_unavailable(writer, fake_es):
    fake_es.errors.append(ApiError("too many requests", meta=es_meta(429), body={}))

    with pytest.raises(SinkUnavailable):
        await writer.apply([_doc("1", a=1)])


async def test_authentication_failure_is_sink_rejected(writer, fake_es):
    fake_es.errors.append(AuthenticationException("unauthorized", meta=es_meta(401), body={}))

    with pytest.raises(SinkRejected) as exc_info:
        await writer.apply([_doc("1", a=1)])
    assert exc_info.value.fatal


async def test_count_filters_by_type_and_field(writer, fake_es):
    await writer.apply([_doc("1", name="chris"), _doc("2", name="ian")])
    fake_es.indexes["testindex"]["3"] = {"name": "chris", TYPE_FIELD: "other"}

    assert await writer.count("name", "chris") == 1
    assert await writer.count("name", "nobody") == 0


async def test_refresh_and_close(writer, fake_es):
    await writer.refresh()
    await writer.close()

    assert fake_es.indices.refreshed == ["testindex"]
    assert fake_es.closed
