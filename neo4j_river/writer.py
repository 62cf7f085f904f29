"""
Index Writer

Applies translated changes to the target search index. Writes are
idempotent by document id; the writer reports how many leading operations
of a batch were acknowledged so the poll loop can commit exactly that far.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from elasticsearch import (
    ApiError,
    AsyncElasticsearch,
    AuthenticationException,
    AuthorizationException,
    ConnectionError as ESConnectionError,
    ConnectionTimeout,
    NotFoundError,
    TransportError,
)

from .errors import SinkRejected, SinkUnavailable
from .translator import TYPE_FIELD, DeletionMarker, IndexDocument, IndexOperation

logger = logging.getLogger("neo4j_river.writer")


class IndexWriter(ABC):
    """Abstract base for index writers"""

    last_error: Optional[str] = None

    @abstractmethod
    async def apply(self, batch: Sequence[IndexOperation]) -> int:
        """
        Apply operations in order; return the number of leading operations
        the index acknowledged. Raises SinkUnavailable when the index cannot
        be reached and SinkRejected when it refuses the credentials.
        """
        pass

    @abstractmethod
    async def refresh(self):
        """Make all acknowledged writes visible to search"""
        pass

    @abstractmethod
    async def count(self, field: str, value) -> int:
        """Count documents of this river's type whose `field` matches `value`"""
        pass

    async def close(self):
        pass


class ElasticsearchIndexWriter(IndexWriter):
    """Index writer backed by the Elasticsearch bulk API"""

    def __init__(self, client: AsyncElasticsearch, index_name: str,
                 doc_type: str = "node", refresh: str = "false"):
        self.client = client
        self.index_name = index_name
        self.doc_type = doc_type
        self.refresh_policy = refresh
        self.last_error = None

    @classmethod
    def from_settings(cls, settings, river_config) -> 'ElasticsearchIndexWriter':
        """Create a writer with its own client for one river"""
        kwargs = {"request_timeout": settings.elasticsearch_request_timeout}
        if settings.elasticsearch_api_key:
            kwargs["api_key"] = settings.elasticsearch_api_key
        elif settings.elasticsearch_username:
            kwargs["basic_auth"] = (settings.elasticsearch_username, settings.elasticsearch_password or "")

        client = AsyncElasticsearch(settings.elasticsearch_host_list, **kwargs)
        return cls(
            client,
            index_name=river_config.index_name,
            doc_type=river_config.index_type,
            refresh=river_config.refresh,
        )

    def _build_operations(self, batch: Sequence[IndexOperation]) -> list:
        operations = []
        for op in batch:
            if isinstance(op, DeletionMarker):
                operations.append({"delete": {"_index": self.index_name, "_id": op.doc_id}})
            elif isinstance(op, IndexDocument):
                operations.append({"index": {"_index": self.index_name, "_id": op.doc_id}})
                operations.append(op.source())
            else:
                raise TypeError(f"Unknown index operation: {op!r}")
        return operations

    async def apply(self, batch: Sequence[IndexOperation]) -> int:
        self.last_error = None
        if not batch:
            return 0

        try:
            response = await self.client.bulk(
                operations=self._build_operations(batch),
                refresh=self.refresh_policy,
            )
        except (AuthenticationException, AuthorizationException) as e:
            raise SinkRejected(f"Index {self.index_name} rejected credentials: {e}") from e
        except (ESConnectionError, ConnectionTimeout, TransportError) as e:
            raise SinkUnavailable(f"Index {self.index_name} unreachable: {e}") from e
        except ApiError as e:
            if e.meta.status == 429 or e.meta.status >= 500:
                raise SinkUnavailable(f"Index {self.index_name} unavailable: {e}") from e
            raise

        items = response["items"]
        acked = 0
        for item in items[:len(batch)]:
            action, result = next(iter(item.items()))
            status = result.get("status", 500)
            if status < 300 or (action == "delete" and status == 404):
                acked += 1
                continue

            error = result.get("error") or {}
            self.last_error = f"{action} {result.get('_id')}: {error.get('type', status)} {error.get('reason', '')}".strip()
            logger.warning(f"  Bulk item failed after {acked} acknowledged: {self.last_error}")
            break

        if acked < len(batch) and self.last_error is None:
            self.last_error = f"bulk response covered {len(items)} of {len(batch)} operations"

        return acked

    async def refresh(self):
        try:
            await self.client.indices.refresh(index=self.index_name)
        except NotFoundError:
            logger.debug(f"  Index {self.index_name} does not exist yet, nothing to refresh")
        except (ESConnectionError, ConnectionTimeout, TransportError) as e:
            raise SinkUnavailable(f"Index {self.index_name} unreachable: {e}") from e

    async def count(self, field: str, value) -> int:
        query = {
            "bool": {
                "filter": [
                    {"match_phrase": {TYPE_FIELD: self.doc_type}},
                    {"match_phrase": {field: value}},
                ]
            }
        }
        try:
            response = await self.client.count(index=self.index_name, query=query)
        except NotFoundError:
            return 0
        except (ESConnectionError, ConnectionTimeout, TransportError) as e:
            raise SinkUnavailable(f"Index {self.index_name} unreachable: {e}") from e
        return response["count"]

    async def close(self):
        await self.client.close()
