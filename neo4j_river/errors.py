"""
River Errors

Failure taxonomy shared by the watcher, translator, writer and poll loop.
Each error class states whether the poll loop may retry after it.
"""

from typing import Optional


class RiverError(Exception):
    """Base class for all river failures"""
    retryable = False
    fatal = False


class RiverConfigError(RiverError):
    """Invalid or duplicate river configuration document"""
    fatal = True


class SourceUnavailable(RiverError):
    """Transient failure talking to the graph store"""
    retryable = True


class SourceRejected(RiverError):
    """Permanent source failure (authentication, bad query, bad config)"""
    fatal = True


class UnsupportedValue(RiverError):
    """A node property cannot be represented in the index (per-record, skipped)"""

    def __init__(self, node_id: str, key, value):
        self.node_id = node_id
        self.key = key
        self.value = value
        super().__init__(
            f"Unsupported value for property {key!r} on node {node_id}: "
            f"{type(value).__name__}"
        )


class SinkUnavailable(RiverError):
    """Transient failure talking to the search index"""
    retryable = True


class SinkRejected(RiverError):
    """Permanent index failure (authentication or authorization)"""
    fatal = True


class PartialWriteFailure(RiverError):
    """Only a leading part of a batch was acknowledged by the index"""
    retryable = True

    def __init__(self, acked: int, total: int, reason: Optional[str] = None):
        self.acked = acked
        self.total = total
        self.reason = reason
        msg = f"Index acknowledged {acked} of {total} changes"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)
