"""
Source Watchers Package

Change detection for river sources.
"""

from .base import (
    SourceWatcher,
    ChangeType,
    ChangeRecord,
    Checkpoint,
    NodeSnapshot,
    compute_content_hash,
)

from .neo4j_watcher import Neo4jWatcher

from .factory import create_watcher

__all__ = [
    # Base classes
    'SourceWatcher',
    'ChangeType',
    'ChangeRecord',
    'Checkpoint',
    'NodeSnapshot',
    'compute_content_hash',

    # Watcher implementations
    'Neo4jWatcher',

    # Factory
    'create_watcher',
]
