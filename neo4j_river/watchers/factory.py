"""
Watcher Factory

Creates the appropriate source watcher based on source type.
"""

import logging
from typing import Optional

from .base import SourceWatcher
from .neo4j_watcher import Neo4jWatcher

logger = logging.getLogger("neo4j_river.watchers.factory")


def create_watcher(source_type: str, config) -> Optional[SourceWatcher]:
    """
    Create watcher based on source type.

    Args:
        source_type: Type of source ('neo4j')
        config: RiverConfig for the river

    Returns:
        SourceWatcher instance, or None if source type not supported
    """

    if source_type == 'neo4j':
        return Neo4jWatcher(config)

    else:
        logger.warning(f"Unsupported source type: {source_type}")
        return None
