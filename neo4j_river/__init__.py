"""
Neo4j River

Keeps an Elasticsearch index synchronized with the nodes of a Neo4j graph
by polling for changes and applying them with checkpointed, idempotent writes.
"""

from .engine import RiverSyncEngine
from .orchestrator import RiverOrchestrator, RiverStatus, RiverUpdater
from .river_config import ConfigManager, RiverConfig
from .state_manager import MemoryStateManager, StateManager

__all__ = [
    'RiverSyncEngine',
    'RiverOrchestrator',
    'RiverStatus',
    'RiverUpdater',
    'ConfigManager',
    'RiverConfig',
    'MemoryStateManager',
    'StateManager',
]
