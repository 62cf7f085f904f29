"""
Base classes for source watching.

Defines the change record model, the checkpoint marker and the abstract
interface every source watcher implements.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def compute_content_hash(properties: Dict[str, Any]) -> str:
    """Compute SHA-256 hash of a node's canonical property JSON"""
    canonical = json.dumps(properties, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ChangeType(Enum):
    """Type of change detected"""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class Checkpoint:
    """
    Last successfully synchronized point in the source's change history.

    sequence counts committed change records; ordinal is the highest source
    timestamp (microseconds) committed so far, or 0 when the river has no
    timestamp property.
    """
    sequence: int = 0
    ordinal: int = 0

    def advance(self, record: "ChangeRecord") -> "Checkpoint":
        """Checkpoint reached once `record` is committed"""
        return Checkpoint(
            sequence=max(self.sequence, record.sequence),
            ordinal=max(self.ordinal, record.ordinal),
        )

    def to_dict(self) -> Dict[str, int]:
        return {"sequence": self.sequence, "ordinal": self.ordinal}


@dataclass(frozen=True)
class ChangeRecord:
    """A single source-side mutation to propagate"""
    change_type: ChangeType
    node_id: str
    sequence: int
    properties: Optional[Dict[str, Any]] = None  # None for deletions
    ordinal: int = 0  # Timestamp property value in microseconds, 0 if unused
    content_hash: str = ""  # Empty for deletions

    @property
    def is_deletion(self) -> bool:
        return self.change_type == ChangeType.DELETED


@dataclass
class NodeSnapshot:
    """A node as currently stored in the source"""
    node_id: str
    properties: Dict[str, Any] = field(default_factory=dict)
    ordinal: int = 0


class SourceWatcher(ABC):
    """Abstract base for source watchers"""

    def __init__(self, config):
        self.config = config
        self._running = False

        # Injected by the orchestrator
        self.state_manager = None
        self.river_name = None

    @abstractmethod
    async def start(self):
        """Open connections to the source"""
        pass

    @abstractmethod
    async def stop(self):
        """Close connections to the source"""
        pass

    @abstractmethod
    async def poll(self, since: Checkpoint) -> Tuple[List[ChangeRecord], Checkpoint]:
        """
        Return the changes after `since`, in source change order, together
        with the checkpoint reached if all of them are committed.

        Raises SourceUnavailable on transient failures and SourceRejected on
        permanent ones. Never mutates the checkpoint.
        """
        pass
