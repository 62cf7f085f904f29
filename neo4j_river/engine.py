"""
River Sync Engine

Runs one synchronization cycle for a river:
poll source -> translate changes -> apply to index -> commit checkpoint.

The checkpoint and node ledger are committed only for the leading records
the index acknowledged; everything after the first unacknowledged write is
left for the next cycle.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .errors import PartialWriteFailure, UnsupportedValue
from .logging_config import log_cycle_success, log_skip
from .state_manager import BaseStateManager
from .translator import IndexOperation, translate
from .watchers import ChangeRecord, Checkpoint, SourceWatcher
from .writer import IndexWriter

logger = logging.getLogger("neo4j_river.engine")


class LoopState(Enum):
    """Poll loop states"""
    IDLE = "idle"
    POLLING = "polling"
    TRANSLATING = "translating"
    WRITING = "writing"
    CHECKPOINT_COMMIT = "checkpoint_commit"
    BACKOFF_WAIT = "backoff_wait"
    TERMINATED = "terminated"


@dataclass
class CycleResult:
    """Outcome of one sync cycle"""
    checkpoint: Checkpoint
    polled: int = 0
    written: int = 0
    acked: int = 0
    skipped: List[str] = field(default_factory=list)  # Node ids skipped as unsupported
    committed: int = 0
    duration: float = 0.0


class RiverSyncEngine:
    """Applies source changes of one river to its index"""

    def __init__(
        self,
        river_config,
        watcher: SourceWatcher,
        writer: IndexWriter,
        state_manager: BaseStateManager,
        on_state: Optional[Callable[[LoopState], None]] = None
    ):
        self.config = river_config
        self.river_name = river_config.name
        self.watcher = watcher
        self.writer = writer
        self.state_manager = state_manager
        self.on_state = on_state
        self.checkpoint = Checkpoint()

    def _set_state(self, state: LoopState):
        if self.on_state:
            self.on_state(state)

    async def load_checkpoint(self) -> Checkpoint:
        """Resume from the last committed checkpoint"""
        self.checkpoint = await self.state_manager.get_checkpoint(self.river_name)
        logger.info(f"River {self.river_name} resuming from checkpoint {self.checkpoint.to_dict()}")
        return self.checkpoint

    def translate_batch(self, records: List[ChangeRecord]) -> List[Tuple[ChangeRecord, Optional[IndexOperation]]]:
        """Translate records; unsupported records map to None and are skipped"""
        plan = []
        for record in records:
            try:
                op = translate(record, self.config.index_type)
            except UnsupportedValue as e:
                log_skip(logger, record.node_id, f"unsupported value ({e})")
                op = None
            plan.append((record, op))
        return plan

    async def run_cycle(self) -> CycleResult:
        """
        Run one poll/translate/write/commit cycle.

        Raises:
            SourceUnavailable, SourceRejected: polling failed (nothing committed)
            SinkUnavailable, SinkRejected: writing failed (nothing committed)
            PartialWriteFailure: a prefix was committed, the rest is retried next cycle
        """
        start_time = time.time()
        since = self.checkpoint

        self._set_state(LoopState.POLLING)
        records, _ = await self.watcher.poll(since)
        result = CycleResult(checkpoint=since, polled=len(records))
        if not records:
            result.duration = time.time() - start_time
            return result

        self._set_state(LoopState.TRANSLATING)
        plan = self.translate_batch(records)
        operations = [op for _, op in plan if op is not None]
        result.skipped = [record.node_id for record, op in plan if op is None]

        self._set_state(LoopState.WRITING)
        acked = await self.writer.apply(operations)
        result.written = len(operations)
        result.acked = acked

        # Commit boundary: every record before the first unacknowledged write
        committed = []
        checkpoint = since
        remaining = acked
        for record, op in plan:
            if op is not None:
                if remaining == 0:
                    break
                remaining -= 1
            committed.append(record)
            checkpoint = checkpoint.advance(record)

        if committed:
            self._set_state(LoopState.CHECKPOINT_COMMIT)
            await self.state_manager.commit(self.river_name, checkpoint, committed)
            self.checkpoint = checkpoint

        result.committed = len(committed)
        result.checkpoint = self.checkpoint
        result.duration = time.time() - start_time

        if acked < len(operations):
            raise PartialWriteFailure(acked, len(operations), self.writer.last_error)

        log_cycle_success(logger, self.river_name, result.committed, len(result.skipped),
                          self.checkpoint.sequence, result.duration)
        return result
