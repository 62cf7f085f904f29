"""
River Orchestrator

Runs one poll loop per provisioned river, with capped exponential backoff
after retryable failures, and starts/stops loops as rivers come and go.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, Optional

from .engine import CycleResult, LoopState, RiverSyncEngine
from .errors import RiverConfigError, RiverError
from .logging_config import log_river_error, log_river_start, log_stats
from .river_config import ConfigManager, RiverConfig
from .state_manager import BaseStateManager
from .watchers import Checkpoint, SourceWatcher, create_watcher
from .writer import ElasticsearchIndexWriter, IndexWriter

logger = logging.getLogger("neo4j_river.orchestrator")


class RiverStatus(Enum):
    """Externally visible river status"""
    RUNNING = "running"
    BACKING_OFF = "backing_off"
    TERMINATED = "terminated"


class RiverUpdater:
    """Poll loop for a single river"""

    def __init__(
        self,
        config: RiverConfig,
        watcher: SourceWatcher,
        writer: IndexWriter,
        state_manager: BaseStateManager
    ):
        self.config = config
        self.watcher = watcher
        self.writer = writer
        self.engine = RiverSyncEngine(config, watcher, writer, state_manager, on_state=self._on_state)

        self.state = LoopState.IDLE
        self.consecutive_failures = 0
        self.cycles_completed = 0
        self.last_error: Optional[str] = None
        self.last_result: Optional[CycleResult] = None

        self._started = False
        self._stop_event = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._progress = asyncio.Condition()

    @property
    def checkpoint(self) -> Checkpoint:
        """Last committed checkpoint"""
        return self.engine.checkpoint

    @property
    def status(self) -> RiverStatus:
        if self.state == LoopState.TERMINATED:
            return RiverStatus.TERMINATED
        if self.state == LoopState.BACKOFF_WAIT:
            return RiverStatus.BACKING_OFF
        return RiverStatus.RUNNING

    def _on_state(self, state: LoopState):
        self.state = state

    async def _ensure_started(self):
        if not self._started:
            await self.watcher.start()
            await self.engine.load_checkpoint()
            self._started = True

    async def run(self):
        """Main loop - runs until stopped or a fatal error"""
        log_river_start(logger, self.config)

        try:
            while not self._stop_event.is_set():
                try:
                    await self._run_cycle()
                    self.state = LoopState.IDLE
                    delay = self.config.interval_seconds

                except RiverError as e:
                    if e.fatal:
                        self._terminate(e)
                        break
                    delay = self._register_failure(e)

                except asyncio.CancelledError:
                    raise

                except Exception as e:
                    # State store and other unexpected failures are retried; re-delivery is idempotent
                    logger.exception(f"Unexpected error in river {self.config.name}: {e}")
                    delay = self._register_failure(e)

                await self._wait(delay)

        finally:
            self.state = LoopState.TERMINATED
            await self._close()
            await self._notify()

    async def _run_cycle(self) -> CycleResult:
        async with self._cycle_lock:
            await self._ensure_started()
            try:
                result = await self.engine.run_cycle()
                self.last_result = result
                self.consecutive_failures = 0
                self.last_error = None
                return result
            finally:
                self.cycles_completed += 1
                await self._notify()

    def _register_failure(self, error: Exception) -> float:
        """Record a retryable failure and return the backoff delay"""
        self.consecutive_failures += 1
        self.last_error = str(error)
        self.state = LoopState.BACKOFF_WAIT

        delay = min(
            self.config.backoff_max_seconds,
            self.config.backoff_initial_seconds * (2 ** (self.consecutive_failures - 1))
        )

        if self.consecutive_failures >= self.config.failure_log_threshold:
            logger.error(f"River {self.config.name}: {self.consecutive_failures} consecutive failures, "
                         f"retrying in {delay}s - {error}")
        else:
            logger.warning(f"River {self.config.name} failure "
                           f"({self.consecutive_failures}/{self.config.failure_log_threshold}): "
                           f"{error} - retrying in {delay}s")
        return delay

    def _terminate(self, error: Exception):
        self.last_error = str(error)
        self.state = LoopState.TERMINATED
        log_river_error(logger, self.config.name, error, "fatal, loop terminated")

    async def _wait(self, delay: float):
        """Sleep for `delay` seconds or until stopped"""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _notify(self):
        async with self._progress:
            self._progress.notify_all()

    async def _close(self):
        try:
            await self.watcher.stop()
        finally:
            await self.writer.close()
        log_stats(logger, self.status_info())

    async def stop(self):
        """Ask the loop to stop after the current cycle"""
        self._stop_event.set()

    async def trigger_sync(self) -> CycleResult:
        """Run one cycle immediately (for testing/on-demand)"""
        if self.state == LoopState.TERMINATED:
            raise RuntimeError(f"River {self.config.name} is terminated")
        logger.info(f"MANUAL SYNC: Starting on-demand sync for {self.config.name}...")
        try:
            return await self._run_cycle()
        except Exception as e:
            self.last_error = str(e)
            raise
        finally:
            if self.state != LoopState.TERMINATED:
                self.state = LoopState.IDLE

    async def wait_for_checkpoint(self, sequence: int, timeout: Optional[float] = None) -> Checkpoint:
        """
        Wait until the committed checkpoint reaches `sequence`.

        Raises:
            asyncio.TimeoutError: if not reached within `timeout`
            RuntimeError: if the river terminated first
        """
        async with self._progress:
            await asyncio.wait_for(
                self._progress.wait_for(
                    lambda: self.checkpoint.sequence >= sequence or self.state == LoopState.TERMINATED
                ),
                timeout
            )
        if self.checkpoint.sequence < sequence:
            raise RuntimeError(f"River {self.config.name} terminated at checkpoint {self.checkpoint.sequence}")
        return self.checkpoint

    async def wait_for_cycles(self, count: int, timeout: Optional[float] = None) -> int:
        """Wait until at least `count` cycles have completed"""
        async with self._progress:
            await asyncio.wait_for(
                self._progress.wait_for(
                    lambda: self.cycles_completed >= count or self.state == LoopState.TERMINATED
                ),
                timeout
            )
        return self.cycles_completed

    def status_info(self) -> Dict:
        """Readable status snapshot"""
        info = {
            "river_name": self.config.name,
            "status": self.status.value,
            "state": self.state.value,
            "index": self.config.index_name,
            "type": self.config.index_type,
            "checkpoint": self.checkpoint.to_dict(),
            "cycles_completed": self.cycles_completed,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }
        if self.last_result is not None:
            info["last_cycle"] = {
                "polled": self.last_result.polled,
                "acked": self.last_result.acked,
                "skipped": len(self.last_result.skipped),
                "committed": self.last_result.committed,
            }
        return info


class RiverOrchestrator:
    """
    Top-level orchestrator that manages all rivers.
    Monitors river provisioning and spawns/stops updaters dynamically.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_manager: BaseStateManager,
        settings=None,
        watcher_factory: Callable = create_watcher,
        writer_factory: Optional[Callable] = None
    ):
        self.config_manager = config_manager
        self.state_manager = state_manager
        self.settings = settings
        self.watcher_factory = watcher_factory
        self.writer_factory = writer_factory or self._default_writer

        self.active_updaters: Dict[str, RiverUpdater] = {}
        self.updater_tasks: Dict[str, asyncio.Task] = {}

    def _default_writer(self, config: RiverConfig) -> IndexWriter:
        return ElasticsearchIndexWriter.from_settings(self.settings, config)

    async def initialize(self):
        """Initialize state and configuration stores"""
        await self.config_manager.initialize()
        await self.state_manager.initialize()

    async def run(self, rescan_seconds: float = 30.0):
        """Main orchestration loop"""
        logger.info("INFO: Starting river orchestrator...")

        configs = await self.config_manager.get_all_active_configs()
        if not configs:
            logger.info("INFO: No rivers provisioned yet")
        else:
            logger.info(f"INFO: Found {len(configs)} active river(s)")

        try:
            async for change in self.config_manager.listen_for_config_changes(rescan_seconds):
                try:
                    await self._handle_config_change(change)
                except Exception as e:
                    logger.exception(f"Error handling river change: {e}")
        finally:
            await self._shutdown()

    async def _handle_config_change(self, change: Dict):
        """React to provisioned/removed rivers"""
        operation = change['operation']

        if operation == 'insert':
            await self._start_updater(change['config'])

        elif operation == 'delete':
            logger.info(f"INFO: River removed: {change['river_name']}")
            await self._stop_updater(change['river_name'])
            await self.state_manager.delete_river(change['river_name'])

    async def _start_updater(self, config: RiverConfig) -> Optional[RiverUpdater]:
        """Start the poll loop for a river"""
        if config.name in self.active_updaters:
            logger.debug(f"Updater for {config.name} already running, skipping...")
            return self.active_updaters[config.name]

        watcher = self.watcher_factory(config.source_type, config)
        if watcher is None:
            logger.error(f"Cannot create watcher for {config.source_type} - river: {config.name}")
            return None

        # Inject state_manager and river name into watcher
        watcher.state_manager = self.state_manager
        watcher.river_name = config.name

        writer = self.writer_factory(config)
        updater = RiverUpdater(config, watcher, writer, self.state_manager)

        self.active_updaters[config.name] = updater
        self.updater_tasks[config.name] = asyncio.create_task(updater.run())

        logger.info(f"SUCCESS: Started updater for {config.name} ({config.source_type})")
        return updater

    async def _stop_updater(self, river_name: str):
        """Stop a river's poll loop, cancelling it if it does not stop within one interval"""
        updater = self.active_updaters.pop(river_name, None)
        task = self.updater_tasks.pop(river_name, None)
        if updater is None:
            return

        await updater.stop()
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=updater.config.interval_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"Updater for {river_name} did not stop in time, cancelled")
            except asyncio.CancelledError:
                pass

        logger.info(f"INFO: Stopped updater for {river_name}")

    async def _shutdown(self):
        """Graceful shutdown"""
        logger.info("Shutting down all updaters...")

        for river_name in list(self.active_updaters.keys()):
            await self._stop_updater(river_name)

        await self.config_manager.close()
        await self.state_manager.close()

        logger.info("SUCCESS: Shutdown complete")

    async def provision_river(self, name: str, document: Dict) -> Optional[RiverUpdater]:
        """
        Provision a new river and start its poll loop.

        Returns None for an inactive river, which is stored but not started.

        Raises:
            RiverConfigError: if the document is invalid, the source type is
                unsupported or the river exists
        """
        config = await self.config_manager.create_river(name, document)

        if not config.is_active:
            if self.watcher_factory(config.source_type, config) is None:
                await self.config_manager.delete_river(name)
                raise RiverConfigError(f"Unsupported source type for river {name}: {config.source_type}")
            logger.info(f"INFO: River {name} provisioned inactive, not started")
            return None

        updater = await self._start_updater(config)
        if updater is None:
            await self.config_manager.delete_river(name)
            raise RiverConfigError(f"Unsupported source type for river {name}: {config.source_type}")
        return updater

    async def remove_river(self, name: str):
        """
        Stop a river and delete its document, checkpoint and ledger.

        Raises:
            KeyError: if no such river is provisioned
        """
        if await self.config_manager.get_config(name) is None:
            raise KeyError(name)

        await self._stop_updater(name)
        await self.config_manager.delete_river(name)
        await self.state_manager.delete_river(name)
        logger.info(f"INFO: Removed river {name}")

    def get_updater(self, river_name: str) -> RiverUpdater:
        if river_name not in self.active_updaters:
            raise KeyError(river_name)
        return self.active_updaters[river_name]

    async def trigger_sync(self, river_name: str) -> Dict:
        """
        Trigger an immediate sync for a river.

        Raises:
            KeyError: if the river has no active updater
        """
        updater = self.get_updater(river_name)
        result = await updater.trigger_sync()
        return {
            "river_name": river_name,
            "polled": result.polled,
            "committed": result.committed,
            "skipped": len(result.skipped),
            "checkpoint": result.checkpoint.to_dict(),
        }

    def list_status(self):
        return [updater.status_info() for updater in self.active_updaters.values()]
