import asyncio
import datetime
import logging
from typing import Dict, List, Optional

from uapoller._UAConfig_ import ReadClientConfig, describe
from uapoller._UAEmitter_ import Accumulator, emit
from uapoller._UAErrors_ import CommunicationError, PollerError
from uapoller._UAMapping_ import NodeMetricMapping, build_mappings
from uapoller._UAReader_ import NodeValue, read_all
from uapoller._UASession_ import _OPCUASession_, connect


def log_task_result(future):
    if future.cancelled():
        logging.debug("log_task_result: Collection cycle cancelled")
        return
    error = future.exception()
    if error is not None:
        logging.error(f"log_task_result: Collection cycle failed: {str(error)}", exc_info=error)


class _OPCUAPoller_:
    """
    Polls a fixed set of nodes on one server.

    The poller owns its session: it opens it lazily on the first cycle,
    closes it when a cycle fails on communication and opens a new one on
    the following cycle.
    """

    def __init__(self, config: ReadClientConfig, connector=connect):
        self.config = config
        self._connector = connector
        self.node_metric_mapping: List[NodeMetricMapping] = []
        self.last_received_data: List[NodeValue] = []
        self.session: Optional[_OPCUASession_] = None
        self._valid_codes: List[int] = []
        self._failed_nodes: Dict[int, str] = {}
        self._cycle_task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None
        self._initialized = False

    def init(self):
        """Validate the configuration and build the node mappings; raises ConfigurationError."""
        self.config.validate()
        self._valid_codes = self.config.workarounds.status_codes()
        self.node_metric_mapping = build_mappings(self.config.root_nodes, self.config.groups,
                                                  self.config.metric_name)
        self.last_received_data = []
        self._failed_nodes.clear()
        self._initialized = True
        logging.info(f"_OPCUAPoller_.init: {describe(self.config)}, mappings={len(self.node_metric_mapping)}")

    async def ensure_session(self) -> _OPCUASession_:
        if self.session is not None and self.session.is_open:
            return self.session
        await self.disconnect()
        self.session = await self._connector(self.config)
        return self.session

    async def disconnect(self):
        session, self.session = self.session, None
        if session is not None:
            await session.close()

    async def read(self) -> List[NodeValue]:
        """One read of all nodes; last_received_data only changes if it succeeds."""
        if not self._initialized:
            raise PollerError("init() must be called before reading")
        session = await self.ensure_session()
        try:
            values = await read_all(session, self.node_metric_mapping, self.config.request_workarounds,
                                    self._valid_codes)
        except CommunicationError:
            await self.disconnect()
            raise
        self.last_received_data = values
        self._log_node_failures(values)
        return values

    async def gather(self, accumulator: Accumulator):
        """Run one collection cycle and hand the result to the accumulator."""
        cycle_start = datetime.datetime.now(datetime.timezone.utc)
        try:
            values = await self.read()
        except CommunicationError as e:
            logging.error(f"_OPCUAPoller_.gather: Collection from {self.config.endpoint} failed: {str(e)}")
            accumulator.add_error(e)
            return
        count = emit(self.node_metric_mapping, values, accumulator, cycle_start, self.config.timestamp)
        logging.debug(f"_OPCUAPoller_.gather: Emitted {count} measurements from {len(values)} nodes")

    def _log_node_failures(self, values: List[NodeValue]):
        for index, (mapping, value) in enumerate(zip(self.node_metric_mapping, values)):
            if value.ok:
                if self._failed_nodes.pop(index, None) is not None:
                    logging.info(f"_OPCUAPoller_.read: Node {mapping} is readable again")
                continue
            if self._failed_nodes.get(index) != value.error:
                self._failed_nodes[index] = value.error
                logging.info(f"_OPCUAPoller_.read: Node {mapping} returned no value: {value.error}")
            else:
                logging.debug(f"_OPCUAPoller_.read: Node {mapping} still returns no value: {value.error}")

    @property
    def cycle_running(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    def tick(self, accumulator: Accumulator) -> bool:
        """Start a cycle unless one is still running; returns whether one was started."""
        if self.cycle_running:
            logging.warning(f"_OPCUAPoller_.tick: Previous collection from {self.config.endpoint} still running, skipping")
            return False
        self._cycle_task = asyncio.create_task(self.gather(accumulator))
        self._cycle_task.add_done_callback(log_task_result)
        return True

    async def run(self, accumulator: Accumulator, interval: float):
        """Collect every ``interval`` seconds until stop() is called."""
        if not self._initialized:
            self.init()
        self._stopping = asyncio.Event()
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        try:
            while not self._stopping.is_set():
                self.tick(accumulator)
                next_tick += interval
                now = loop.time()
                if next_tick < now:
                    # missed ticks are dropped, not queued
                    next_tick = now + interval - ((now - next_tick) % interval)
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=next_tick - now)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self._cancel_cycle()
            await self.disconnect()
            logging.info(f"_OPCUAPoller_.run: Stopped polling {self.config.endpoint}")

    async def _cancel_cycle(self):
        task, self._cycle_task = self._cycle_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logging.debug("_OPCUAPoller_._cancel_cycle: In-flight collection cycle cancelled, partial results discarded")
        except Exception as e:
            logging.debug(f"_OPCUAPoller_._cancel_cycle: Cycle ended with error while cancelling: {str(e)}")

    async def stop(self):
        if self._stopping is not None:
            self._stopping.set()
        await self._cancel_cycle()
        await self.disconnect()
