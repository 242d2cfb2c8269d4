"""
Price feed collaborators and tick dispatch.

The transport that delivers ticks lives outside the engine. It is asked to
subscribe symbols through ``PriceFeedSubscriber`` and hands ticks to a
``PriceTickDispatcher``, which processes ticks for one symbol in arrival
order and different symbols concurrently.
"""

import asyncio
import contextlib
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, Awaitable, Callable
from typing import Any

from ..models.risk import PriceTick

logger = logging.getLogger(__name__)

TickHandler = Callable[[PriceTick], Any | Awaitable[Any]]


class PriceFeedSubscriber(ABC):
    """Market-data collaborator that streams prices for requested symbols."""

    @abstractmethod
    def subscribe(self, symbol: str) -> None:
        """Request price updates for a symbol. Repeated calls are allowed."""
        pass


class LoggingPriceFeedSubscriber(PriceFeedSubscriber):
    """Records subscription requests. Used when no transport is attached."""

    def __init__(self) -> None:
        self.symbols: set[str] = set()

    def subscribe(self, symbol: str) -> None:
        if symbol not in self.symbols:
            self.symbols.add(symbol)
            logger.info(f"Subscribed to price updates for {symbol}")


class PriceTickDispatcher:
    """
    Fan ticks out to one worker queue per symbol.

    Ticks for the same symbol are handled strictly one at a time; ticks for
    different symbols proceed in parallel. Coroutine handlers run on the
    event loop, plain callables run in the default executor so a blocking
    handler for one symbol never holds up the others. Handler errors are
    logged and the worker keeps going.
    """

    def __init__(self, handler: TickHandler, max_queue_size: int = 0):
        self.handler = handler
        self.max_queue_size = max_queue_size
        self.is_running = False
        self.processed_count = 0
        self.error_count = 0
        self._queues: dict[str, asyncio.Queue[PriceTick]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Price tick dispatcher is already running")
            return
        self.is_running = True
        logger.info("Price tick dispatcher started")

    async def stop(self) -> None:
        """Cancel all workers. Queued ticks not yet handled are dropped."""
        if not self.is_running:
            return
        self.is_running = False

        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        for task in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._workers.clear()
        self._queues.clear()
        logger.info("Price tick dispatcher stopped")

    async def submit(self, tick: PriceTick) -> None:
        if not self.is_running:
            raise RuntimeError("Price tick dispatcher is not running")
        queue = self._queues.get(tick.symbol)
        if queue is None:
            queue = self._queues[tick.symbol] = asyncio.Queue(self.max_queue_size)
            self._workers[tick.symbol] = asyncio.create_task(
                self._worker(tick.symbol, queue), name=f"ticks-{tick.symbol}"
            )
        await queue.put(tick)

    async def drain(self) -> None:
        """Wait until every queued tick has been handled."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def run(self, stream: AsyncIterable[PriceTick]) -> None:
        """Consume a tick stream until it ends, then wait for the queues to drain."""
        started_here = not self.is_running
        if started_here:
            await self.start()
        try:
            async for tick in stream:
                await self.submit(tick)
            await self.drain()
        finally:
            if started_here:
                await self.stop()

    def get_statistics(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "symbols": sorted(self._queues),
            "processed": self.processed_count,
            "errors": self.error_count,
            "queued": {symbol: q.qsize() for symbol, q in self._queues.items()},
        }

    async def _handle(self, tick: PriceTick) -> None:
        if inspect.iscoroutinefunction(self.handler):
            await self.handler(tick)
            return
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self.handler, tick)
        if inspect.isawaitable(result):
            await result

    async def _worker(self, symbol: str, queue: asyncio.Queue[PriceTick]) -> None:
        logger.debug(f"Tick worker for {symbol} started")
        while True:
            tick = await queue.get()
            try:
                await self._handle(tick)
                self.processed_count += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.error_count += 1
                logger.error(f"Error handling tick for {symbol}: {e}", exc_info=True)
            finally:
                queue.task_done()
