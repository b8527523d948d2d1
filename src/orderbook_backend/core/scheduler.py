"""
TickScheduler - periodic per-network work.

Runs four background loops:
- Tick: trigger engine then pricing engine, for every active network
- Settlement poll: the settlement listener (optional)
- Reconcile: open orders checked against the settlement contract (with the listener)
- Orphan check: triggered conditional orders without a resulting order

Networks are ticked concurrently and each under its own timeout, so a hung
RPC or store call on one network never delays or fails the others.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

if TYPE_CHECKING:
    from orderbook_backend.chain.listener import SettlementListener
    from orderbook_backend.core.adaptive_pricing import AdaptivePricingEngine
    from orderbook_backend.core.trigger_engine import ConditionalTriggerEngine

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """Configuration for the scheduler loops."""

    interval_seconds: float = 10.0
    network_timeout_seconds: float = 30.0

    listener_enabled: bool = True
    listener_poll_seconds: float = 5.0

    reconcile_enabled: bool = True
    reconcile_interval_seconds: float = 900.0

    orphan_check_enabled: bool = True
    orphan_check_interval_seconds: float = 600.0


@dataclass
class NetworkTickResult:
    """What one network did in one tick."""

    network: str
    triggered: int = 0
    repriced: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TickScheduler:
    """
    Drives the engines on a fixed interval.

    Usage:
        scheduler = TickScheduler(["bsc", "base"], trigger_engine, pricing_engine)
        await scheduler.start()
        # ... process runs ...
        await scheduler.stop()
    """

    def __init__(
        self,
        networks: List[str],
        trigger_engine: "ConditionalTriggerEngine",
        pricing_engine: "AdaptivePricingEngine",
        listener: Optional["SettlementListener"] = None,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._networks = list(networks)
        self._trigger_engine = trigger_engine
        self._pricing_engine = pricing_engine
        self._listener = listener
        self._config = config or SchedulerConfig()

        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def networks(self) -> List[str]:
        return list(self._networks)

    async def tick(self) -> List[NetworkTickResult]:
        """One pass over every network. Never raises for a single network."""
        results = await asyncio.gather(
            *(self._tick_network(n) for n in self._networks)
        )
        self.ticks += 1

        failed = [r.network for r in results if not r.ok]
        if failed:
            logger.warning(f"Tick {self.ticks}: failed networks: {', '.join(failed)}")
        return list(results)

    async def _tick_network(self, network: str) -> NetworkTickResult:
        result = NetworkTickResult(network=network)
        try:
            created = await asyncio.wait_for(
                self._trigger_engine.run(network),
                timeout=self._config.network_timeout_seconds,
            )
            result.triggered = len(created)
        except asyncio.TimeoutError:
            result.error = "trigger engine timed out"
            logger.error(
                f"{network}: trigger engine timed out after "
                f"{self._config.network_timeout_seconds}s"
            )
            return result
        except Exception as e:
            result.error = f"trigger engine failed: {e}"
            logger.error(f"{network}: trigger engine failed: {e}")
            return result

        try:
            result.repriced = await asyncio.wait_for(
                self._pricing_engine.run(network),
                timeout=self._config.network_timeout_seconds,
            )
        except asyncio.TimeoutError:
            result.error = "pricing engine timed out"
            logger.error(
                f"{network}: pricing engine timed out after "
                f"{self._config.network_timeout_seconds}s"
            )
        except Exception as e:
            result.error = f"pricing engine failed: {e}"
            logger.error(f"{network}: pricing engine failed: {e}")
        return result

    async def check_orphans(self) -> int:
        """Log and alert orphaned triggers on every network. Returns the total."""
        total = 0
        for network in self._networks:
            try:
                orphans = await self._trigger_engine.find_orphaned_triggers(network)
            except Exception as e:
                logger.error(f"{network}: orphan check failed: {e}")
                continue
            total += len(orphans)
        return total

    async def start(self) -> None:
        """Start the background loops."""
        if self._running:
            logger.warning("TickScheduler already running")
            return

        logger.info("Starting scheduler...")
        self._running = True
        self._stop_event.clear()

        self._start_loop(self.tick, self._config.interval_seconds, "tick")

        if self._config.listener_enabled and self._listener is not None:
            self._start_loop(
                self._listener.poll_once, self._config.listener_poll_seconds, "settlement_poll"
            )
            if self._config.reconcile_enabled:
                self._start_loop(
                    self._listener.reconcile_once,
                    self._config.reconcile_interval_seconds,
                    "reconcile",
                )

        if self._config.orphan_check_enabled:
            self._start_loop(
                self.check_orphans, self._config.orphan_check_interval_seconds, "orphan_check"
            )

        logger.info(
            f"Scheduler started: {len(self._tasks)} tasks, "
            f"networks={', '.join(self._networks)}"
        )

    def _start_loop(
        self, job: Callable[[], Awaitable[object]], interval: float, name: str
    ) -> None:
        task = asyncio.create_task(self._loop(job, interval, name), name=name)
        self._tasks.append(task)
        logger.info(f"Started {name} task (interval={interval}s)")

    async def stop(self) -> None:
        """Stop all loops gracefully."""
        if not self._running:
            return

        logger.info("Stopping scheduler...")
        self._running = False
        self._stop_event.set()

        for task in self._tasks:
            if not task.done():
                task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        logger.info("Scheduler stopped")

    async def _loop(
        self, job: Callable[[], Awaitable[object]], interval: float, name: str
    ) -> None:
        while self._running:
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break  # Stop requested
                except asyncio.TimeoutError:
                    pass

                if not self._running:
                    break

                await job()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in {name}: {e}")
                await asyncio.sleep(5)
