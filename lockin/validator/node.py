"""Validator node runtime.

Main loop: refresh standing -> poll pending requests -> enqueue new ones.
A fixed pool of workers drains the queue through the RequestProcessor, so
discovery never waits on request I/O and a full queue pushes back on
discovery instead of spawning unbounded tasks.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import bittensor as bt

from lockin.validator.models import RequestStatus, VerificationRequest
from lockin.validator.processor import RequestProcessor
from lockin.validator.registry.interface import RegistryClient
from lockin.validator.state import ValidatorState


@dataclass
class NodeConfig:
    poll_interval: float = 30.0
    health_interval: float = 300.0
    num_workers: int = 4
    queue_size: int = 64
    shutdown_grace: float = 5.0
    max_consecutive_errors: int = 10


class ValidatorNode:
    """Discovers requests selecting this validator and dispatches them."""

    def __init__(
        self,
        validator_id: str,
        registry: RegistryClient,
        processor: RequestProcessor,
        state: ValidatorState | None = None,
        config: NodeConfig | None = None,
    ):
        self.validator_id = validator_id
        self.registry = registry
        self.processor = processor
        self.state = state or ValidatorState(validator_id=validator_id)
        self.config = config or NodeConfig()

        self._queue: asyncio.Queue[VerificationRequest] = asyncio.Queue(maxsize=self.config.queue_size)
        self._workers: list[asyncio.Task] = []
        self._busy: set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self._running = False
        self._last_refresh = 0.0

    @property
    def running(self) -> bool:
        return self._running

    # -- Lifecycle --

    async def run(self) -> None:
        """Main discovery loop. Runs until stopped, then drains workers."""
        self._running = True
        self._stop_event.clear()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"lockin-worker-{i}")
            for i in range(self.config.num_workers)
        ]
        bt.logging.info({
            "validator_node": {
                "status": "starting",
                "validator": self.validator_id,
                "poll_interval": self.config.poll_interval,
                "workers": self.config.num_workers,
            }
        })

        consecutive_errors = 0
        try:
            while self._running:
                try:
                    await self._cycle()
                    consecutive_errors = 0
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    consecutive_errors += 1
                    bt.logging.error({"validator_cycle_error": str(e) or type(e).__name__, "consecutive": consecutive_errors})
                    if consecutive_errors >= self.config.max_consecutive_errors:
                        bt.logging.error({"validator_node": "too_many_errors, stopping"})
                        break
                    await self._sleep(min(30, 5 * consecutive_errors))
                    continue

                await self._sleep(self.config.poll_interval)
        finally:
            self._running = False
            await self._shutdown_workers()
            bt.logging.info({"validator_node": "stopped"})

    def stop(self) -> None:
        """Signal the node to stop dispatching and shut down."""
        self._running = False
        self._stop_event.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _shutdown_workers(self) -> None:
        """Drop queued work, let busy workers finish, cancel after the grace period."""
        while not self._queue.empty():
            req = self._queue.get_nowait()
            self._queue.task_done()
            await self.processor.release(req.id)

        for task in self._workers:
            if task not in self._busy:
                task.cancel()

        busy = list(self._busy)
        if busy:
            _, pending = await asyncio.wait(busy, timeout=self.config.shutdown_grace)
            for task in pending:
                task.cancel()
            if pending:
                bt.logging.warning({"validator_node": {"event": "shutdown_deadline", "cancelled": len(pending)}})
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._busy.clear()

    # -- Discovery --

    async def refresh_state(self) -> None:
        """Pull active flag, reputation and counters from the registry."""
        try:
            info = await self.registry.get_validator_info(self.validator_id)
        except Exception as e:
            bt.logging.warning({"validator_state_refresh_error": str(e) or type(e).__name__})
            return
        self.state.apply(info)
        self._last_refresh = time.monotonic()
        bt.logging.debug({"validator_state": {"active": self.state.active, "reputation": self.state.reputation, "total_validations": self.state.total_validations}})

    async def _cycle(self) -> None:
        if time.monotonic() - self._last_refresh >= self.config.health_interval or self.state.last_refreshed is None:
            await self.refresh_state()

        if not self.state.active:
            bt.logging.debug({"validator_cycle": "inactive, not dispatching"})
            return

        requests = await self.registry.list_pending_for(self.validator_id)
        dispatched = await self.dispatch(requests)
        if dispatched:
            bt.logging.info({"validator_cycle": {"pending": len(requests), "dispatched": dispatched, "in_flight": len(self.processor.in_flight)}})

    def _wants(self, req: VerificationRequest) -> bool:
        """Pending and addressed to us, with no vote from us yet."""
        return (
            req.status == RequestStatus.PENDING
            and req.is_selected(self.validator_id)
            and not req.has_voted(self.validator_id)
        )

    async def dispatch(self, requests: list[VerificationRequest]) -> int:
        """Enqueue requests that select us and are not already in flight."""
        dispatched = 0
        for idx, req in enumerate(requests):
            if self._stop_event.is_set():
                break
            if not self._wants(req):
                continue
            if not await self.processor.claim(req.id):
                continue
            try:
                self._queue.put_nowait(req)
            except asyncio.QueueFull:
                await self.processor.release(req.id)
                rest = requests[idx + 1:]
                skipped = 1 + sum(1 for r in rest if self._wants(r) and r.id not in self.processor.in_flight)
                self.processor.stats.backpressure_skipped += skipped
                bt.logging.warning({"validator_cycle": {"event": "queue_full", "skipped": skipped}})
                break
            self.processor.stats.discovered += 1
            dispatched += 1
        return dispatched

    async def _worker(self, worker_id: int) -> None:
        task = asyncio.current_task()
        while True:
            req = await self._queue.get()
            self._busy.add(task)
            try:
                await self.processor.process(req)
            finally:
                self._busy.discard(task)
                self._queue.task_done()
            if not self._running:
                return

    # -- Diagnostics --

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy" if self._running else "stopped",
            "validator": self.validator_id,
            "is_active": self.state.active,
            "reputation": self.state.reputation,
            "total_validations": self.state.total_validations,
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.processor.stats.snapshot(),
            "in_flight": len(self.processor.in_flight),
            "queue_depth": self._queue.qsize(),
        }


__all__ = ["NodeConfig", "ValidatorNode"]
