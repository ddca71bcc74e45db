"""Tests for the validator node: dispatch, backpressure, standing, shutdown."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from lockin.validator.health_server import HealthServer
from lockin.validator.judge import Judge
from lockin.validator.models import RequestStatus, ValidatorInfo
from lockin.validator.node import NodeConfig, ValidatorNode
from lockin.validator.processor import RequestProcessor

VALIDATOR = "5ValidatorHotkeyForTests"
APPROVE = '{"approved": true, "confidence": 90, "reasoning": "ok"}'


def _node(store, registry, backend, **config) -> ValidatorNode:
    processor = RequestProcessor(store=store, judge=Judge(backend), registry=registry, validator_id=VALIDATOR)
    return ValidatorNode(VALIDATOR, registry, processor, config=NodeConfig(**config))


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
class TestDispatch:

    async def test_duplicate_discovery_dispatched_once(self, goal, proof, fake_store, fake_registry, fake_backend, request_factory):
        node = _node(fake_store({"QmProof": proof}), fake_registry(goals={7: goal}), fake_backend(APPROVE))
        req = request_factory(42)

        assert await node.dispatch([req]) == 1
        assert await node.dispatch([req]) == 0
        assert node.processor.stats.duplicates_dropped == 1
        assert node.get_stats()["queue_depth"] == 1

    async def test_skips_unselected_voted_and_closed(self, fake_store, fake_registry, fake_backend, request_factory):
        node = _node(fake_store(), fake_registry(), fake_backend(APPROVE))
        not_selected = request_factory(1, selected_validators=["5Someone"])
        closed = request_factory(2, status=RequestStatus.COMPLETE)
        fresh = request_factory(3)

        assert await node.dispatch([not_selected, closed, fresh]) == 1
        assert 3 in node.processor.in_flight

    async def test_backpressure_skips_rest_of_cycle(self, fake_store, fake_registry, fake_backend, request_factory):
        node = _node(fake_store(), fake_registry(), fake_backend(APPROVE), queue_size=1)
        reqs = [request_factory(i) for i in (1, 2, 3)]

        assert await node.dispatch(reqs) == 1
        assert node.processor.stats.backpressure_skipped == 2
        assert 1 in node.processor.in_flight
        assert 2 not in node.processor.in_flight

    async def test_backpressure_counts_only_dispatchable(self, fake_store, fake_registry, fake_backend, request_factory):
        node = _node(fake_store(), fake_registry(), fake_backend(APPROVE), queue_size=1)
        reqs = [
            request_factory(1),
            request_factory(2),
            request_factory(3, selected_validators=["5Someone"]),
            request_factory(4, status=RequestStatus.COMPLETE),
            request_factory(1),
            request_factory(5),
        ]

        assert await node.dispatch(reqs) == 1
        # 2 and 5 would have been enqueued; 3 and 4 are not ours and 1 is in flight.
        assert node.processor.stats.backpressure_skipped == 2

    async def test_inactive_validator_does_not_poll(self, fake_store, fake_registry, fake_backend, request_factory):
        registry = fake_registry(
            requests=[request_factory(42)],
            info=ValidatorInfo(validator_id=VALIDATOR, active=False, reputation=3),
        )
        node = _node(fake_store(), registry, fake_backend(APPROVE))

        await node._cycle()

        assert node.state.active is False
        assert node.state.reputation == 3
        assert registry.pending_calls == 0
        assert node.get_stats()["queue_depth"] == 0


@pytest.mark.asyncio
class TestRunLoop:

    async def test_processes_then_stops(self, goal, proof, fake_store, fake_registry, fake_backend, request_factory):
        registry = fake_registry(requests=[request_factory(42), request_factory(43)], goals={7: goal})
        node = _node(fake_store({"QmProof": proof}), registry, fake_backend(APPROVE), poll_interval=0.05, num_workers=2)

        task = asyncio.create_task(node.run())
        await _wait_for(lambda: node.processor.stats.succeeded == 2)
        node.stop()
        await asyncio.wait_for(task, timeout=5)

        assert sorted(v[0] for v in registry.votes) == [42, 43]
        assert node.running is False
        assert len(node.processor.in_flight) == 0

    async def test_shutdown_cancels_after_grace(self, goal, proof, fake_store, fake_registry, fake_backend, request_factory):
        registry = fake_registry(requests=[request_factory(42)], goals={7: goal})
        backend = fake_backend(APPROVE, delay=30)
        node = _node(fake_store({"QmProof": proof}), registry, backend, poll_interval=0.05, num_workers=1, shutdown_grace=0.1)

        task = asyncio.create_task(node.run())
        await _wait_for(lambda: len(backend.prompts) == 1)
        node.stop()
        await asyncio.wait_for(task, timeout=2)

        assert registry.votes == []
        assert len(node.processor.in_flight) == 0

    async def test_shutdown_drops_queued_work(self, goal, proof, fake_store, fake_registry, fake_backend, request_factory):
        registry = fake_registry(requests=[request_factory(i) for i in (1, 2, 3)], goals={7: goal})
        backend = fake_backend(APPROVE, delay=30)
        node = _node(fake_store({"QmProof": proof}), registry, backend, poll_interval=0.05, num_workers=1, shutdown_grace=0.1)

        task = asyncio.create_task(node.run())
        await _wait_for(lambda: len(backend.prompts) == 1)
        node.stop()
        await asyncio.wait_for(task, timeout=2)

        assert len(backend.prompts) == 1
        assert len(node.processor.in_flight) == 0
        assert node.get_stats()["queue_depth"] == 0

    async def test_registry_errors_back_off_and_stop(self, fake_store, fake_backend):
        class BrokenRegistry:
            calls = 0

            async def get_validator_info(self, validator_id):
                return ValidatorInfo(validator_id=validator_id)

            async def list_pending_for(self, validator_id):
                BrokenRegistry.calls += 1
                raise RuntimeError("registry down")

        registry = BrokenRegistry()
        node = _node(fake_store(), registry, fake_backend(APPROVE), max_consecutive_errors=1)
        await asyncio.wait_for(node.run(), timeout=2)
        assert BrokenRegistry.calls == 1
        assert node.running is False


@pytest.mark.asyncio
class TestDiagnostics:

    async def test_health_reflects_registry_standing(self, fake_store, fake_registry, fake_backend):
        registry = fake_registry()
        node = _node(fake_store(), registry, fake_backend(APPROVE))
        await node.refresh_state()

        health = node.health()
        assert health["validator"] == VALIDATOR
        assert health["is_active"] is True
        assert health["reputation"] == 87
        assert health["total_validations"] == 12

    async def test_refresh_failure_keeps_last_state(self, fake_store, fake_backend):
        class FlakyRegistry:
            async def get_validator_info(self, validator_id):
                raise RuntimeError("timeout")

        node = _node(fake_store(), FlakyRegistry(), fake_backend(APPROVE))
        node.state.reputation = 55
        await node.refresh_state()
        assert node.state.reputation == 55
        assert node.state.last_refreshed is None

    async def test_health_server_endpoints(self, goal, proof, fake_store, fake_registry, fake_backend, request_factory):
        registry = fake_registry(goals={7: goal})
        node = _node(fake_store({"QmProof": proof}), registry, fake_backend(APPROVE))
        await node.refresh_state()
        await node.processor.submit(request_factory(42))

        server = HealthServer(node, host="127.0.0.1", port=18971)
        try:
            await server.start()
            await asyncio.sleep(0.2)
            async with httpx.AsyncClient(base_url="http://127.0.0.1:18971") as client:
                health = (await client.get("/health")).json()
                stats = (await client.get("/stats")).json()
        finally:
            await server.stop()

        assert health["reputation"] == 87
        assert health["status"] == "stopped"
        assert stats["succeeded"] == 1
        assert stats["approvals"] == 1
        assert stats["failures_by_reason"] == {}
        assert stats["in_flight"] == 0
