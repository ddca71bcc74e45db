"""Per-request orchestration: fetch -> adjudicate -> publish reasoning -> vote.

Stages run strictly in order because each consumes the previous one's
output. Any stage can end the request in ``Failed``; the failure is logged
with the request id and stage and never propagates to the node.

Processing is at-least-once: a request id stays claimed until it reaches a
terminal stage, so a crash mid-request leaves it for the next poll.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import bittensor as bt

from lockin.validator.errors import (
    LockinError,
    RetrievalFailure,
    TransportFailure,
    UnknownGoal,
    UploadFailure,
    VoteRejected,
)
from lockin.validator.judge.judge import Judge
from lockin.validator.judge.parsers import conservative_reject
from lockin.validator.models import AdjudicationResult, VerificationRequest, utcnow
from lockin.validator.registry.interface import RegistryClient
from lockin.validator.state import ProcessingStats
from lockin.validator.store.interface import ArtifactStore


class Stage(str, Enum):
    DISCOVERED = "Discovered"
    FETCHING = "Fetching"
    ADJUDICATING = "Adjudicating"
    PUBLISHING_REASONING = "PublishingReasoning"
    VOTING = "Voting"
    DONE = "Done"
    FAILED = "Failed"


TERMINAL_STAGES = (Stage.DONE, Stage.FAILED)


@dataclass
class StageTimeouts:
    """Upper bound, in seconds, on each network-bound stage."""

    fetch: float = 120.0
    adjudicate: float = 90.0
    upload: float = 120.0
    vote: float = 120.0


@dataclass
class ProcessingRecord:
    """Local lifecycle of one request on this validator."""

    request_id: int
    stage: Stage = Stage.DISCOVERED
    history: list[Stage] = field(default_factory=lambda: [Stage.DISCOVERED])
    failure_reason: str = ""
    failed_stage: Stage | None = None
    result: AdjudicationResult | None = None
    reasoning_ref: str = ""
    started_at: float = field(default_factory=time.monotonic)
    finished_at: float | None = None

    def advance(self, stage: Stage) -> None:
        if self.stage in TERMINAL_STAGES:
            raise RuntimeError(f"request {self.request_id} already terminal ({self.stage.value})")
        self.stage = stage
        self.history.append(stage)
        if stage in TERMINAL_STAGES:
            self.finished_at = time.monotonic()

    def fail(self, reason: str) -> None:
        self.failed_stage = self.stage
        self.failure_reason = reason
        self.advance(Stage.FAILED)

    @property
    def duration(self) -> float | None:
        return None if self.finished_at is None else self.finished_at - self.started_at


class InFlightSet:
    """Request ids currently claimed by this node.

    ``claim`` is an atomic check-and-insert so two tasks can never both
    process the same request.
    """

    def __init__(self) -> None:
        self._ids: set[int] = set()
        self._lock = asyncio.Lock()

    async def claim(self, request_id: int) -> bool:
        async with self._lock:
            if request_id in self._ids:
                return False
            self._ids.add(request_id)
            return True

    async def release(self, request_id: int) -> None:
        async with self._lock:
            self._ids.discard(request_id)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class RequestProcessor:
    """Runs one verification request through the validator pipeline."""

    def __init__(
        self,
        store: ArtifactStore,
        judge: Judge,
        registry: RegistryClient,
        validator_id: str,
        timeouts: StageTimeouts | None = None,
        stats: ProcessingStats | None = None,
        history_size: int = 256,
    ):
        self.store = store
        self.judge = judge
        self.registry = registry
        self.validator_id = validator_id
        self.timeouts = timeouts or StageTimeouts()
        self.stats = stats or ProcessingStats()
        self.in_flight = InFlightSet()
        self._history_size = history_size
        self.recent: OrderedDict[int, ProcessingRecord] = OrderedDict()

    async def claim(self, request_id: int) -> bool:
        """Claim a request for processing. False means it is already in flight."""
        claimed = await self.in_flight.claim(request_id)
        if not claimed:
            self.stats.duplicates_dropped += 1
            bt.logging.debug({"request_processor": {"event": "duplicate_dropped", "request_id": request_id}})
        return claimed

    async def release(self, request_id: int) -> None:
        await self.in_flight.release(request_id)

    async def submit(self, request: VerificationRequest) -> ProcessingRecord | None:
        """Claim and process. Returns None when the request was already in flight."""
        if not await self.claim(request.id):
            return None
        return await self.process(request)

    async def process(self, request: VerificationRequest) -> ProcessingRecord:
        """Process a claimed request to a terminal stage, then release it."""
        record = ProcessingRecord(request_id=request.id)
        self._remember(record)
        try:
            await self._run(request, record)
        except VoteRejected as e:
            self._fail(record, "vote_rejected", e, vote_reason=e.reason)
        except RetrievalFailure as e:
            self._fail(record, "retrieval_failure", e)
        except UploadFailure as e:
            self._fail(record, "upload_failure", e)
        except TransportFailure as e:
            self._fail(record, "transport_failure", e)
        except UnknownGoal as e:
            self._fail(record, "unknown_goal", e)
        except asyncio.TimeoutError as e:
            self._fail(record, "stage_timeout", e)
        except LockinError as e:
            self._fail(record, "error", e)
        except Exception as e:
            self._fail(record, "unexpected", e)
        finally:
            await self.release(request.id)
        return record

    async def _run(self, request: VerificationRequest, record: ProcessingRecord) -> None:
        bt.logging.info({"request_processor": {"event": "start", "request_id": request.id, "goal_id": request.goal_id}})

        record.advance(Stage.FETCHING)
        proof = await asyncio.wait_for(self.store.fetch(request.proof_ref), self.timeouts.fetch)
        goal = await asyncio.wait_for(self.registry.get_goal(request.goal_id), self.timeouts.fetch)

        record.advance(Stage.ADJUDICATING)
        try:
            result = await asyncio.wait_for(self.judge.adjudicate(goal, proof), self.timeouts.adjudicate)
        except asyncio.TimeoutError:
            result = conservative_reject("", note=f"Adjudication exceeded {self.timeouts.adjudicate}s. Defaulting to rejection.")
        record.result = result
        if result.degraded:
            self.stats.degraded_adjudications += 1

        record.advance(Stage.PUBLISHING_REASONING)
        artifact = self.reasoning_artifact(request, result)
        record.reasoning_ref = await asyncio.wait_for(self.store.upload(artifact), self.timeouts.upload)

        record.advance(Stage.VOTING)
        ack = await asyncio.wait_for(
            self.registry.cast_vote(request.id, result.approved, result.confidence, record.reasoning_ref),
            self.timeouts.vote,
        )

        record.advance(Stage.DONE)
        self.stats.succeeded += 1
        if result.approved:
            self.stats.approvals += 1
        else:
            self.stats.rejections += 1
        bt.logging.info({
            "request_processor": {
                "event": "done",
                "request_id": request.id,
                "approved": result.approved,
                "confidence": result.confidence,
                "reasoning_ref": record.reasoning_ref,
                "replayed": ack.replayed,
                "seconds": round(record.duration or 0.0, 3),
            }
        })

    def reasoning_artifact(self, request: VerificationRequest, result: AdjudicationResult) -> dict[str, Any]:
        """The auditable record published before voting."""
        return {
            "request_id": request.id,
            "goal_id": request.goal_id,
            "proof_ref": request.proof_ref,
            "validator_id": self.validator_id,
            "approved": result.approved,
            "confidence": result.confidence,
            "reasoning": result.reasoning,
            "manipulation_detected": result.manipulation_suspected,
            "degraded": result.degraded,
            "model": result.model,
            "inference_seconds": result.inference_seconds,
            "raw_response": result.raw_response,
            "created_at": utcnow().isoformat(),
        }

    def _fail(self, record: ProcessingRecord, reason: str, error: BaseException, **extra: Any) -> None:
        record.fail(reason)
        self.stats.record_failure(reason)
        bt.logging.error({
            "request_processor": {
                "event": "failed",
                "request_id": record.request_id,
                "stage": record.failed_stage.value if record.failed_stage else None,
                "reason": reason,
                "error": str(error) or type(error).__name__,
                **extra,
            }
        })

    def _remember(self, record: ProcessingRecord) -> None:
        self.recent[record.request_id] = record
        self.recent.move_to_end(record.request_id)
        while len(self.recent) > self._history_size:
            self.recent.popitem(last=False)


__all__ = [
    "InFlightSet",
    "ProcessingRecord",
    "RequestProcessor",
    "Stage",
    "StageTimeouts",
]
