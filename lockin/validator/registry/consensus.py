"""Reference registry: request lifecycle and verdict aggregation.

Implements the consensus contract validators rely on:

- verdicts are append-only, one per selected validator, immutable;
- a request becomes ``Complete`` once a quorum of its selected validators
  has voted, with the aggregate outcome fixed at that moment;
- a request whose deadline passes without quorum becomes ``Expired`` when
  nobody voted and ``Failed`` otherwise;
- requests are never deleted.

Used by the dev registry server and by tests. A production registry lives
on chain; only its contract is mirrored here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import bittensor as bt

from lockin.validator.errors import UnknownGoal, VoteRejected
from lockin.validator.models import (
    Goal,
    RequestStatus,
    ValidatorInfo,
    Verdict,
    VerificationRequest,
    VoteAck,
    clamp_confidence,
    utcnow,
)
from lockin.validator.signer import sign_vote, verify_vote


@dataclass(frozen=True)
class ConsensusPolicy:
    """Quorum and approval parameters of the registry contract.

    quorum = floor(n_selected * quorum_fraction) + 1, capped at n_selected.
    The default 0.5 is a strict majority (2 of 3, 3 of 5).
    """

    quorum_fraction: float = 0.5
    approval_threshold: int = 60

    def quorum(self, n_selected: int) -> int:
        if n_selected <= 0:
            return 1
        return min(n_selected, int(n_selected * self.quorum_fraction) + 1)

    def aggregate(self, verdicts: list[Verdict]) -> bool:
        """Approve iff approvals outnumber rejections and their mean confidence clears the threshold."""
        approvals = [v for v in verdicts if v.approved]
        if len(approvals) <= len(verdicts) - len(approvals):
            return False
        mean_confidence = sum(v.confidence for v in approvals) / len(approvals)
        return mean_confidence >= self.approval_threshold


class InMemoryRegistry:
    """Process-local registry honouring the consensus contract."""

    def __init__(
        self,
        policy: ConsensusPolicy | None = None,
        verify_signatures: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.policy = policy or ConsensusPolicy()
        self.verify_signatures = verify_signatures
        self.clock = clock

        self._requests: dict[int, VerificationRequest] = {}
        self._goals: dict[int, Goal] = {}
        self._validators: dict[str, ValidatorInfo] = {}
        self._next_id = 1

    # -- Setup --

    def register_validator(self, validator_id: str, active: bool = True) -> ValidatorInfo:
        info = self._validators.get(validator_id)
        if info is None:
            info = ValidatorInfo(validator_id=validator_id, active=active)
            self._validators[validator_id] = info
        else:
            info.active = active
        return info

    def add_goal(self, goal: Goal) -> Goal:
        self._goals[goal.id] = goal
        return goal

    def create_request(
        self,
        goal_id: int,
        submitter_id: str,
        proof_ref: str,
        selected_validators: list[str],
        ttl_seconds: float = 86400.0,
        request_id: int | None = None,
    ) -> VerificationRequest:
        """Open a verification request. Ids are strictly increasing."""
        if goal_id not in self._goals:
            raise UnknownGoal(goal_id)
        if not selected_validators:
            raise ValueError("at least one validator must be selected")
        if request_id is None:
            request_id = self._next_id
        elif request_id < self._next_id:
            raise ValueError(f"request id {request_id} is not monotonic (next is {self._next_id})")
        self._next_id = request_id + 1

        now = self.clock()
        req = VerificationRequest(
            id=request_id,
            goal_id=goal_id,
            submitter_id=submitter_id,
            proof_ref=proof_ref,
            selected_validators=list(dict.fromkeys(selected_validators)),
            created_at=now,
            deadline=now + timedelta(seconds=ttl_seconds),
        )
        self._requests[request_id] = req
        for v in req.selected_validators:
            if v not in self._validators:
                self.register_validator(v)
        bt.logging.info({"registry": {"event": "request_created", "request_id": request_id, "validators": len(req.selected_validators)}})
        return req

    # -- Reads --

    def get_request(self, request_id: int) -> VerificationRequest:
        req = self._requests[request_id]
        self._sweep(req)
        return req.model_copy(deep=True)

    def get_goal(self, goal_id: int) -> Goal:
        if goal_id not in self._goals:
            raise UnknownGoal(goal_id)
        return self._goals[goal_id].model_copy()

    def validator_info(self, validator_id: str) -> ValidatorInfo:
        return self._validators[validator_id].model_copy()

    def is_registered(self, validator_id: str) -> bool:
        """Known to the registry, active or not. Inactive validators may still read their standing."""
        return validator_id in self._validators

    def list_pending_for(self, validator_id: str) -> list[VerificationRequest]:
        pending = []
        for req in self._requests.values():
            self._sweep(req)
            if (
                req.status == RequestStatus.PENDING
                and req.is_selected(validator_id)
                and not req.has_voted(validator_id)
            ):
                pending.append(req.model_copy(deep=True))
        return pending

    # -- Votes --

    def cast_vote(
        self,
        request_id: int,
        validator_id: str,
        approved: bool,
        confidence: int,
        reasoning_ref: str,
        signature: str = "",
    ) -> VoteAck:
        """Store one verdict or raise VoteRejected."""
        req = self._requests.get(request_id)
        if req is None:
            raise VoteRejected("unknown_request", str(request_id))

        self._sweep(req)
        if not req.is_selected(validator_id):
            raise VoteRejected("not_selected")
        info = self._validators.get(validator_id)
        if info is not None and not info.active:
            raise VoteRejected("inactive")
        if req.has_voted(validator_id):
            raise VoteRejected("already_voted")
        if req.status in (RequestStatus.EXPIRED, RequestStatus.FAILED):
            raise VoteRejected("expired", req.status.value)
        if req.status != RequestStatus.PENDING:
            raise VoteRejected("not_pending", req.status.value)

        confidence = clamp_confidence(confidence, default=0)
        if self.verify_signatures and not verify_vote(
            validator_id, request_id, approved, confidence, reasoning_ref, signature,
        ):
            raise VoteRejected("bad_signature")

        req.verdicts[validator_id] = Verdict(
            validator_id=validator_id,
            request_id=request_id,
            approved=approved,
            confidence=confidence,
            reasoning_ref=reasoning_ref,
            submitted_at=self.clock(),
            signature=signature,
        )
        info = self._validators.get(validator_id) or self.register_validator(validator_id)
        info.total_validations += 1

        self._maybe_complete(req)
        bt.logging.info({"registry": {"event": "vote_stored", "request_id": request_id, "validator": validator_id[:16], "approved": approved, "status": req.status.value}})
        return VoteAck(
            request_id=request_id,
            validator_id=validator_id,
            accepted=True,
            status=req.status,
        )

    # -- State transitions --

    def _maybe_complete(self, req: VerificationRequest) -> None:
        if len(req.verdicts) < self.policy.quorum(len(req.selected_validators)):
            return
        req.outcome = self.policy.aggregate(list(req.verdicts.values()))
        req.status = RequestStatus.COMPLETE
        for verdict in req.verdicts.values():
            info = self._validators.get(verdict.validator_id)
            if info is None:
                continue
            delta = 1 if verdict.approved == req.outcome else -1
            info.reputation = max(0, min(100, info.reputation + delta))
        bt.logging.info({"registry": {"event": "consensus", "request_id": req.id, "outcome": req.outcome, "verdicts": len(req.verdicts)}})

    def _sweep(self, req: VerificationRequest) -> None:
        if req.status != RequestStatus.PENDING or self.clock() < req.deadline:
            return
        req.status = RequestStatus.FAILED if req.verdicts else RequestStatus.EXPIRED
        bt.logging.info({"registry": {"event": "deadline_passed", "request_id": req.id, "status": req.status.value}})

    def sweep(self) -> None:
        """Apply deadline transitions to every pending request."""
        for req in self._requests.values():
            self._sweep(req)


class InMemoryRegistryClient:
    """RegistryClient over an in-process InMemoryRegistry.

    Signs votes like the network client so the registry's signature check
    stays on.
    """

    def __init__(self, registry: InMemoryRegistry, wallet=None, validator_id: str | None = None):
        self.registry = registry
        self.wallet = wallet
        self.validator_id = validator_id or wallet.hotkey.ss58_address

    async def list_pending_for(self, validator_id: str) -> list[VerificationRequest]:
        return self.registry.list_pending_for(validator_id)

    async def get_goal(self, goal_id: int) -> Goal:
        return self.registry.get_goal(goal_id)

    async def cast_vote(
        self, request_id: int, approved: bool, confidence: int, reasoning_ref: str,
    ) -> VoteAck:
        confidence = clamp_confidence(confidence, default=0)
        signature = ""
        if self.wallet is not None:
            signature = sign_vote(self.wallet, request_id, approved, confidence, reasoning_ref)
        return self.registry.cast_vote(
            request_id, self.validator_id, approved, confidence, reasoning_ref, signature,
        )

    async def get_validator_info(self, validator_id: str) -> ValidatorInfo:
        return self.registry.validator_info(validator_id)


__all__ = ["ConsensusPolicy", "InMemoryRegistry", "InMemoryRegistryClient"]
