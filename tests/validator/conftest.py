"""Shared fakes for validator pipeline tests."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from lockin.validator.errors import RetrievalFailure, UnknownGoal, VoteRejected
from lockin.validator.models import (
    Goal,
    ProofPayload,
    RequestStatus,
    ValidatorInfo,
    VerificationRequest,
    VoteAck,
    utcnow,
)

VALIDATOR = "5ValidatorHotkeyForTests"
REASONING_REF = "QmReasoningArtifactHash000000000000000000000000"


class FakeBackend:
    """Inference backend returning canned text, or raising."""

    def __init__(self, response: str = "", error: Exception | None = None, delay: float = 0.0):
        self.model = "fake-model"
        self.response = response
        self.error = error
        self.delay = delay
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response

    async def test_connection(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class FakeStore:
    """ArtifactStore keeping payloads in memory."""

    def __init__(self, proofs: dict[str, ProofPayload] | None = None, fail_fetch: bool = False):
        self.proofs = proofs or {}
        self.fail_fetch = fail_fetch
        self.fetches: list[str] = []
        self.uploads: list[dict] = []

    async def fetch(self, ref: str) -> ProofPayload:
        self.fetches.append(ref)
        if self.fail_fetch or ref not in self.proofs:
            raise RetrievalFailure(ref, [("https://gw1.test", "http 503"), ("https://gw2.test", "timeout")])
        return self.proofs[ref]

    async def upload(self, payload: dict) -> str:
        self.uploads.append(payload)
        return REASONING_REF


class FakeRegistry:
    """RegistryClient recording every call."""

    def __init__(
        self,
        requests: list[VerificationRequest] | None = None,
        goals: dict[int, Goal] | None = None,
        info: ValidatorInfo | None = None,
        reject_with: str | None = None,
    ):
        self.requests = requests or []
        self.goals = goals or {}
        self.info = info or ValidatorInfo(validator_id=VALIDATOR, active=True, reputation=87, total_validations=12)
        self.reject_with = reject_with
        self.votes: list[tuple[int, bool, int, str]] = []
        self.pending_calls = 0
        self.goal_calls = 0

    async def list_pending_for(self, validator_id: str) -> list[VerificationRequest]:
        self.pending_calls += 1
        voted = {v[0] for v in self.votes}
        return [r for r in self.requests if r.id not in voted]

    async def get_goal(self, goal_id: int) -> Goal:
        self.goal_calls += 1
        if goal_id not in self.goals:
            raise UnknownGoal(goal_id)
        return self.goals[goal_id]

    async def cast_vote(self, request_id: int, approved: bool, confidence: int, reasoning_ref: str) -> VoteAck:
        self.votes.append((request_id, approved, confidence, reasoning_ref))
        if self.reject_with:
            raise VoteRejected(self.reject_with)
        return VoteAck(request_id=request_id, validator_id=VALIDATOR, status=RequestStatus.PENDING)

    async def get_validator_info(self, validator_id: str) -> ValidatorInfo:
        return self.info


def make_request(request_id: int = 42, goal_id: int = 7, proof_ref: str = "QmProof", **overrides) -> VerificationRequest:
    now = utcnow()
    fields = dict(
        id=request_id,
        goal_id=goal_id,
        submitter_id="5Submitter",
        proof_ref=proof_ref,
        selected_validators=[VALIDATOR, "5OtherValidator"],
        created_at=now,
        deadline=now + timedelta(hours=1),
    )
    fields.update(overrides)
    return VerificationRequest(**fields)


@pytest.fixture
def goal():
    return Goal(id=7, title="Run 5km", description="Run five kilometres this week", goal_type="fitness", target="5km")


@pytest.fixture
def proof():
    return ProofPayload(text="Finished 5.2km in 28 minutes", images=("QmScreenshot",))


@pytest.fixture
def fake_backend():
    return FakeBackend


@pytest.fixture
def fake_store():
    return FakeStore


@pytest.fixture
def fake_registry():
    return FakeRegistry


@pytest.fixture
def request_factory():
    return make_request


@pytest.fixture
def validator_wallet():
    import bittensor as bt
    w = bt.Wallet(name="test_lockin_validator", hotkey="test_lockin_validator_hk")
    w.create_if_non_existent(coldkey_use_password=False, hotkey_use_password=False)
    return w


@pytest.fixture
def other_wallet():
    import bittensor as bt
    w = bt.Wallet(name="test_lockin_other", hotkey="test_lockin_other_hk")
    w.create_if_non_existent(coldkey_use_password=False, hotkey_use_password=False)
    return w
