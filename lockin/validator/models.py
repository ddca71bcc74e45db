"""Pydantic models for verification requests, verdicts and proof payloads.

Everything crossing the registry or artifact-store boundary is one of these
models and is serialized with ``model_dump(mode="json")``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


CONFIDENCE_MIN = 0
CONFIDENCE_MAX = 100


def clamp_confidence(value: Any, default: int = 50) -> int:
    """Coerce a confidence figure to an int in [0, 100].

    Unparseable values fall back to ``default``.
    """
    try:
        num = int(float(value))
    except (TypeError, ValueError, OverflowError):
        num = default
    return max(CONFIDENCE_MIN, min(CONFIDENCE_MAX, num))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Registry-side records
# ---------------------------------------------------------------------------


class RequestStatus(str, Enum):
    """Registry status of a verification request."""

    PENDING = "Pending"
    COMPLETE = "Complete"
    FAILED = "Failed"
    EXPIRED = "Expired"


class Goal(BaseModel):
    """Goal metadata as stored by the registry."""

    id: int
    title: str
    description: str = ""
    goal_type: str = "Custom"
    target: str | None = None
    deadline: datetime | None = None


class Verdict(BaseModel):
    """One validator's adjudication of one request."""

    model_config = {"frozen": True}

    validator_id: str
    request_id: int
    approved: bool
    confidence: int = Field(ge=CONFIDENCE_MIN, le=CONFIDENCE_MAX)
    reasoning_ref: str
    submitted_at: datetime = Field(default_factory=utcnow)
    signature: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> int:
        return clamp_confidence(v, default=0)


class VerificationRequest(BaseModel):
    """A proof submission awaiting judgment."""

    id: int
    goal_id: int
    submitter_id: str
    proof_ref: str
    selected_validators: list[str] = Field(default_factory=list)
    verdicts: dict[str, Verdict] = Field(default_factory=dict)
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    deadline: datetime
    outcome: bool | None = None

    def is_selected(self, validator_id: str) -> bool:
        return validator_id in self.selected_validators

    def has_voted(self, validator_id: str) -> bool:
        return validator_id in self.verdicts


class ValidatorInfo(BaseModel):
    """Registry view of a validator, used for health refresh."""

    validator_id: str
    active: bool = True
    reputation: int = 100
    total_validations: int = 0


class VoteAck(BaseModel):
    """Registry acknowledgement of a stored vote."""

    request_id: int
    validator_id: str
    accepted: bool = True
    replayed: bool = False
    status: RequestStatus = RequestStatus.PENDING


# ---------------------------------------------------------------------------
# Validator-side values
# ---------------------------------------------------------------------------


class ProofPayload(BaseModel):
    """Proof artifact fetched from the store. Treated as read-only evidence."""

    model_config = {"frozen": True}

    text: str = ""
    images: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("images", mode="before")
    @classmethod
    def _images(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, str):
            return (v,)
        return v


class AdjudicationResult(BaseModel):
    """The judge's output for one request."""

    approved: bool = False
    confidence: int = 0
    reasoning: str = ""
    manipulation_suspected: bool = False
    degraded: bool = False
    model: str = ""
    inference_seconds: float | None = None
    raw_response: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> int:
        return clamp_confidence(v, default=0)


__all__ = [
    "AdjudicationResult",
    "Goal",
    "ProofPayload",
    "RequestStatus",
    "ValidatorInfo",
    "Verdict",
    "VerificationRequest",
    "VoteAck",
    "clamp_confidence",
    "utcnow",
]
