"""RegistryClient protocol - what the validator needs from the registry.

Implementations: HTTPRegistryClient (network), InMemoryRegistryClient
(wraps InMemoryRegistry for local runs and tests).
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from lockin.validator.models import Goal, ValidatorInfo, VerificationRequest, VoteAck


@runtime_checkable
class RegistryClient(Protocol):
    """Thin client over the verification registry."""

    async def list_pending_for(self, validator_id: str) -> list[VerificationRequest]:
        """Pending requests where ``validator_id`` is selected and has not voted."""
        ...

    async def get_goal(self, goal_id: int) -> Goal:
        ...

    async def cast_vote(
        self,
        request_id: int,
        approved: bool,
        confidence: int,
        reasoning_ref: str,
    ) -> VoteAck:
        """Submit a signed vote.

        Raises:
            VoteRejected: the registry refused the vote (terminal).
            TransportFailure: the registry was unreachable after retries.
        """
        ...

    async def get_validator_info(self, validator_id: str) -> ValidatorInfo:
        ...


__all__ = ["RegistryClient"]
