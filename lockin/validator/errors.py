"""Error taxonomy for the verification pipeline.

Clients raise these at their boundary; the request processor catches them
per request so one failing request never stops the node.
"""

from __future__ import annotations


class LockinError(Exception):
    """Base class for pipeline errors."""


class RetrievalFailure(LockinError):
    """Every artifact-store gateway was exhausted."""

    def __init__(self, ref: str, attempts: list[tuple[str, str]] | None = None):
        self.ref = ref
        self.attempts = attempts or []
        tried = ", ".join(gw for gw, _ in self.attempts) or "none"
        super().__init__(f"failed to fetch {ref} (gateways tried: {tried})")


class NotFound(RetrievalFailure):
    """No gateway resolved the hash."""


class Timeout(RetrievalFailure):
    """Every gateway exceeded the retrieval window."""


class UnknownGoal(LockinError, KeyError):
    """The registry has no goal with this id."""

    def __init__(self, goal_id: int):
        self.goal_id = goal_id
        super().__init__(f"unknown goal: {goal_id}")

    def __str__(self) -> str:
        return Exception.__str__(self)


class UploadFailure(LockinError):
    """No upload backend accepted the payload."""


class TransportFailure(LockinError):
    """Transient network/RPC error that outlived the bounded retries."""


class VoteRejected(LockinError):
    """The registry refused the vote. Terminal for this request."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"vote rejected: {reason}" + (f" ({detail})" if detail else ""))


__all__ = [
    "LockinError",
    "NotFound",
    "RetrievalFailure",
    "Timeout",
    "TransportFailure",
    "UnknownGoal",
    "UploadFailure",
    "VoteRejected",
]
