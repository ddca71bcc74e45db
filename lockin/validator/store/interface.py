"""ArtifactStore protocol - pluggable content-addressed store interface.

Implementations: GatewayArtifactStore (IPFS gateways + pinning backends).
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from lockin.validator.models import ProofPayload


@runtime_checkable
class ArtifactStore(Protocol):
    """Abstract interface for reading proofs and publishing reasoning."""

    async def fetch(self, ref: str) -> ProofPayload:
        """Fetch a proof payload by content hash."""
        ...

    async def upload(self, payload: dict[str, Any]) -> str:
        """Publish a JSON artifact. Returns its content hash."""
        ...


__all__ = ["ArtifactStore"]
