"""Content-addressed artifact store clients."""

from .gateway_client import GatewayArtifactStore, is_valid_hash, mock_hash
from .interface import ArtifactStore

__all__ = ["ArtifactStore", "GatewayArtifactStore", "is_valid_hash", "mock_hash"]
