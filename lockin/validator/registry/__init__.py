"""Verification registry: validator-side clients and the reference consensus contract."""

from .consensus import ConsensusPolicy, InMemoryRegistry, InMemoryRegistryClient
from .http_client import AuthFailure, HTTPRegistryClient
from .interface import RegistryClient

__all__ = [
    "AuthFailure",
    "ConsensusPolicy",
    "HTTPRegistryClient",
    "InMemoryRegistry",
    "InMemoryRegistryClient",
    "RegistryClient",
]
