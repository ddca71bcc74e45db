"""Lock-In validator node: decentralized proof verification."""

__version__ = "0.1.0"
