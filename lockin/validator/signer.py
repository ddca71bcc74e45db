"""Vote signing and verification using bittensor keypairs.

A validator signs each vote with its hotkey. The registry verifies the
signature against the voting hotkey before storing the verdict.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def compute_hash(data: Any) -> str:
    """SHA256 hex digest of the canonical (sorted-key) JSON encoding."""
    raw = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


def vote_signing_payload(
    request_id: int,
    validator_id: str,
    approved: bool,
    confidence: int,
    reasoning_ref: str,
) -> str:
    """Build the canonical string to sign for a vote."""
    return compute_hash({
        "request_id": int(request_id),
        "validator_id": validator_id,
        "approved": bool(approved),
        "confidence": int(confidence),
        "reasoning_ref": reasoning_ref,
    })


def sign_vote(
    wallet: Any,
    request_id: int,
    approved: bool,
    confidence: int,
    reasoning_ref: str,
) -> str:
    """Sign a vote with the wallet hotkey.

    Returns:
        Hex-encoded signature string.
    """
    payload_hash = vote_signing_payload(
        request_id, wallet.hotkey.ss58_address, approved, confidence, reasoning_ref,
    )
    signature = wallet.hotkey.sign(payload_hash.encode())
    return signature.hex() if isinstance(signature, bytes) else str(signature)


def verify_vote(
    validator_id: str,
    request_id: int,
    approved: bool,
    confidence: int,
    reasoning_ref: str,
    signature: str,
) -> bool:
    """Verify a vote signature against the voting hotkey."""
    import bittensor as bt

    if not signature:
        return False

    payload_hash = vote_signing_payload(
        request_id, validator_id, approved, confidence, reasoning_ref,
    )
    try:
        sig_bytes = bytes.fromhex(signature)
    except ValueError:
        return False

    try:
        keypair = bt.Keypair(ss58_address=validator_id)
        return keypair.verify(payload_hash.encode(), sig_bytes)
    except Exception:
        return False


__all__ = ["compute_hash", "sign_vote", "verify_vote", "vote_signing_payload"]
