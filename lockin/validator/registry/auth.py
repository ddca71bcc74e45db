"""Registry access policy: challenge-response auth for validator hotkeys.

A validator proves hotkey ownership by signing a nonce and receives a bearer
token. Only hotkeys the registry knows get a challenge, active or not, so an
inactive validator can still read its standing. Voting rights are checked
by the registry itself.
Fail-closed: any verification failure is a rejection.
"""

from __future__ import annotations

import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

import bittensor as bt


def _hk(hotkey: str | None) -> str:
    """Truncate hotkey for log readability."""
    return hotkey[:16] if hotkey else "none"


@dataclass
class EligibilityResult:
    """Result of an eligibility check."""

    eligible: bool
    reason: str = ""


@dataclass
class _PendingChallenge:
    nonce: str
    hotkey: str
    created_at: float
    ttl: float = 120.0

    @property
    def expired(self) -> bool:
        return time.time() > self.created_at + self.ttl


@dataclass
class _TokenEntry:
    hotkey: str
    created_at: float
    ttl: float

    @property
    def expired(self) -> bool:
        return time.time() > self.created_at + self.ttl


class AccessPolicy:
    """Challenge-response auth gated on registry membership."""

    def __init__(
        self,
        is_registered: Callable[[str], bool],
        token_ttl: int = 3600,
        rate_limit_per_hour: int = 3600,
        max_tokens: int = 500,
    ):
        self.is_registered = is_registered
        self.token_ttl = token_ttl
        self.rate_limit_per_hour = rate_limit_per_hour
        self.max_tokens = max_tokens

        self._challenges: dict[str, _PendingChallenge] = {}
        self._tokens: OrderedDict[str, _TokenEntry] = OrderedDict()
        self._request_log: dict[str, list[float]] = {}

    def check_eligibility(self, hotkey: str) -> EligibilityResult:
        if not hotkey:
            reason = "empty_hotkey"
        elif not self.is_registered(hotkey):
            reason = "not_registered"
        else:
            return EligibilityResult(eligible=True)
        bt.logging.warning({"registry_auth": {"event": "eligibility_rejected", "hotkey": _hk(hotkey), "reason": reason}})
        return EligibilityResult(eligible=False, reason=reason)

    def issue_challenge(self, hotkey: str) -> str:
        """Generate a random nonce for a hotkey to sign."""
        self._challenges = {k: v for k, v in self._challenges.items() if not v.expired}
        nonce = secrets.token_hex(32)
        self._challenges[nonce] = _PendingChallenge(nonce=nonce, hotkey=hotkey, created_at=time.time())
        return nonce

    def verify_response(self, hotkey: str, nonce: str, signature: str) -> str | None:
        """Verify a signed challenge. Returns a bearer token or None."""
        challenge = self._challenges.pop(nonce, None)
        reason = None
        if challenge is None:
            reason = "unknown_nonce"
        elif challenge.expired:
            reason = "expired_nonce"
        elif challenge.hotkey != hotkey:
            reason = "hotkey_mismatch"
        else:
            try:
                keypair = bt.Keypair(ss58_address=hotkey)
                if not keypair.verify(nonce.encode(), bytes.fromhex(signature)):
                    reason = "bad_signature"
            except Exception:
                reason = "signature_exception"

        if reason is not None:
            bt.logging.warning({"registry_auth": {"event": "verify_failed", "hotkey": _hk(hotkey), "reason": reason}})
            return None

        token = secrets.token_hex(32)
        while len(self._tokens) >= self.max_tokens:
            self._tokens.popitem(last=False)
        self._tokens[token] = _TokenEntry(hotkey=hotkey, created_at=time.time(), ttl=self.token_ttl)
        bt.logging.info({"registry_auth": {"event": "token_issued", "hotkey": _hk(hotkey)}})
        return token

    def validate_token(self, token: str) -> str | None:
        """Validate a bearer token. Returns the hotkey or None."""
        entry = self._tokens.get(token)
        if entry is None:
            return None
        if entry.expired:
            self._tokens.pop(token, None)
            return None
        self._tokens.move_to_end(token)
        return entry.hotkey

    def check_rate_limit(self, hotkey: str) -> bool:
        """True if the hotkey is within its hourly request budget."""
        now = time.time()
        log = [t for t in self._request_log.get(hotkey, []) if now - t < 3600.0]
        log.append(now)
        self._request_log[hotkey] = log
        allowed = len(log) <= self.rate_limit_per_hour
        if not allowed:
            bt.logging.warning({"registry_auth": {"event": "rate_limited", "hotkey": _hk(hotkey), "requests_in_window": len(log)}})
        return allowed


__all__ = ["AccessPolicy", "EligibilityResult"]
