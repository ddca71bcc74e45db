"""HTTP-based RegistryClient for validator nodes.

Handles challenge-response authentication automatically, caches bearer
tokens, retries transient failures with backoff, and separates transport
failures (retryable) from vote rejections (terminal).
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import bittensor as bt
import httpx

from lockin.validator.errors import LockinError, TransportFailure, UnknownGoal, VoteRejected
from lockin.validator.models import (
    Goal,
    ValidatorInfo,
    Verdict,
    VerificationRequest,
    VoteAck,
    clamp_confidence,
)
from lockin.validator.signer import sign_vote


class AuthFailure(LockinError):
    """The registry refused to authenticate this hotkey."""


class _AuthUnavailable(Exception):
    """The auth endpoint answered 5xx or 429; retried like any transient error."""


class HTTPRegistryClient:
    """Validator-side client for the verification registry."""

    def __init__(
        self,
        registry_url: str,
        wallet: Any,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.registry_url = registry_url.rstrip("/")
        self.wallet = wallet
        self.validator_id = wallet.hotkey.ss58_address
        self._token: str | None = None
        self._token_expires: float = 0.0
        self._auth_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._max_retries = max(1, max_retries)
        self._backoff_base = backoff_base

    async def close(self) -> None:
        await self._client.aclose()

    # -- Auth --

    async def _auth_post(self, path: str, body: dict[str, Any], field: str) -> str:
        resp = await self._client.post(f"{self.registry_url}{path}", json=body)
        if resp.status_code >= 500 or resp.status_code == 429:
            raise _AuthUnavailable(f"{path}: http {resp.status_code}")
        if resp.status_code != 200:
            step = path.rsplit("/", 1)[-1]
            raise AuthFailure(f"Auth {step} failed: {resp.status_code} {resp.text}")
        try:
            return str(resp.json()[field])
        except (ValueError, KeyError, TypeError) as e:
            raise AuthFailure(f"Malformed auth reply from {path}: missing {field!r}") from e

    async def _ensure_auth(self) -> str:
        """Return a valid bearer token, refreshing it at most once concurrently."""
        async with self._auth_lock:
            if self._token and time.time() < self._token_expires - 60:
                return self._token

            nonce = await self._auth_post("/registry/auth/challenge", {"hotkey": self.validator_id}, "nonce")

            signature = self.wallet.hotkey.sign(nonce.encode())
            sig_hex = signature.hex() if isinstance(signature, bytes) else str(signature)

            self._token = await self._auth_post(
                "/registry/auth/respond",
                {"hotkey": self.validator_id, "nonce": nonce, "signature": sig_hex},
                "token",
            )
            self._token_expires = time.time() + 3500
            return self._token

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None,
    ) -> tuple[httpx.Response, int]:
        """Authenticated request with bounded retry.

        Retries transport errors, 5xx and 429 (auth endpoints included) with
        exponential backoff.
        Returns the final response and the number of attempts used.
        """
        last_error = ""
        for attempt in range(self._max_retries):
            try:
                token = await self._ensure_auth()
                resp = await self._client.request(
                    method,
                    f"{self.registry_url}{path}",
                    json=json,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except (httpx.TransportError, _AuthUnavailable) as e:
                last_error = str(e) or type(e).__name__
            else:
                if resp.status_code == 401:
                    self._token = None
                    last_error = "unauthorized"
                    continue
                if resp.status_code < 500 and resp.status_code != 429:
                    return resp, attempt + 1
                last_error = f"http {resp.status_code}"

            if attempt < self._max_retries - 1:
                wait = self._backoff_base * (2 ** attempt)
                bt.logging.warning({"registry_client": {"retry": attempt, "path": path, "wait": wait, "error": last_error}})
                await asyncio.sleep(wait)

        raise TransportFailure(f"{method} {path} failed after {self._max_retries} attempts: {last_error}")

    # -- RegistryClient interface --

    async def list_pending_for(self, validator_id: str) -> list[VerificationRequest]:
        resp, _ = await self._request("GET", f"/registry/requests/pending?validator={validator_id}")
        resp.raise_for_status()
        return [VerificationRequest(**r) for r in resp.json().get("requests", [])]

    async def get_goal(self, goal_id: int) -> Goal:
        resp, _ = await self._request("GET", f"/registry/goals/{goal_id}")
        if resp.status_code == 404:
            raise UnknownGoal(goal_id)
        resp.raise_for_status()
        return Goal(**resp.json())

    async def get_validator_info(self, validator_id: str) -> ValidatorInfo:
        resp, _ = await self._request("GET", f"/registry/validators/{validator_id}")
        if resp.status_code == 404:
            return ValidatorInfo(validator_id=validator_id, active=False, reputation=0)
        resp.raise_for_status()
        return ValidatorInfo(**resp.json())

    async def cast_vote(
        self,
        request_id: int,
        approved: bool,
        confidence: int,
        reasoning_ref: str,
    ) -> VoteAck:
        confidence = clamp_confidence(confidence, default=0)
        signature = sign_vote(self.wallet, request_id, approved, confidence, reasoning_ref)
        resp, attempts = await self._request(
            "POST",
            f"/registry/requests/{request_id}/votes",
            json={
                "approved": approved,
                "confidence": confidence,
                "reasoning_ref": reasoning_ref,
                "signature": signature,
            },
        )
        if resp.is_success:
            return VoteAck(**resp.json())

        try:
            body = resp.json()
        except ValueError:
            body = {}
        reason = body.get("error", f"http_{resp.status_code}")

        # A retried POST may have landed the first time; our own identical
        # verdict already stored counts as success.
        if reason == "already_voted" and attempts > 1 and body.get("verdict"):
            stored = Verdict(**body["verdict"])
            if (stored.approved, stored.confidence, stored.reasoning_ref) == (approved, confidence, reasoning_ref):
                bt.logging.info({"registry_client": {"event": "vote_replayed", "request_id": request_id}})
                return VoteAck(request_id=request_id, validator_id=self.validator_id, replayed=True)

        raise VoteRejected(reason, body.get("detail", ""))


__all__ = ["AuthFailure", "HTTPRegistryClient"]
