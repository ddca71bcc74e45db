"""Authenticated HTTP front for the reference registry.

Routes:
  POST /registry/auth/challenge            - request auth challenge
  POST /registry/auth/respond              - submit signed challenge for bearer token
  GET  /registry/requests/pending?validator=X - pending requests selecting X
  GET  /registry/requests/{id}             - one request with its verdicts
  POST /registry/requests/{id}/votes       - cast a signed vote
  GET  /registry/goals/{id}                - goal metadata
  GET  /registry/validators/{hotkey}       - active flag, reputation, counters
  POST /registry/goals, /registry/requests - seed data (localhost only)
"""

from __future__ import annotations

from typing import Any

import bittensor as bt
from aiohttp import web
from pydantic import ValidationError

from lockin.validator.errors import VoteRejected
from lockin.validator.models import Goal

from .auth import AccessPolicy, _hk
from .consensus import InMemoryRegistry

# HTTP status for each vote rejection reason.
VOTE_REJECTION_STATUS = {
    "unknown_request": 404,
    "not_selected": 403,
    "inactive": 403,
    "already_voted": 409,
    "not_pending": 409,
    "expired": 410,
    "bad_signature": 400,
}

_LOCAL_PEERS = ("127.0.0.1", "::1", "localhost")


class RegistryHTTPServer:
    """Lightweight async HTTP server in front of an InMemoryRegistry."""

    def __init__(
        self,
        registry: InMemoryRegistry,
        access_policy: AccessPolicy | None = None,
        host: str = "0.0.0.0",
        port: int = 8300,
    ):
        self.registry = registry
        self.access_policy = access_policy or AccessPolicy(is_registered=registry.is_registered)
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/registry/auth/challenge", self._handle_challenge)
        app.router.add_post("/registry/auth/respond", self._handle_respond)
        app.router.add_get("/registry/requests/pending", self._handle_pending)
        app.router.add_get("/registry/requests/{request_id}", self._handle_get_request)
        app.router.add_post("/registry/requests/{request_id}/votes", self._handle_vote)
        app.router.add_get("/registry/goals/{goal_id}", self._handle_get_goal)
        app.router.add_get("/registry/validators/{hotkey}", self._handle_validator)
        app.router.add_post("/registry/goals", self._handle_create_goal)
        app.router.add_post("/registry/requests", self._handle_create_request)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self._build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        bt.logging.info({"registry_http": {"status": "started", "port": self.port}})

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            bt.logging.info({"registry_http": "stopped"})

    # -- Auth routes --

    async def _handle_challenge(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
            hotkey = body.get("hotkey", "")
        except Exception:
            return web.json_response({"error": "invalid_body"}, status=400)

        result = self.access_policy.check_eligibility(hotkey)
        if not result.eligible:
            return web.json_response({"error": "ineligible", "reason": result.reason}, status=403)
        return web.json_response({"nonce": self.access_policy.issue_challenge(hotkey)})

    async def _handle_respond(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
            hotkey = body.get("hotkey", "")
            nonce = body.get("nonce", "")
            signature = body.get("signature", "")
        except Exception:
            return web.json_response({"error": "invalid_body"}, status=400)

        token = self.access_policy.verify_response(hotkey, nonce, signature)
        if token is None:
            return web.json_response({"error": "auth_failed"}, status=403)
        return web.json_response({"token": token})

    def _authorize(self, request: web.Request) -> tuple[str | None, web.Response | None]:
        """Resolve the bearer token. Returns (hotkey, None) or (None, error response)."""
        auth = request.headers.get("Authorization", "")
        hotkey = self.access_policy.validate_token(auth[7:]) if auth.startswith("Bearer ") else None
        if hotkey is None:
            return None, web.json_response({"error": "unauthorized"}, status=401)
        if not self.access_policy.check_rate_limit(hotkey):
            return None, web.json_response({"error": "rate_limited"}, status=429)
        return hotkey, None

    # -- Data routes --

    async def _handle_pending(self, request: web.Request) -> web.Response:
        hotkey, err = self._authorize(request)
        if err is not None:
            return err
        validator = request.query.get("validator", hotkey)
        if validator != hotkey:
            return web.json_response({"error": "forbidden"}, status=403)

        pending = self.registry.list_pending_for(validator)
        bt.logging.debug({"registry_request": {"endpoint": "requests/pending", "hotkey": _hk(hotkey), "count": len(pending)}})
        return web.json_response({"requests": [r.model_dump(mode="json") for r in pending]})

    async def _handle_get_request(self, request: web.Request) -> web.Response:
        _, err = self._authorize(request)
        if err is not None:
            return err
        try:
            req = self.registry.get_request(int(request.match_info["request_id"]))
        except (KeyError, ValueError):
            return web.json_response({"error": "not_found"}, status=404)
        return web.json_response(req.model_dump(mode="json"))

    async def _handle_get_goal(self, request: web.Request) -> web.Response:
        _, err = self._authorize(request)
        if err is not None:
            return err
        try:
            goal = self.registry.get_goal(int(request.match_info["goal_id"]))
        except (KeyError, ValueError):
            return web.json_response({"error": "not_found"}, status=404)
        return web.json_response(goal.model_dump(mode="json"))

    async def _handle_validator(self, request: web.Request) -> web.Response:
        _, err = self._authorize(request)
        if err is not None:
            return err
        try:
            info = self.registry.validator_info(request.match_info["hotkey"])
        except KeyError:
            return web.json_response({"error": "not_found"}, status=404)
        return web.json_response(info.model_dump(mode="json"))

    async def _handle_vote(self, request: web.Request) -> web.Response:
        hotkey, err = self._authorize(request)
        if err is not None:
            return err
        try:
            request_id = int(request.match_info["request_id"])
            body = await request.json()
            approved = body["approved"]
            confidence = body["confidence"]
            reasoning_ref = body["reasoning_ref"]
            signature = body.get("signature", "")
        except (KeyError, ValueError, TypeError):
            return web.json_response({"error": "invalid_body"}, status=400)
        if not isinstance(approved, bool):
            return web.json_response({"error": "invalid_body"}, status=400)

        try:
            ack = self.registry.cast_vote(request_id, hotkey, approved, confidence, reasoning_ref, signature)
        except VoteRejected as e:
            payload: dict[str, Any] = {"error": e.reason, "detail": e.detail}
            if e.reason == "already_voted":
                existing = self.registry.get_request(request_id).verdicts.get(hotkey)
                if existing is not None:
                    payload["verdict"] = existing.model_dump(mode="json")
            bt.logging.info({"registry_request": {"endpoint": "votes", "hotkey": _hk(hotkey), "request_id": request_id, "rejected": e.reason}})
            return web.json_response(payload, status=VOTE_REJECTION_STATUS.get(e.reason, 400))

        return web.json_response(ack.model_dump(mode="json"))

    # -- Seeding (local control only) --

    async def _handle_create_goal(self, request: web.Request) -> web.Response:
        if request.remote not in _LOCAL_PEERS:
            return web.json_response({"error": "forbidden"}, status=403)
        try:
            goal = Goal(**(await request.json()))
        except (ValueError, TypeError, ValidationError) as e:
            return web.json_response({"error": f"invalid_body: {e}"}, status=400)
        self.registry.add_goal(goal)
        return web.json_response(goal.model_dump(mode="json"))

    async def _handle_create_request(self, request: web.Request) -> web.Response:
        if request.remote not in _LOCAL_PEERS:
            return web.json_response({"error": "forbidden"}, status=403)
        try:
            body = await request.json()
            req = self.registry.create_request(
                goal_id=int(body["goal_id"]),
                submitter_id=body["submitter_id"],
                proof_ref=body["proof_ref"],
                selected_validators=list(body["selected_validators"]),
                ttl_seconds=float(body.get("ttl_seconds", 86400)),
                request_id=body.get("request_id"),
            )
        except (KeyError, ValueError, TypeError) as e:
            return web.json_response({"error": f"invalid_body: {e}"}, status=400)
        return web.json_response(req.model_dump(mode="json"))


__all__ = ["RegistryHTTPServer", "VOTE_REJECTION_STATUS"]
