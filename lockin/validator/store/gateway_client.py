"""IPFS gateway client with ordered fallback and pluggable upload backends.

Reads go to the primary gateway first, then to each fallback gateway in
order, short-circuiting on the first success. Nothing is cached, so a
transient failure never poisons later lookups.

Uploads go to the first configured backend that accepts the payload:
a local IPFS node, web3.storage, then Pinata. A deterministic mock hash
is only returned when ``allow_mock_upload`` was set explicitly.
"""

from __future__ import annotations

import hashlib
import json
import re
import time
from typing import Any

import bittensor as bt
import httpx

from lockin.validator.errors import NotFound, RetrievalFailure, Timeout, UploadFailure
from lockin.validator.models import ProofPayload

DEFAULT_GATEWAYS = (
    "https://ipfs.io",
    "https://cloudflare-ipfs.com",
    "https://gateway.pinata.cloud",
)

WEB3_STORAGE_URL = "https://api.web3.storage/upload"
PINATA_URL = "https://api.pinata.cloud/pinning/pinJSONToIPFS"

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_CID_RE = re.compile(r"^(Qm[1-9A-HJ-NP-Za-km-z]{44,}|b[a-z2-7]{58,})$")


def _b58encode(raw: bytes) -> str:
    num = int.from_bytes(raw, "big")
    out = ""
    while num > 0:
        num, rem = divmod(num, 58)
        out = _B58_ALPHABET[rem] + out
    pad = len(raw) - len(raw.lstrip(b"\0"))
    return "1" * pad + out


def strip_scheme(ref: str) -> str:
    """Drop an ``ipfs://`` prefix and surrounding slashes."""
    ref = ref.strip()
    if ref.startswith("ipfs://"):
        ref = ref[len("ipfs://"):]
    return ref.strip("/")


def is_valid_hash(ref: str) -> bool:
    """Shape check for CIDv0 / base32 CIDv1 hashes."""
    return bool(_CID_RE.match(strip_scheme(ref)))


def mock_hash(payload: Any) -> str:
    """Deterministic CIDv0-shaped hash of a payload, for offline runs only."""
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode()
    return _b58encode(b"\x12\x20" + hashlib.sha256(raw).digest())


def payload_from_json(data: Any) -> ProofPayload:
    """Normalize the proof JSON shapes seen in the wild into a ProofPayload."""
    if not isinstance(data, dict):
        return ProofPayload(text=str(data))

    text = data.get("text") or data.get("proofText") or data.get("proof_text") or ""
    images = data.get("images") or data.get("proofImages") or data.get("proof_images") or []
    if not images and data.get("screenshot"):
        images = [data["screenshot"]]
    metadata = data.get("metadata") or {}
    return ProofPayload(
        text=str(text),
        images=tuple(str(i) for i in images),
        metadata=metadata if isinstance(metadata, dict) else {"value": metadata},
    )


class GatewayArtifactStore:
    """Content-addressed store client over one or more HTTP gateways."""

    def __init__(
        self,
        gateways: list[str] | tuple[str, ...] = DEFAULT_GATEWAYS,
        timeout: float = 30.0,
        file_timeout: float = 60.0,
        ipfs_api_url: str | None = None,
        web3_storage_token: str | None = None,
        pinata_jwt: str | None = None,
        allow_mock_upload: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not gateways:
            raise ValueError("at least one gateway is required")
        self.gateways = [g.rstrip("/") for g in gateways]
        self.timeout = timeout
        self.file_timeout = file_timeout
        self.ipfs_api_url = ipfs_api_url.rstrip("/") if ipfs_api_url else None
        self.web3_storage_token = web3_storage_token
        self.pinata_jwt = pinata_jwt
        self.allow_mock_upload = allow_mock_upload
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

        self.gateway_failures = 0
        self.fetches_ok = 0

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def gateway_url(gateway: str, ref: str) -> str:
        return f"{gateway}/ipfs/{strip_scheme(ref)}"

    # -- Reads --

    async def _get_with_fallback(
        self,
        ref: str,
        timeout: float,
        headers: dict[str, str] | None = None,
        attempts: list[tuple[str, str]] | None = None,
    ) -> httpx.Response:
        """GET ``ref`` from each gateway in order until one answers 2xx."""
        failed: list[tuple[str, str]] = attempts if attempts is not None else []
        kinds: set[str] = set()

        for gateway in self.gateways:
            url = self.gateway_url(gateway, ref)
            try:
                resp = await self._client.get(url, headers=headers, timeout=timeout)
            except httpx.TimeoutException:
                failed.append((gateway, "timeout"))
                kinds.add("timeout")
            except httpx.TransportError as e:
                failed.append((gateway, str(e) or type(e).__name__))
                kinds.add("transport")
            else:
                if resp.is_success:
                    self.fetches_ok += 1
                    if failed:
                        bt.logging.info({"artifact_store": {"event": "fallback_hit", "ref": ref, "gateway": gateway, "failed": len(failed)}})
                    return resp
                failed.append((gateway, f"http {resp.status_code}"))
                kinds.add("not_found" if resp.status_code == 404 else "http_error")

            self.gateway_failures += 1
            bt.logging.warning({"artifact_store": {"event": "gateway_failed", "ref": ref, "gateway": gateway, "error": failed[-1][1]}})

        bt.logging.error({"artifact_store": {"event": "all_gateways_failed", "ref": ref, "attempts": len(failed)}})
        if kinds == {"not_found"}:
            raise NotFound(ref, list(failed))
        if kinds == {"timeout"}:
            raise Timeout(ref, list(failed))
        raise RetrievalFailure(ref, list(failed))

    async def fetch(
        self, ref: str, attempts: list[tuple[str, str]] | None = None,
    ) -> ProofPayload:
        """Fetch a proof payload.

        Args:
            ref: Content hash, optionally ``ipfs://``-prefixed.
            attempts: Optional list that receives ``(gateway, error)`` for each
                failed gateway, in the order they were tried.

        Raises:
            NotFound: every gateway answered 404.
            Timeout: every gateway timed out.
            RetrievalFailure: every gateway failed for mixed reasons.
        """
        start = time.monotonic()
        resp = await self._get_with_fallback(
            ref, self.timeout, headers={"Accept": "application/json"}, attempts=attempts,
        )
        try:
            data = resp.json()
        except ValueError:
            data = resp.text
        bt.logging.debug({"artifact_store": {"event": "fetched", "ref": ref, "seconds": round(time.monotonic() - start, 3)}})
        return payload_from_json(data)

    async def fetch_file(self, ref: str) -> bytes:
        """Fetch a raw artifact (image, etc.) with the same fallback."""
        resp = await self._get_with_fallback(ref, self.file_timeout)
        return resp.content

    # -- Writes --

    async def upload(self, payload: dict[str, Any]) -> str:
        """Publish a JSON artifact to the first backend that accepts it.

        Raises:
            UploadFailure: no backend accepted the payload and mock
                uploads are disabled.
        """
        body = json.dumps(payload, sort_keys=True, indent=2, default=str)
        errors: list[str] = []

        for name, backend in self._backends():
            try:
                ref = await backend(payload, body)
            except (httpx.HTTPError, KeyError, ValueError) as e:
                errors.append(f"{name}: {e}")
                bt.logging.warning({"artifact_store": {"event": "upload_failed", "backend": name, "error": str(e)}})
                continue
            bt.logging.info({"artifact_store": {"event": "uploaded", "backend": name, "ref": ref}})
            return ref

        if self.allow_mock_upload:
            ref = mock_hash(payload)
            bt.logging.warning({"artifact_store": {"event": "mock_upload", "ref": ref, "note": "no durable upload backend, artifact not published"}})
            return ref

        raise UploadFailure("; ".join(errors) or "no upload backend configured")

    def _backends(self):
        if self.ipfs_api_url:
            yield "ipfs_node", self._upload_ipfs_node
        if self.web3_storage_token:
            yield "web3_storage", self._upload_web3_storage
        if self.pinata_jwt:
            yield "pinata", self._upload_pinata

    async def _upload_ipfs_node(self, payload: dict[str, Any], body: str) -> str:
        resp = await self._client.post(
            f"{self.ipfs_api_url}/api/v0/add",
            files={"file": ("reasoning.json", body.encode(), "application/json")},
        )
        resp.raise_for_status()
        return resp.json()["Hash"]

    async def _upload_web3_storage(self, payload: dict[str, Any], body: str) -> str:
        resp = await self._client.post(
            WEB3_STORAGE_URL,
            content=body.encode(),
            headers={
                "Authorization": f"Bearer {self.web3_storage_token}",
                "Content-Type": "application/json",
            },
        )
        resp.raise_for_status()
        return resp.json()["cid"]

    async def _upload_pinata(self, payload: dict[str, Any], body: str) -> str:
        resp = await self._client.post(
            PINATA_URL,
            json={
                "pinataContent": payload,
                "pinataMetadata": {"name": f"validation-{int(time.time() * 1000)}.json"},
            },
            headers={"Authorization": f"Bearer {self.pinata_jwt}"},
        )
        resp.raise_for_status()
        return resp.json()["IpfsHash"]


__all__ = [
    "DEFAULT_GATEWAYS",
    "GatewayArtifactStore",
    "is_valid_hash",
    "mock_hash",
    "payload_from_json",
    "strip_scheme",
]
