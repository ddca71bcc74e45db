"""Model-inference backends: prompt in, text out.

OllamaBackend talks to a local Ollama daemon. OpenAIChatBackend talks to any
OpenAI-compatible chat completions endpoint. Both use a low temperature so
validators judging the same proof converge on the same verdict.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import bittensor as bt
import httpx

from .prompt import SYSTEM_PROMPT


@runtime_checkable
class InferenceBackend(Protocol):
    """Interface for model backends."""

    model: str

    async def generate(self, prompt: str) -> str:
        """Run one completion and return the raw text."""
        ...

    async def test_connection(self) -> bool:
        """Check the backend is reachable and the model is available."""
        ...

    async def close(self) -> None:
        ...


class OllamaBackend:
    """Local Ollama inference over its HTTP API."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2:3b",
        timeout: float = 60.0,
        temperature: float = 0.3,
        top_p: float = 0.9,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def generate(self, prompt: str) -> str:
        resp = await self._client.post("/api/generate", json={
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {"temperature": self.temperature, "top_p": self.top_p},
        })
        resp.raise_for_status()
        return resp.json().get("response", "")

    async def list_models(self) -> list[dict[str, Any]]:
        try:
            resp = await self._client.get("/api/tags")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            bt.logging.error({"ollama": {"event": "list_models_failed", "error": str(e)}})
            return []
        return resp.json().get("models", [])

    async def test_connection(self) -> bool:
        """True if the daemon answers. Warns when the model is not pulled yet."""
        try:
            resp = await self._client.get("/api/tags")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            bt.logging.error({"ollama": {"event": "unreachable", "url": self.base_url, "error": str(e)}})
            return False

        names = [m.get("name") for m in resp.json().get("models", [])]
        if self.model not in names:
            bt.logging.warning({"ollama": {"event": "model_missing", "model": self.model, "available": names, "hint": f"ollama pull {self.model}"}})
        else:
            bt.logging.info({"ollama": {"event": "connected", "model": self.model}})
        return True

    async def pull_model(self, name: str | None = None) -> bool:
        name = name or self.model
        bt.logging.info({"ollama": {"event": "pulling", "model": name}})
        try:
            resp = await self._client.post("/api/pull", json={"name": name, "stream": False}, timeout=None)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            bt.logging.error({"ollama": {"event": "pull_failed", "model": name, "error": str(e)}})
            return False
        bt.logging.info({"ollama": {"event": "pulled", "model": name}})
        return True


class OpenAIChatBackend:
    """OpenAI-compatible ``/v1/chat/completions`` inference."""

    def __init__(
        self,
        base_url: str = "https://api.openai.com",
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        timeout: float = 60.0,
        temperature: float = 0.3,
        top_p: float = 0.9,
        max_tokens: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.max_tokens = max_tokens
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, headers=headers, transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def generate(self, prompt: str) -> str:
        resp = await self._client.post("/v1/chat/completions", json={
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
        })
        resp.raise_for_status()
        choices = resp.json().get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content") or ""

    async def test_connection(self) -> bool:
        try:
            resp = await self._client.get("/v1/models")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            bt.logging.error({"openai_backend": {"event": "unreachable", "url": self.base_url, "error": str(e)}})
            return False
        bt.logging.info({"openai_backend": {"event": "connected", "model": self.model}})
        return True


def build_backend(provider: str, **kwargs: Any) -> InferenceBackend:
    """Construct a backend by provider name (``ollama`` or ``openai``)."""
    if provider == "ollama":
        kwargs.pop("api_key", None)
        kwargs.pop("max_tokens", None)
        return OllamaBackend(**kwargs)
    if provider == "openai":
        return OpenAIChatBackend(**kwargs)
    raise ValueError(f"Unknown model provider: {provider}")


__all__ = ["InferenceBackend", "OllamaBackend", "OpenAIChatBackend", "build_backend"]
