"""Read-only diagnostics endpoint for a validator node.

Routes:
  GET /health - identity, active flag, reputation, total validations
  GET /stats  - aggregate success/failure counters
"""

from __future__ import annotations

import bittensor as bt
from aiohttp import web

from lockin.validator.node import ValidatorNode


class HealthServer:
    """Lightweight async HTTP server exposing node diagnostics."""

    def __init__(self, node: ValidatorNode, host: str = "0.0.0.0", port: int = 3001):
        self.node = node
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/stats", self._handle_stats)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        bt.logging.info({"health_http": {"status": "started", "port": self.port}})

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            bt.logging.info({"health_http": "stopped"})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(self.node.health())

    async def _handle_stats(self, request: web.Request) -> web.Response:
        return web.json_response(self.node.get_stats())


__all__ = ["HealthServer"]
