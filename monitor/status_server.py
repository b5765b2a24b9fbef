"""Read-only HTTP status endpoint for the recovery controller."""

import logging

from aiohttp import web

from config import STATUS_HOST, STATUS_PORT
from trading.recovery_types import ControllerState

logger = logging.getLogger(__name__)


class StatusServer:
    def __init__(self, state: ControllerState, *, host: str = STATUS_HOST, port: int = STATUS_PORT) -> None:
        self.state = state
        self.host = host
        self.port = port
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/status", self._handle_status)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> None:
        self.runner = web.AppRunner(self.build_app())
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        logger.info("Status server listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()
            self.runner = None

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, **self.state.snapshot()})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "last_block": self.state.last_block})
