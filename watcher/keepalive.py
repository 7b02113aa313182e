"""Plain HTTP liveness endpoint for hosts that ping the bot to keep it awake."""

from __future__ import annotations

import logging
from typing import Optional

from aiohttp import web

from .config import KeepaliveConfig

log = logging.getLogger(__name__)

ALIVE_TEXT = "FSG WATCHER alive"


async def handle_root(request: web.Request) -> web.Response:
    return web.Response(text=ALIVE_TEXT)


def build_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/", handle_root)
    return app


class KeepaliveServer:
    def __init__(self, config: KeepaliveConfig) -> None:
        self.config = config
        self.app = build_app()
        self._runner: Optional[web.AppRunner] = None

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, self.config.host, self.config.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        log.info(
            "Keep-alive server running on %s:%s", self.config.host, self.config.port
        )

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
