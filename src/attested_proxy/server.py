"""aiohttp listener with a bounded drain, shared by the bootstrap endpoint and the proxy."""

import asyncio
import logging
import ssl
from typing import List, Optional

from aiohttp import web

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 10.0

# Extra time allowed on top of the grace period for closing sockets and
# running cleanup hooks before stop() gives up waiting.
STOP_MARGIN = 1.0


class ManagedServer:
    """
    One aiohttp application bound to one address.

    start() binds the listener and raises OSError if that fails. stop()
    closes the listener first, so no new connections are accepted, then
    gives in-flight requests up to grace_period seconds before their
    connections are closed.
    """

    def __init__(
        self,
        name: str,
        app: web.Application,
        host: str,
        port: int,
        ssl_context: Optional[ssl.SSLContext] = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        **runner_kwargs,
    ):
        self.name = name
        self.app = app
        self.host = host
        self.port = port
        self.ssl_context = ssl_context
        self.grace_period = grace_period
        self._runner_kwargs = runner_kwargs
        self._runner: Optional[web.AppRunner] = None

    @property
    def addresses(self) -> List:
        """Bound socket addresses, useful when started on port 0."""
        if self._runner is None:
            return []
        return list(self._runner.addresses)

    @property
    def bound_port(self) -> int:
        addresses = self.addresses
        if not addresses:
            raise RuntimeError(f"{self.name} is not listening")
        return addresses[0][1]

    async def start(self) -> None:
        runner = web.AppRunner(
            self.app,
            shutdown_timeout=self.grace_period,
            **self._runner_kwargs,
        )
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port, ssl_context=self.ssl_context)
        try:
            await site.start()
        except BaseException:
            await runner.cleanup()
            raise
        self._runner = runner
        scheme = "https" if self.ssl_context is not None else "http"
        logger.info("%s listening on %s://%s:%d", self.name, scheme, self.host, self.bound_port)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        logger.info("stopping %s (grace period %.1fs)", self.name, self.grace_period)
        try:
            await asyncio.wait_for(runner.cleanup(), timeout=self.grace_period + STOP_MARGIN)
        except asyncio.TimeoutError:
            logger.error("%s did not finish draining in time; abandoning remaining connections", self.name)
        logger.info("%s stopped", self.name)
