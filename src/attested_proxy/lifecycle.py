"""
Joint lifecycle of the bootstrap endpoint and the proxy.

    STARTING -> RUNNING -> DRAINING -> STOPPED

Each server runs as a supervised task that binds its listener, waits for the
shared ShutdownSignal and then drains. The signal fires on an operator
request (signal handler or request_shutdown) or when any supervised task
fails; every task observes it, so both servers are always asked to stop
together. run() is the single join point and returns once both have.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from .server import ManagedServer

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class ShutdownSignal:
    """Broadcast termination flag; the first reason given is kept."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def trigger(self, reason: str) -> bool:
        """Set the signal. Returns False if it was already set."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        logger.info("shutdown requested: %s", reason)
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class LifecycleResult:
    reason: Optional[str]
    failures: Dict[str, BaseException] = field(default_factory=dict)

    @property
    def clean(self) -> bool:
        return not self.failures


class ServiceLifecycleCoordinator:
    """Starts servers together and stops them together."""

    def __init__(self, servers: Sequence[ManagedServer], shutdown: Optional[ShutdownSignal] = None):
        if not servers:
            raise ValueError("at least one server is required")
        self.servers = list(servers)
        self.shutdown = shutdown if shutdown is not None else ShutdownSignal()
        self.state = LifecycleState.STARTING
        self._state_changed = asyncio.Condition()

    def request_shutdown(self, reason: str = "termination requested") -> None:
        self.shutdown.trigger(reason)

    def install_signal_handlers(self, signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)) -> None:
        """Route process signals to request_shutdown. Must be called from the running loop."""
        loop = asyncio.get_running_loop()
        for sig in signals:
            loop.add_signal_handler(sig, self.request_shutdown, f"received {signal.Signals(sig).name}")

    async def wait_for_state(self, *states: LifecycleState) -> LifecycleState:
        """Wait until the coordinator is in one of states (or STOPPED)."""
        wanted = set(states) | {LifecycleState.STOPPED}
        async with self._state_changed:
            await self._state_changed.wait_for(lambda: self.state in wanted)
            return self.state

    async def _set_state(self, state: LifecycleState) -> None:
        async with self._state_changed:
            self.state = state
            self._state_changed.notify_all()
        logger.info("lifecycle state: %s", state.value)

    async def _supervise(self, server: ManagedServer, started: asyncio.Event) -> None:
        try:
            await server.start()
        except Exception as e:
            logger.error("%s failed to start: %s", server.name, e)
            self.shutdown.trigger(f"{server.name} failed to start")
            raise
        started.set()
        try:
            await self.shutdown.wait()
        finally:
            try:
                await server.stop()
            except Exception as e:
                logger.error("%s failed to stop cleanly: %s", server.name, e)
                raise

    async def run(self) -> LifecycleResult:
        """Run all servers until shutdown, then drain them and report failures."""
        await self._set_state(LifecycleState.STARTING)
        started: List[asyncio.Event] = [asyncio.Event() for _ in self.servers]
        tasks = [
            asyncio.create_task(self._supervise(server, event), name=f"serve {server.name}")
            for server, event in zip(self.servers, started)
        ]

        try:
            all_started = asyncio.gather(*(event.wait() for event in started))
            stop_waiter = asyncio.ensure_future(self.shutdown.wait())
            try:
                await asyncio.wait({all_started, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                all_started.cancel()
                stop_waiter.cancel()

            if not self.shutdown.is_set():
                await self._set_state(LifecycleState.RUNNING)
                await self.shutdown.wait()
        finally:
            self.shutdown.trigger("coordinator exiting")
            await self._set_state(LifecycleState.DRAINING)
            results = await asyncio.gather(*tasks, return_exceptions=True)
            await self._set_state(LifecycleState.STOPPED)

        failures = {
            server.name: result
            for server, result in zip(self.servers, results)
            if isinstance(result, BaseException)
        }
        return LifecycleResult(reason=self.shutdown.reason, failures=failures)
