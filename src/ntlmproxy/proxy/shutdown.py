"""
Shutdown Coordinator

Turns SIGINT/SIGTERM into an orderly stop: no new connections are
accepted, in-flight handlers (tunnels included) get a bounded grace
period, whatever is still running is cancelled, then the server closes.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Callable, List, Optional

import attrs
import structlog

from ntlmproxy.proxy.listener import ProxyListener

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@attrs.define
class ShutdownCoordinator:
    """
    Waits for a termination signal and drains the listener.

    Example:
        coordinator = ShutdownCoordinator(listener, grace=5.0)
        coordinator.install()
        await coordinator.wait()
        exit_code = await coordinator.shutdown()
    """

    listener: ProxyListener
    grace: Optional[float] = 5.0

    _stop: asyncio.Event = attrs.Factory(asyncio.Event)
    _installed: List[signal.Signals] = attrs.Factory(list)
    _logger: Any = attrs.Factory(lambda: structlog.get_logger())

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """
        Register signal handlers on the running loop.

        Platforms without loop signal support keep the default handlers;
        SIGINT then surfaces as KeyboardInterrupt in the CLI.
        """
        loop = loop or asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except (NotImplementedError, RuntimeError) as e:
                self._logger.debug("signal_handler_unavailable", signal=sig.name, error=str(e))
                continue
            self._installed.append(sig)

    def uninstall(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        while self._installed:
            loop.remove_signal_handler(self._installed.pop())

    def request_shutdown(self, sig: Optional[signal.Signals] = None) -> None:
        if self._stop.is_set():
            return
        self._logger.info("shutdown_requested", signal=sig.name if sig is not None else None)
        self._stop.set()

    async def wait(self) -> None:
        await self._stop.wait()

    async def shutdown(self) -> int:
        """
        Stop accepting, drain, close.

        Returns:
            Process exit status (0)
        """
        self.listener.stop_accepting()
        cancelled = await self.listener.drain(self.grace)
        await self.listener.close()
        self._logger.info("shutdown_complete", cancelled=cancelled)
        return 0


async def run_until_shutdown(
    listener: ProxyListener,
    grace: Optional[float],
    on_started: Optional[Callable[[ProxyListener], None]] = None,
) -> int:
    """Start the listener and serve until a termination signal arrives."""
    coordinator = ShutdownCoordinator(listener, grace=grace)
    await listener.start()
    if on_started is not None:
        on_started(listener)
    coordinator.install()
    try:
        await coordinator.wait()
    finally:
        coordinator.uninstall()
    return await coordinator.shutdown()
