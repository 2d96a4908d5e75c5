"""
Emergency restart guard for the stack-down window.

Between stopping the stack and relaunching it, an interrupted process would
leave every service down. ``StackDownGuard`` brackets that window:

- On entry it registers an ``atexit`` hook and SIGTERM/SIGHUP handlers that
  cancel the running task, so a signal unwinds through the guard.
- If the window is left by cancellation, interrupt or ``SystemExit`` before
  ``mark_restarted()`` was called, it awaits a best-effort ``up_all()`` with
  whatever configuration is on disk, then lets the exception propagate.
- If the process exits while the window is still open (the ``atexit``
  hook), it runs the same restart on a fresh event loop.

Ordinary exceptions are left to the calling controller unless the guard is
created with ``restart_on_error=True``.
"""

from __future__ import annotations

import asyncio
import atexit
import signal
from types import TracebackType

from stackpilot.logging import get_logger
from stackpilot.runtime.base import ContainerRuntime

logger = get_logger(__name__)

GUARDED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


class StackDownGuard:
    """
    Async context manager bracketing "services stopped, not yet restarted".

    Example:
        >>> async with StackDownGuard(runtime, operation="rollback") as guard:
        ...     await launcher.stop_all(services)
        ...     result = await launcher.launch_all(services)
        ...     guard.mark_restarted()
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        operation: str,
        install_signal_handlers: bool = True,
        restart_on_error: bool = False,
    ) -> None:
        self.runtime = runtime
        self.operation = operation
        self.restart_on_error = restart_on_error
        self.install_signal_handlers = install_signal_handlers
        self.window_open = False
        self.emergency_restart_attempted = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._signals: list[signal.Signals] = []

    def mark_restarted(self) -> None:
        """Close the window: services have been relaunched."""
        self.window_open = False

    async def __aenter__(self) -> StackDownGuard:
        self.window_open = True
        atexit.register(self._atexit_restart)

        if self.install_signal_handlers:
            self._loop = asyncio.get_running_loop()
            task = asyncio.current_task()
            for sig in GUARDED_SIGNALS:
                try:
                    self._loop.add_signal_handler(sig, self._on_signal, sig, task)
                    self._signals.append(sig)
                except (NotImplementedError, RuntimeError, ValueError):
                    logger.debug("Cannot install signal handler", extra={"signal": sig.name})

        logger.debug("Stack-down window opened", extra={"operation": self.operation})
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            interrupted = exc is not None and (
                self.restart_on_error or not isinstance(exc, Exception)
            )
            if self.window_open and interrupted:
                logger.critical(
                    "Interrupted while services are stopped, attempting emergency restart",
                    extra={"operation": self.operation, "reason": type(exc).__name__},
                )
                await self.emergency_restart()
        finally:
            self._teardown()

    async def emergency_restart(self) -> bool:
        """Best-effort ``up_all()``; never raises."""
        self.emergency_restart_attempted = True
        try:
            result = await self.runtime.up_all()
        except Exception as e:
            logger.critical("Emergency restart failed", extra={"error": str(e)})
            return False
        if result.ok:
            logger.warning("Emergency restart issued")
            self.window_open = False
            return True
        logger.critical(
            "Emergency restart failed",
            extra={"stderr": result.stderr.strip()[-500:]},
        )
        return False

    def _on_signal(self, sig: signal.Signals, task: asyncio.Task[object] | None) -> None:
        logger.warning(
            f"Received {sig.name} during {self.operation}",
            extra={"operation": self.operation},
        )
        if task is not None and not task.done():
            task.cancel()

    def _atexit_restart(self) -> None:
        if not self.window_open or self.emergency_restart_attempted:
            return
        logger.critical(
            "Process exiting while services are stopped, attempting emergency restart",
            extra={"operation": self.operation},
        )
        asyncio.run(self.emergency_restart())

    def _teardown(self) -> None:
        atexit.unregister(self._atexit_restart)
        if self._loop is not None:
            for sig in self._signals:
                self._loop.remove_signal_handler(sig)
        self._signals.clear()
        self._loop = None
        logger.debug("Stack-down window closed", extra={"operation": self.operation})
