"""Single-orchestrator guard and signal handling for the long-running ``up`` command."""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Coroutine, Iterator, Optional

from .errors import OrchestratorAlreadyRunning

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130

SIGNAL_EXIT_CODES = {signal.SIGINT: EXIT_INTERRUPTED, signal.SIGTERM: 0, signal.SIGHUP: 0}


class OrchestratorLock:
    """File-lock based guard allowing one orchestrator per runtime directory."""

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._fd: Optional[int] = None
        self._released = False

    def acquire(self) -> None:
        """Attempt to acquire the lock; raises if already held."""

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o664)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            existing_pid = None
            try:
                with os.fdopen(fd, "r") as fh:
                    data = fh.read().strip()
                    if data:
                        existing_pid = data
            except (OSError, ValueError):  # Best-effort PID inspection  # policy_guard: allow-silent-handler
                existing_pid = None
                try:
                    os.close(fd)
                except OSError:  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
                    logger.debug("Lock descriptor already closed")

            suffix = f" (PID {existing_pid})." if existing_pid else "."
            raise OrchestratorAlreadyRunning(
                f"Another devherd orchestrator owns {self.lock_path.parent}" + suffix
            ) from exc

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode("utf-8"))
        os.fsync(fd)
        self._fd = fd

    def release(self) -> None:
        """Release the lock and clean up the lock file."""

        if self._released or self._fd is None:
            return

        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            try:
                os.close(self._fd)
            except OSError:  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
                logger.debug("Lock descriptor already closed")
            self._fd = None

        try:
            self.lock_path.unlink()
        except FileNotFoundError:  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
            logger.debug("Lock file %s already removed", self.lock_path)

        self._released = True


@contextmanager
def orchestrator_guard(lock_path: Path) -> Iterator[OrchestratorLock]:
    """Context manager enforcing one running orchestrator per runtime directory."""

    lock = OrchestratorLock(lock_path)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()


class ShutdownSignal:
    """Turns SIGINT/SIGTERM/SIGHUP into an awaitable event on the running loop."""

    def __init__(self) -> None:
        self.event = asyncio.Event()
        self.received: Optional[int] = None
        self._installed: list = []

    @property
    def exit_code(self) -> int:
        if self.received is None:
            return 0
        return SIGNAL_EXIT_CODES.get(self.received, 0)

    def trigger(self, signum: int) -> None:
        if self.received is None:
            self.received = signum
            logger.info("Received %s; shutting down", signal.Signals(signum).name)
        else:
            logger.info("Shutdown already in progress")
        self.event.set()

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for signum in SIGNAL_EXIT_CODES:
            try:
                loop.add_signal_handler(signum, self.trigger, signum)
            except (NotImplementedError, RuntimeError, ValueError):  # policy_guard: allow-silent-handler
                # Signals can only be installed from the main thread.
                logger.debug("Cannot install handler for %s", signal.Signals(signum).name)
                continue
            self._installed.append(signum)

    def uninstall(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for signum in self._installed:
            loop.remove_signal_handler(signum)
        self._installed = []

    async def wait(self) -> int:
        await self.event.wait()
        return self.exit_code


OrchestratorFactory = Callable[[ShutdownSignal], Coroutine[Any, Any, int]]


def run_async_service(factory: OrchestratorFactory, *, lock_path: Path) -> int:
    """Run the orchestrator coroutine under the runtime-directory lock.

    Returns the coroutine's exit code; a KeyboardInterrupt that slips past the
    signal handlers maps to 130.
    """

    with orchestrator_guard(lock_path):

        async def _main() -> int:
            shutdown = ShutdownSignal()
            shutdown.install()
            try:
                return await factory(shutdown)
            finally:
                shutdown.uninstall()

        try:
            return asyncio.run(_main())
        except KeyboardInterrupt:  # Expected exception in operation  # policy_guard: allow-silent-handler
            logger.info("Orchestrator interrupted by user")
            return EXIT_INTERRUPTED
