from __future__ import annotations

import contextlib
import logging
import signal
import subprocess
import time
from types import FrameType
from typing import Any, Dict, Iterable, Iterator

from .types import Instance, RunPhase, RunState

LOGGER = logging.getLogger("Multi.Shutdown")

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    """Own the signal handlers and the end-of-run wait for a ``RunState``."""

    def __init__(self, state: RunState) -> None:
        self._state = state
        self._previous: Dict[int, Any] = {}
        self.caught_signal: int | None = None
        self.signalled = 0
        self._holding = False
        self._deferred = False

    @property
    def state(self) -> RunState:
        return self._state

    def install(self) -> None:
        for signum in SHUTDOWN_SIGNALS:
            self._previous[signum] = signal.signal(signum, self.handle_signal)

    def restore(self) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def handle_signal(self, signum: int, frame: FrameType | None) -> None:
        # No logging here: the signal may have interrupted a handler's write.
        self.caught_signal = signum
        self._state.request_quit()
        self._state.phase = RunPhase.STOPPING
        if self._holding:
            self._deferred = True
            return
        self.signalled = self._terminate_children()
        raise SystemExit(1)

    @contextlib.contextmanager
    def defer_signals(self) -> Iterator[None]:
        """Hold a shutdown signal until the block exits, then act on it.

        Used around spawning a child and publishing it to the run state, so a
        signal never unwinds the spawn path before the child can be stopped.
        """

        self._holding = True
        try:
            yield
        finally:
            self._holding = False
            if self._deferred:
                self._deferred = False
                self.signalled = self._terminate_children()
                raise SystemExit(1)

    def log_caught_signal(self) -> None:
        if self.caught_signal is None:
            return
        LOGGER.info(
            "%s caught; sent a stop signal to %s instance(s).",
            signal.Signals(self.caught_signal).name,
            self.signalled,
        )

    def stop_instances(self) -> int:
        """Send a stop signal to every known child; return how many were signalled."""

        LOGGER.info("Stopping instances.")
        return self._terminate_children()

    def _terminate_children(self) -> int:
        stopped = 0
        for instance in self._state.snapshot():
            if instance.process.poll() is not None:
                continue
            try:
                instance.process.terminate()
            except ProcessLookupError:
                continue
            stopped += 1
        return stopped

    def wait_all(self) -> int:
        """Block until every tracked child exits; 0 only if all exited with 0."""

        codes = []
        for instance in self._state.instances:
            code = instance.process.wait()
            LOGGER.info(
                "Instance %s (pid=%s) exited with code %s.",
                instance.describe(),
                instance.pid,
                code,
            )
            codes.append(code)

        self._state.exit_status = 0 if codes and all(code == 0 for code in codes) else 1
        self._state.phase = RunPhase.STOPPED
        return self._state.exit_status

    def shutdown(self, timeout: float = 15.0) -> None:
        """Terminate every known child, escalating to kill after ``timeout``."""

        self._state.request_quit()
        self._state.phase = RunPhase.STOPPING
        children = self._state.snapshot()
        if children:
            self.stop_instances()
            _reap(children, timeout)
        self._state.phase = RunPhase.STOPPED


def _reap(children: Iterable[Instance], timeout: float) -> None:
    deadline = time.monotonic() + timeout
    for instance in children:
        process = instance.process
        if process.poll() is not None:
            continue
        remaining = max(0.0, deadline - time.monotonic())
        try:
            process.wait(timeout=remaining)
        except subprocess.TimeoutExpired:
            LOGGER.warning(
                "Instance %s did not exit within timeout. Sending kill.",
                instance.describe(),
            )
            process.kill()
            process.wait()
