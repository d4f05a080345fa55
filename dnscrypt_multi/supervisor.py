from __future__ import annotations

import asyncio
import contextlib
import logging
import subprocess
from typing import Awaitable, Callable, ContextManager, Iterable, List, Sequence, Tuple

from .ranges import EndpointRange
from .types import Candidate, Endpoint, Instance, InstanceState, RunState

LOGGER = logging.getLogger("Multi.Supervisor")

LaunchFunc = Callable[[Endpoint, Candidate], Instance]
ValidateFunc = Callable[[Instance], Awaitable[bool]]
SignalGuard = Callable[[], ContextManager[None]]
_STOP_TIMEOUT = 10.0


def check_capacity(endpoints: EndpointRange, max_instances: int) -> bool:
    """Warn when the endpoint supply cannot reach the instance ceiling."""

    if endpoints.has_capacity(max_instances):
        return True
    LOGGER.warning(
        "Specified local ip-port pairs (%s / %s) are fewer than the maximum "
        "number of instances (%s).",
        endpoints.addresses,
        endpoints.ports,
        max_instances,
    )
    return False


def stop_process(instance: Instance, reason: str, timeout: float = _STOP_TIMEOUT) -> None:
    process = instance.process
    if process.poll() is not None:
        return
    LOGGER.info("Stopping instance %s (%s).", instance.describe(), reason)
    process.terminate()
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        LOGGER.warning(
            "Instance %s did not exit within %.1fs; forcing kill.",
            instance.describe(),
            timeout,
        )
        process.kill()
        process.wait()


class InstanceSupervisor:
    """Assign latency-ranked candidates to endpoints and start their children.

    Candidates are consumed through a single cursor, so every candidate is
    tried at most once and always in best-latency-first order. A candidate that
    fails to spawn or to validate is replaced on the same endpoint.
    """

    def __init__(
        self,
        endpoints: Iterable[Endpoint],
        candidates: Sequence[Candidate],
        state: RunState,
        *,
        launch_fn: LaunchFunc,
        validate_fn: ValidateFunc | None = None,
        instance_delay: float = 0.0,
        stop_timeout: float = _STOP_TIMEOUT,
        signal_guard: SignalGuard = contextlib.nullcontext,
    ) -> None:
        self._endpoints = endpoints
        self._candidates = list(candidates)
        self._state = state
        self._launch = launch_fn
        self._validate = validate_fn
        self._instance_delay = instance_delay
        self._stop_timeout = stop_timeout
        self._signal_guard = signal_guard
        self._cursor = 0
        self.rejected: List[Instance] = []
        self.spawn_failures = 0

    @property
    def remaining(self) -> int:
        return len(self._candidates) - self._cursor

    async def allocate(self) -> Tuple[Instance, ...]:
        """Fill endpoints in order until the ceiling or the candidates run out."""

        for endpoint in self._endpoints:
            if self._state.quitting:
                LOGGER.info("Quit requested; not starting further instances.")
                break

            instance = await self._fill(endpoint)
            if instance is None:
                if not self._state.quitting:
                    LOGGER.warning(
                        "Resolver entries exhausted after starting %s of %s instance(s).",
                        len(self._state.instances),
                        self._state.max_instances,
                    )
                break

            if self._state.full:
                break
            if self._instance_delay > 0 and self.remaining:
                await asyncio.sleep(self._instance_delay)

        return self._state.instances

    async def _fill(self, endpoint: Endpoint) -> Instance | None:
        while self._cursor < len(self._candidates):
            if self._state.quitting:
                return None
            candidate = self._candidates[self._cursor]
            self._cursor += 1
            instance = await self._try_candidate(endpoint, candidate)
            if instance is not None:
                return instance
        return None

    async def _try_candidate(
        self, endpoint: Endpoint, candidate: Candidate
    ) -> Instance | None:
        # Signals wait until the child is published, so a stop always reaches it.
        try:
            with self._signal_guard():
                instance = self._launch(endpoint, candidate)
                self._state.begin(instance)
        except OSError as exc:
            self.spawn_failures += 1
            LOGGER.error(
                "Failed to create instance for %s (%s): %s",
                candidate.resolver_address,
                endpoint,
                exc,
            )
            return None

        if self._validate is not None:
            instance.state = InstanceState.VALIDATING
            if not await self._validate(instance):
                await self._reject(instance, "failed functional check")
                return None

        if self._state.quitting:
            await self._reject(instance, "quit requested")
            return None

        instance.state = InstanceState.ACTIVE
        self._state.register(instance)
        LOGGER.info(
            "Instance %s is active (pid=%s, %s/%s).",
            instance.describe(),
            instance.pid,
            len(self._state.instances),
            self._state.max_instances,
        )
        return instance

    async def _reject(self, instance: Instance, reason: str) -> None:
        instance.state = InstanceState.REJECTED
        await asyncio.to_thread(stop_process, instance, reason, self._stop_timeout)
        self._state.release(instance)
        self.rejected.append(instance)
