from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Sequence, Tuple

from .config import WAIT_FOR_CONNECTION_PAUSE, WAIT_FOR_CONNECTION_TIMEOUT
from .errors import SystemSetupError
from .logs import VERBOSE
from .types import Candidate

LOGGER = logging.getLogger("Multi.Probe")

PortCheckFunc = Callable[[str, int, float], Awaitable["float | None"]]


@dataclass(frozen=True)
class ProbeResult:
    """Candidates split by reachability; ``reachable`` is sorted by latency."""

    reachable: List[Candidate] = field(default_factory=list)
    unreachable: List[Candidate] = field(default_factory=list)


async def _connect(host: str, port: int, timeout: float) -> float:
    start = time.monotonic()
    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    latency = time.monotonic() - start
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return latency


async def check_tcp_port(host: str, port: int, timeout: float) -> float | None:
    """Return the time taken to open a TCP connection, or None on failure."""

    try:
        return await _connect(host, port, timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        LOGGER.debug("Port check for %s:%s failed: %r", host, port, exc)
        return None


async def probe_candidates(
    candidates: Sequence[Candidate],
    *,
    concurrency: int,
    timeout: float,
    check_fn: PortCheckFunc = check_tcp_port,
) -> ProbeResult:
    """Probe candidates in batches of at most ``concurrency`` parallel checks."""

    if concurrency <= 0:
        raise ValueError("Probe concurrency must be a positive integer.")

    for start in range(0, len(candidates), concurrency):
        batch = candidates[start : start + concurrency]
        for candidate in batch:
            LOGGER.info("Checking resolver address %s.", candidate.resolver_address)
            LOGGER.log(VERBOSE, "Timeout is %s.", timeout)
        latencies = await asyncio.gather(
            *(
                check_fn(candidate.resolver_host, candidate.resolver_port, timeout)
                for candidate in batch
            )
        )
        for candidate, latency in zip(batch, latencies):
            candidate.record_latency(latency)

    reachable = sorted(
        (candidate for candidate in candidates if candidate.reachable),
        key=lambda candidate: candidate.latency,
    )
    unreachable = [candidate for candidate in candidates if not candidate.reachable]

    for candidate in reachable:
        LOGGER.log(
            VERBOSE,
            "Reachable entry: %s (%.3fs)",
            candidate.resolver_address,
            candidate.latency,
        )
    for candidate in unreachable:
        LOGGER.log(VERBOSE, "Unreachable entry: %s", candidate.resolver_address)

    return ProbeResult(reachable=reachable, unreachable=unreachable)


async def wait_for_connection(
    targets: Sequence[Tuple[str, int]],
    *,
    timeout: float = WAIT_FOR_CONNECTION_TIMEOUT,
    pause: float = WAIT_FOR_CONNECTION_PAUSE,
) -> Tuple[str, int]:
    """Block until any target accepts a TCP connection and return that target."""

    if not targets:
        raise ValueError("At least one target is required.")

    LOGGER.info("Waiting for connection.")
    while True:
        for host, port in targets:
            try:
                await _connect(host, port, timeout)
            except socket.gaierror as exc:
                raise SystemSetupError(
                    f"Unable to resolve {host} while waiting for connection: {exc}",
                    stage="wait-for-connection",
                ) from exc
            except (OSError, asyncio.TimeoutError) as exc:
                LOGGER.debug(
                    "Caught %r while waiting for connection to %s:%s.", exc, host, port
                )
            else:
                LOGGER.info("Connection to %s:%s established.", host, port)
                return host, port
            await asyncio.sleep(pause)
