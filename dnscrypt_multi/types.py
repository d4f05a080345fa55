from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple


@dataclass
class Candidate:
    """A resolver entry from the catalog that a child instance can target."""

    resolver_address: str
    provider_name: str
    provider_key: str
    latency: Optional[float] = None
    probed: bool = field(default=False, compare=False)

    @property
    def resolver_host(self) -> str:
        return self.resolver_address.rpartition(":")[0]

    @property
    def resolver_port(self) -> int:
        return int(self.resolver_address.rpartition(":")[2])

    @property
    def reachable(self) -> bool:
        return self.latency is not None

    def record_latency(self, latency: float | None) -> None:
        if self.probed:
            raise RuntimeError(
                f"Latency of {self.resolver_address} has already been recorded."
            )
        self.latency = latency
        self.probed = True


@dataclass(frozen=True)
class Endpoint:
    """Local address a child instance listens on."""

    ip: str
    port: int

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"


class InstanceState(str, Enum):
    PENDING = "pending"
    SPAWNING = "spawning"
    VALIDATING = "validating"
    ACTIVE = "active"
    REJECTED = "rejected"


class RunPhase(str, Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(eq=False)
class Instance:
    """Tracking metadata for a spawned child process."""

    endpoint: Endpoint
    candidate: Candidate
    process: subprocess.Popen[bytes]
    started_at: float
    state: InstanceState = InstanceState.SPAWNING
    log_paths: Tuple[Path, ...] = ()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.poll() is None

    def describe(self) -> str:
        return f"{self.candidate.resolver_address} ({self.endpoint})"


class RunState:
    """Process-wide run state shared by the supervisor and signal handlers.

    Tracked instances are published as an immutable tuple that is replaced on
    every change, so a signal handler interrupting the main thread always reads
    a consistent snapshot without taking a lock.
    """

    def __init__(self, max_instances: int) -> None:
        if max_instances <= 0:
            raise ValueError("Instance ceiling must be a positive integer.")
        self.max_instances = max_instances
        self.phase = RunPhase.RUNNING
        self.exit_status = 1
        self._quitting = False
        self._instances: Tuple[Instance, ...] = ()
        self._pending: Instance | None = None

    @property
    def quitting(self) -> bool:
        return self._quitting

    def request_quit(self) -> None:
        self._quitting = True

    @property
    def instances(self) -> Tuple[Instance, ...]:
        return self._instances

    @property
    def pending(self) -> Instance | None:
        return self._pending

    @property
    def full(self) -> bool:
        return len(self._instances) >= self.max_instances

    def begin(self, instance: Instance) -> None:
        """Expose a freshly spawned, not yet accepted instance to shutdown."""

        self._pending = instance

    def release(self, instance: Instance) -> None:
        if self._pending is instance:
            self._pending = None

    def register(self, instance: Instance) -> None:
        if self.full:
            raise ValueError(
                f"Cannot track more than {self.max_instances} instance(s)."
            )
        if any(tracked.endpoint == instance.endpoint for tracked in self._instances):
            raise ValueError(f"Endpoint {instance.endpoint} is already in use.")
        self._instances = self._instances + (instance,)
        self.release(instance)

    def snapshot(self) -> Tuple[Instance, ...]:
        pending = self._pending
        instances = self._instances
        if pending is None or pending in instances:
            return instances
        return instances + (pending,)
