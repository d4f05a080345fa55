from __future__ import annotations

import logging
import signal
import subprocess
import time
from typing import List, cast

import pytest

from dnscrypt_multi.shutdown import ShutdownCoordinator
from dnscrypt_multi.types import Candidate, Endpoint, Instance, RunPhase, RunState

KEY = ":".join(["ABCD"] * 16)


class DummyProcess:
    def __init__(self, exit_code: int = 0, *, running: bool = True) -> None:
        self._running = running
        self._exit_code = exit_code
        self.returncode: int | None = None if running else exit_code
        self.pid = id(self)
        self.terminated = 0

    def poll(self) -> int | None:
        return None if self._running else self.returncode

    def terminate(self) -> None:
        self.terminated += 1
        self._running = False
        self.returncode = -15

    def kill(self) -> None:  # pragma: no cover - interface compatibility
        self._running = False
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int:
        if self._running:
            self._running = False
            self.returncode = self._exit_code
        assert self.returncode is not None
        return self.returncode


def make_instance(index: int, process: DummyProcess) -> Instance:
    return Instance(
        endpoint=Endpoint(f"127.0.100.{index}", 53),
        candidate=Candidate(
            resolver_address=f"10.0.0.{index}:443",
            provider_name="2.dnscrypt-cert.example.org",
            provider_key=KEY,
        ),
        process=cast(subprocess.Popen[bytes], process),
        started_at=time.time(),
    )


def make_state(processes: List[DummyProcess]) -> RunState:
    state = RunState(max(len(processes), 1))
    for index, process in enumerate(processes, start=1):
        state.register(make_instance(index, process))
    return state


def test_signal_stops_every_tracked_instance_and_exits_non_zero() -> None:
    processes = [DummyProcess() for _ in range(4)]
    state = make_state(processes)
    coordinator = ShutdownCoordinator(state)

    with pytest.raises(SystemExit) as excinfo:
        coordinator.handle_signal(signal.SIGTERM, None)

    assert excinfo.value.code == 1
    assert all(process.terminated == 1 for process in processes)
    assert state.quitting
    assert state.phase is RunPhase.STOPPING


def test_signal_reaches_pending_instance() -> None:
    state = RunState(2)
    pending = DummyProcess()
    state.begin(make_instance(1, pending))
    coordinator = ShutdownCoordinator(state)

    with pytest.raises(SystemExit):
        coordinator.handle_signal(signal.SIGINT, None)

    assert pending.terminated == 1


def test_signal_without_instances_still_exits_non_zero() -> None:
    coordinator = ShutdownCoordinator(RunState(1))

    with pytest.raises(SystemExit) as excinfo:
        coordinator.handle_signal(signal.SIGINT, None)

    assert excinfo.value.code == 1


def test_stop_instances_skips_exited_children() -> None:
    running = DummyProcess()
    exited = DummyProcess(running=False)
    coordinator = ShutdownCoordinator(make_state([running, exited]))

    assert coordinator.stop_instances() == 1
    assert exited.terminated == 0


def test_wait_all_succeeds_only_when_every_child_exits_zero() -> None:
    state = make_state([DummyProcess(0), DummyProcess(0)])
    assert ShutdownCoordinator(state).wait_all() == 0
    assert state.phase is RunPhase.STOPPED

    failing = make_state([DummyProcess(0), DummyProcess(3)])
    assert ShutdownCoordinator(failing).wait_all() == 1


def test_wait_all_without_instances_fails() -> None:
    assert ShutdownCoordinator(RunState(1)).wait_all() == 1


def test_shutdown_terminates_and_reaps_children() -> None:
    processes = [DummyProcess(), DummyProcess()]
    state = make_state(processes)

    ShutdownCoordinator(state).shutdown(timeout=0.1)

    assert all(process.terminated == 1 for process in processes)
    assert state.phase is RunPhase.STOPPED
    assert state.quitting


def test_install_and_restore_signal_handlers() -> None:
    previous = signal.getsignal(signal.SIGTERM)
    coordinator = ShutdownCoordinator(RunState(1))

    coordinator.install()
    try:
        assert signal.getsignal(signal.SIGTERM) == coordinator.handle_signal
    finally:
        coordinator.restore()

    assert signal.getsignal(signal.SIGTERM) == previous


def test_signal_handler_does_not_log(caplog: pytest.LogCaptureFixture) -> None:
    processes = [DummyProcess(), DummyProcess()]
    coordinator = ShutdownCoordinator(make_state(processes))

    with caplog.at_level(logging.DEBUG, logger="Multi.Shutdown"):
        with pytest.raises(SystemExit):
            coordinator.handle_signal(signal.SIGTERM, None)
        assert caplog.records == []

        coordinator.log_caught_signal()

    assert "SIGTERM caught; sent a stop signal to 2 instance(s)." in caplog.text


def test_deferred_signal_is_acted_on_when_the_block_exits() -> None:
    state = RunState(1)
    coordinator = ShutdownCoordinator(state)
    process = DummyProcess()

    with pytest.raises(SystemExit):
        with coordinator.defer_signals():
            coordinator.handle_signal(signal.SIGINT, None)
            assert process.terminated == 0
            state.begin(make_instance(1, process))

    assert process.terminated == 1
    assert coordinator.caught_signal == signal.SIGINT


def test_defer_signals_without_signal_is_transparent() -> None:
    coordinator = ShutdownCoordinator(RunState(1))

    with coordinator.defer_signals():
        pass

    assert coordinator.caught_signal is None
    assert not coordinator.state.quitting
