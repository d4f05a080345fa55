from __future__ import annotations

import logging
import subprocess
import time
from pathlib import Path
from typing import Iterator, List, Sequence, cast

import pytest

from dnscrypt_multi import main as main_module
from dnscrypt_multi.catalog import CatalogDocument
from dnscrypt_multi.config import DEFAULT_LOG_DIR, ResolverCheck
from dnscrypt_multi.logs import ROOT_LOGGER_NAME
from dnscrypt_multi.main import main, parse_args
from dnscrypt_multi.probe import ProbeResult
from dnscrypt_multi.types import Candidate, Endpoint, Instance

KEY = ":".join(["ABCD"] * 16)


class DummyProcess:
    def __init__(self) -> None:
        self.returncode: int | None = None
        self.pid = id(self)

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:  # pragma: no cover - interface compatibility
        self.returncode = -15

    def kill(self) -> None:  # pragma: no cover - interface compatibility
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            self.returncode = 0
        return self.returncode


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    yield
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.propagate = True
    root.setLevel(logging.NOTSET)


def make_candidates(count: int) -> List[Candidate]:
    return [
        Candidate(
            resolver_address=f"10.0.0.{index}:443",
            provider_name="2.dnscrypt-cert.example.org",
            provider_key=KEY,
        )
        for index in range(1, count + 1)
    ]


def patch_pipeline(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    *,
    reachable: Sequence[Candidate],
    launched: List[Instance],
) -> None:
    executable = tmp_path / "dnscrypt-proxy"

    def fake_launch(endpoint: Endpoint, candidate: Candidate, config: object) -> Instance:
        instance = Instance(
            endpoint=endpoint,
            candidate=candidate,
            process=cast(subprocess.Popen[bytes], DummyProcess()),
            started_at=time.time(),
        )
        launched.append(instance)
        return instance

    async def fake_probe(candidates: Sequence[Candidate], **_: object) -> ProbeResult:
        return ProbeResult(reachable=list(reachable), unreachable=[])

    monkeypatch.setattr(main_module, "locate_executable", lambda name: executable)
    monkeypatch.setattr(
        main_module,
        "hydrate_catalog",
        lambda location, **_: CatalogDocument(path=tmp_path / "list.csv", backend="local"),
    )
    monkeypatch.setattr(main_module, "load_catalog", lambda path, **_: make_candidates(3))
    monkeypatch.setattr(main_module, "probe_candidates", fake_probe)
    monkeypatch.setattr(main_module, "launch_instance", fake_launch)


def test_parse_args_defaults() -> None:
    config = parse_args([])

    assert config.executable is None
    assert config.local_ip_range == "127.0.100.1-254"
    assert config.local_port_range == "53"
    assert config.max_instances == 10
    assert config.resolver_checks == ()
    assert not config.log
    assert config.extra_args == ()


def test_parse_args_passes_arguments_after_separator() -> None:
    config = parse_args(["-m", "2", "--", "--tcp-only", "-m", "9"])

    assert config.max_instances == 2
    assert config.extra_args == ("--tcp-only", "-m", "9")


def test_parse_args_optional_directories_and_checks(tmp_path: Path) -> None:
    config = parse_args(
        [
            "-l",
            "-W",
            str(tmp_path),
            "-c",
            "example.com:dnssec/3/0.5",
            "-w",
            "example.org:443",
            "-S",
            "multi",
        ]
    )

    assert config.log
    assert config.log_dir == DEFAULT_LOG_DIR
    assert config.write_pids
    assert config.pid_dir == tmp_path
    assert config.resolver_checks == (ResolverCheck("example.com", dnssec=True),)
    assert config.check_timeout == 3
    assert config.check_wait == 0.5
    assert config.wait_for_connection == (("example.org", 443),)
    assert config.syslog
    assert config.syslog_prefix == "multi"


@pytest.mark.parametrize(
    "argv",
    [
        ["-m", "0"],
        ["-m", "51"],
        ["-s", "0"],
        ["-t", "0"],
        ["-c", "nodots"],
        ["-w", "example.org"],
        ["-d", "/nonexistent/dnscrypt-proxy"],
    ],
)
def test_parse_args_rejects_invalid_values(argv: List[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        parse_args(argv)

    assert excinfo.value.code == 2


def test_parse_args_version(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        parse_args(["-V"])

    assert excinfo.value.code == 0
    assert "2022.07.22" in capsys.readouterr().out


def test_main_without_reachable_entry_fails_without_spawning(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    launched: List[Instance] = []
    patch_pipeline(monkeypatch, tmp_path, reachable=[], launched=launched)

    assert main(["-i", "127.0.100.1-2"]) == 1

    assert launched == []
    assert "No reachable entry" in capsys.readouterr().err


def test_main_runs_instances_and_aggregates_exit_codes(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    launched: List[Instance] = []
    reachable = make_candidates(3)
    patch_pipeline(monkeypatch, tmp_path, reachable=reachable, launched=launched)

    assert main(["-i", "127.0.100.1-2", "-m", "2"]) == 0

    assert [(str(i.endpoint), i.candidate) for i in launched] == [
        ("127.0.100.1:53", reachable[0]),
        ("127.0.100.2:53", reachable[1]),
    ]


def test_main_reports_configuration_stage(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    patch_pipeline(monkeypatch, tmp_path, reachable=make_candidates(1), launched=[])

    assert main(["-i", "127.0.0.300"]) == 1

    assert "Configuration failure" in capsys.readouterr().err


def test_main_writes_log_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    patch_pipeline(monkeypatch, tmp_path, reachable=make_candidates(1), launched=[])
    log_dir = tmp_path / "log"

    assert main(["-l", str(log_dir), "-m", "1"]) == 0

    text = (log_dir / "dnscrypt-proxy-multi.log").read_text(encoding="utf-8")
    assert "Starting up." in text
    assert "Exiting." in text


def test_main_fails_when_every_candidate_fails_validation(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    launched: List[Instance] = []
    patch_pipeline(monkeypatch, tmp_path, reachable=make_candidates(3), launched=launched)
    checked: List[str] = []

    async def failing_check(instance: Instance, **_: object) -> bool:
        checked.append(instance.candidate.resolver_address)
        return False

    monkeypatch.setattr(main_module, "check_instance", failing_check)

    assert main(["-i", "127.0.100.1-2", "-m", "2", "-c", "example.com/1/0"]) == 1

    err = capsys.readouterr().err
    assert "Allocation failure: No instances were started" in err
    assert checked == ["10.0.0.1:443", "10.0.0.2:443", "10.0.0.3:443"]
    assert {str(i.endpoint) for i in launched} == {"127.0.100.1:53"}
    assert all(i.process.poll() is not None for i in launched)
