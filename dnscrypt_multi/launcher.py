from __future__ import annotations

import contextlib
import logging
import shlex
import subprocess
import time
from pathlib import Path
from typing import IO, List

from .config import OrchestratorConfig
from .errors import LaunchError
from .logs import VERBOSE
from .types import Candidate, Endpoint, Instance, InstanceState

LOGGER = logging.getLogger("Multi.Launcher")

CHILD_NAME = "dnscrypt-proxy"


def log_prefix(config: OrchestratorConfig, candidate: Candidate) -> Path:
    """Per-resolver file prefix used for the child's own and captured logs."""

    return config.log_dir / (
        f"{CHILD_NAME}.{candidate.resolver_host}.{candidate.resolver_port}"
    )


def pid_file(config: OrchestratorConfig, endpoint: Endpoint) -> Path:
    return config.pid_dir / f"{CHILD_NAME}.{endpoint.ip}.{endpoint.port}.pid"


def build_command(
    config: OrchestratorConfig, endpoint: Endpoint, candidate: Candidate
) -> List[str]:
    cmd = [
        str(config.executable),
        f"--local-address={endpoint}",
        f"--resolver-address={candidate.resolver_address}",
        f"--provider-key={candidate.provider_key}",
        f"--provider-name={candidate.provider_name}",
    ]

    if config.child_syslog:
        prefix = f"[{candidate.resolver_host}:{candidate.resolver_port}]"
        if config.child_syslog_prefix:
            prefix += f" {config.child_syslog_prefix}"
        cmd += ["--syslog", f"--syslog-prefix={prefix}"]
    elif config.log:
        cmd += [
            f"--logfile={log_prefix(config, candidate)}.log",
            f"--loglevel={config.child_log_level}",
        ]

    if config.child_user:
        cmd.append(f"--user={config.child_user}")
    if config.write_pids:
        cmd.append(f"--pidfile={pid_file(config, endpoint)}")
    if config.ephemeral_keys:
        cmd.append("--ephemeral-keys")
    cmd.extend(config.extra_args)
    return cmd


def _open_sink(path: Path, overwrite: bool) -> IO[bytes]:
    try:
        return open(path, "wb" if overwrite else "ab")
    except OSError as exc:
        raise LaunchError(f"Failed to open log file {path}: {exc}") from exc


def launch_instance(
    endpoint: Endpoint, candidate: Candidate, config: OrchestratorConfig
) -> Instance:
    """Spawn a child bound to ``endpoint`` that forwards to ``candidate``.

    ``OSError`` from the spawn itself propagates so the caller can move on to
    another candidate; failing to open an output sink raises ``LaunchError``.
    """

    cmd = build_command(config, endpoint, candidate)
    LOGGER.info(
        "Starting %s instance for %s (%s).",
        CHILD_NAME,
        candidate.resolver_address,
        endpoint,
    )
    LOGGER.log(VERBOSE, "Command: %s", shlex.join(cmd))

    log_paths: tuple[Path, ...] = ()
    with contextlib.ExitStack() as stack:
        if config.log:
            prefix = log_prefix(config, candidate)
            log_paths = (
                Path(f"{prefix}.stdout.log"),
                Path(f"{prefix}.stderr.log"),
            )
            stdout = stack.enter_context(_open_sink(log_paths[0], config.log_overwrite))
            stderr = stack.enter_context(_open_sink(log_paths[1], config.log_overwrite))
        else:
            stdout = stderr = subprocess.DEVNULL

        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=stderr,
        )

    LOGGER.debug(
        "Launched %s PID=%s for %s on %s.",
        CHILD_NAME,
        process.pid,
        candidate.resolver_address,
        endpoint,
    )
    return Instance(
        endpoint=endpoint,
        candidate=candidate,
        process=process,
        started_at=time.time(),
        state=InstanceState.SPAWNING,
        log_paths=log_paths,
    )
