from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from .errors import ConfigurationError

VERSION = "2022.07.22"
INSTANCES_LIMIT = 50
DEFAULT_RESOLVER_PORT = 443

DEFAULT_EXECUTABLE_NAME = "dnscrypt-proxy"
DEFAULT_LOCAL_IP_RANGE = "127.0.100.1-254"
DEFAULT_LOCAL_PORT_RANGE = "53"
DEFAULT_MAX_INSTANCES = 10
DEFAULT_PORT_CHECK_ASYNC = 10
DEFAULT_PORT_CHECK_TIMEOUT = 5.0
DEFAULT_CHECK_TIMEOUT = 5.0
DEFAULT_CHECK_WAIT = 0.1
DEFAULT_INSTANCE_DELAY = 0.0
DEFAULT_LOG_DIR = Path("/var/log/dnscrypt-proxy-multi")
DEFAULT_LOG_FILE_NAME = "dnscrypt-proxy-multi.log"
DEFAULT_CHILD_LOG_LEVEL = 6
DEFAULT_PID_DIR = Path("/var/run/dnscrypt-proxy-multi")
DEFAULT_RESOLVERS_LIST = "/usr/share/dnscrypt-proxy/dnscrypt-resolvers.csv"
DEFAULT_RESOLVERS_LIST_ENCODING = "utf-8"
DEFAULT_CATALOG_CACHE_DIR = Path("/tmp/dnscrypt-proxy-multi")
DEFAULT_STATUS_HOST = "127.0.0.1"

WAIT_FOR_CONNECTION_TIMEOUT = 5.0
WAIT_FOR_CONNECTION_PAUSE = 1.0

_LABEL = re.compile(r"^[A-Za-z0-9]+$|^[A-Za-z0-9]+[A-Za-z0-9-]+[A-Za-z0-9]+$")


@dataclass(frozen=True)
class ResolverCheck:
    """A name a freshly spawned instance must be able to resolve."""

    name: str
    dnssec: bool = False


@dataclass(frozen=True)
class OrchestratorConfig:
    """Typed representation of the options used to run the orchestrator."""

    executable: Path | None = None
    local_ip_range: str = DEFAULT_LOCAL_IP_RANGE
    local_port_range: str = DEFAULT_LOCAL_PORT_RANGE
    ignore_ip_format: bool = False
    max_instances: int = DEFAULT_MAX_INSTANCES
    port_check_async: int = DEFAULT_PORT_CHECK_ASYNC
    port_check_timeout: float = DEFAULT_PORT_CHECK_TIMEOUT
    resolver_checks: Tuple[ResolverCheck, ...] = ()
    check_timeout: float = DEFAULT_CHECK_TIMEOUT
    check_wait: float = DEFAULT_CHECK_WAIT
    instance_delay: float = DEFAULT_INSTANCE_DELAY
    resolvers_list: str = DEFAULT_RESOLVERS_LIST
    resolvers_list_encoding: str = DEFAULT_RESOLVERS_LIST_ENCODING
    dnssec_only: bool = False
    catalog_cache_dir: Path = DEFAULT_CATALOG_CACHE_DIR
    catalog_s3_region: str | None = None
    log: bool = False
    log_dir: Path = DEFAULT_LOG_DIR
    log_file: Path | None = None
    log_overwrite: bool = False
    child_log_level: int = DEFAULT_CHILD_LOG_LEVEL
    syslog: bool = False
    syslog_prefix: str = ""
    child_syslog: bool = False
    child_syslog_prefix: str | None = None
    child_user: str | None = None
    ephemeral_keys: bool = False
    write_pids: bool = False
    pid_dir: Path = DEFAULT_PID_DIR
    change_owner: str | None = None
    user: str | None = None
    group: str | None = None
    wait_for_connection: Tuple[Tuple[str, int], ...] = ()
    extra_args: Tuple[str, ...] = ()
    verbose: bool = False
    debug: bool = False
    status_host: str = DEFAULT_STATUS_HOST
    status_port: int | None = None

    @property
    def main_log_file(self) -> Path:
        return self.log_file or self.log_dir / DEFAULT_LOG_FILE_NAME


@dataclass(frozen=True)
class ResolverCheckSettings:
    checks: Tuple[ResolverCheck, ...]
    timeout: float = DEFAULT_CHECK_TIMEOUT
    wait: float = DEFAULT_CHECK_WAIT


def valid_fqdn(name: str) -> bool:
    if ".." in name or name.startswith("."):
        return False
    labels = name.split(".")
    return len(labels) > 1 and all(_LABEL.match(label) for label in labels)


def valid_host(host: str) -> bool:
    octets = host.split(".")
    if octets[-1].isdigit():
        if len(octets) != 4:
            return False
        for index, octet in enumerate(octets):
            if not octet.isdigit() or int(octet) >= 255:
                return False
            if index in (0, 3) and int(octet) == 0:
                return False
        return True
    return all(_LABEL.match(octet) for octet in octets)


def parse_check_resolvers(value: str) -> ResolverCheckSettings:
    """Parse ``FQDN[:dnssec][,FQDN2[:dnssec]...][/TIMEOUT[/WAIT]]``."""

    names, _, rest = value.partition("/")
    timeout_text, _, wait_text = rest.partition("/")

    timeout = DEFAULT_CHECK_TIMEOUT
    if timeout_text:
        try:
            timeout = float(timeout_text)
        except ValueError:
            raise ConfigurationError(f"Invalid timeout value: {timeout_text}") from None
        if timeout <= 0:
            raise ConfigurationError(f"Timeout must be positive: {timeout_text}")

    wait = DEFAULT_CHECK_WAIT
    if wait_text:
        try:
            wait = float(wait_text)
        except ValueError:
            raise ConfigurationError(f"Invalid waiting time value: {wait_text}") from None
        if wait < 0:
            raise ConfigurationError(f"Waiting time can't be negative: {wait_text}")

    checks: list[ResolverCheck] = []
    for item in names.split(","):
        name, _, option = item.partition(":")
        if option not in ("", "dnssec"):
            raise ConfigurationError(f"Invalid FQDN option: {option}")
        if not valid_fqdn(name):
            raise ConfigurationError(f"Not a valid FQDN: {name}")
        checks.append(ResolverCheck(name=name, dnssec=option == "dnssec"))

    return ResolverCheckSettings(checks=tuple(checks), timeout=timeout, wait=wait)


def parse_wait_targets(value: str) -> Tuple[Tuple[str, int], ...]:
    """Parse ``HOST:PORT[,HOST2:PORT2...]`` for the connection gate."""

    targets: list[Tuple[str, int]] = []
    for item in value.split(","):
        host, sep, port_text = item.partition(":")
        if not valid_host(host):
            raise ConfigurationError(f"Invalid host: {host}")
        if not sep:
            raise ConfigurationError(
                f"A port is required for {host}; ICMP checks are not supported."
            )
        try:
            port = int(port_text)
        except ValueError:
            raise ConfigurationError(f"Invalid port: {port_text}") from None
        if not 0 < port < 65536:
            raise ConfigurationError(f"Invalid port: {port_text}")
        targets.append((host, port))
    return tuple(targets)
