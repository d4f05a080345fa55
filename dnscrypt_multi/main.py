from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import Callable, List, Sequence, Tuple, TypeVar

from .catalog import hydrate_catalog, load_catalog
from .config import (
    DEFAULT_CATALOG_CACHE_DIR,
    DEFAULT_CHECK_TIMEOUT,
    DEFAULT_CHECK_WAIT,
    DEFAULT_CHILD_LOG_LEVEL,
    DEFAULT_EXECUTABLE_NAME,
    DEFAULT_INSTANCE_DELAY,
    DEFAULT_LOCAL_IP_RANGE,
    DEFAULT_LOCAL_PORT_RANGE,
    DEFAULT_LOG_DIR,
    DEFAULT_MAX_INSTANCES,
    DEFAULT_PID_DIR,
    DEFAULT_PORT_CHECK_ASYNC,
    DEFAULT_PORT_CHECK_TIMEOUT,
    DEFAULT_RESOLVERS_LIST,
    DEFAULT_RESOLVERS_LIST_ENCODING,
    DEFAULT_STATUS_HOST,
    INSTANCES_LIMIT,
    VERSION,
    OrchestratorConfig,
    ResolverCheckSettings,
    parse_check_resolvers,
    parse_wait_targets,
)
from .errors import ConfigurationError, ExhaustionError, OrchestratorError, SystemSetupError
from .launcher import launch_instance
from .logs import add_file_handler, setup_logging
from .probe import probe_candidates, wait_for_connection
from .ranges import EndpointRange
from .shutdown import ShutdownCoordinator
from .status import StatusServer
from .supervisor import InstanceSupervisor, check_capacity
from .system import drop_privileges, is_executable_file, locate_executable, prepare_dir
from .types import RunState
from .validation import check_instance

LOGGER = logging.getLogger("Multi")

T = TypeVar("T")

NOTES = """\
Notes:
* Directories are automatically created recursively when needed.
* Services are checked with TCP ports since TCP is a common fallback.
* Local ports are first used up before the next IP address in range is used.
* Local ports are not checked if they are currently in use.
* Names of log files are created based on the remote address, while names of
  PID files are based on the local address.
* Arguments after '--' are passed to every instance of dnscrypt-proxy.
"""


def _option_type(parse: Callable[[str], T]) -> Callable[[str], T]:
    def convert(value: str) -> T:
        try:
            return parse(value)
        except ConfigurationError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from None

    return convert


def _positive_int(value: str) -> int:
    if not value.isdigit() or int(value) == 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer: {value}")
    return int(value)


def _unsigned_int(value: str) -> int:
    if not value.isdigit():
        raise argparse.ArgumentTypeError(f"must be an unsigned integer: {value}")
    return int(value)


def _max_instances(value: str) -> int:
    count = _positive_int(value)
    if count > INSTANCES_LIMIT:
        raise argparse.ArgumentTypeError(
            f"cannot be 0 or greater than {INSTANCES_LIMIT}: {value}"
        )
    return count


def _seconds(value: str, *, allow_zero: bool) -> float:
    try:
        seconds = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"must be a number: {value}") from None
    if seconds < 0 or (seconds == 0 and not allow_zero):
        raise argparse.ArgumentTypeError(f"out of range: {value}")
    return seconds


def _executable(value: str) -> Path:
    path = Path(value)
    if not is_executable_file(path):
        raise argparse.ArgumentTypeError(f"not executable or file does not exist: {value}")
    return path


def _non_empty(value: str) -> str:
    if not value:
        raise argparse.ArgumentTypeError("can't be an empty string")
    return value


def _split_extra_args(argv: Sequence[str]) -> Tuple[List[str], Tuple[str, ...]]:
    args = list(argv)
    if "--" in args:
        index = args.index("--")
        return args[:index], tuple(args[index + 1 :])
    return args, ()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dnscrypt-proxy-multi",
        description="Runs multiple instances of dnscrypt-proxy.",
        usage="%(prog)s [options] [-- [extra_dnscrypt_proxy_opts]]",
        epilog=NOTES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c",
        "--check-resolvers",
        metavar="FQDN[:dnssec][,FQDN2[:dnssec],...][/TIMEOUT[/WAIT]]",
        type=_option_type(parse_check_resolvers),
        help=(
            "Check instances if they can resolve all specified FQDN and replace "
            "them with an instance that targets another resolver entry if they don't."
        ),
    )
    parser.add_argument(
        "-C",
        "--change-owner",
        metavar="USER[:GROUP]",
        type=_non_empty,
        help="Change ownership of created directories to USER[:GROUP].",
    )
    parser.add_argument(
        "-d",
        "--dnscrypt-proxy",
        metavar="PATH",
        type=_executable,
        help=f"Path to the dnscrypt-proxy executable. Default is '{DEFAULT_EXECUTABLE_NAME}' on PATH.",
    )
    parser.add_argument(
        "-D",
        "--instance-delay",
        metavar="SECONDS",
        type=partial(_seconds, allow_zero=True),
        default=DEFAULT_INSTANCE_DELAY,
        help="Wait SECONDS before creating the next instance.",
    )
    parser.add_argument(
        "-E",
        "--ephemeral-keys",
        action="store_true",
        help="Pass --ephemeral-keys to every instance.",
    )
    parser.add_argument("-g", "--group", type=_non_empty, help="Drop privileges to GROUP.")
    parser.add_argument("-G", "--debug", action="store_true", help="Show debug messages.")
    parser.add_argument(
        "-i",
        "--local-ip",
        metavar="RANGE",
        default=DEFAULT_LOCAL_IP_RANGE,
        help='Range of IP addresses to listen to. Example: "127.0.1-254.1-254,10.0.0.1"',
    )
    parser.add_argument(
        "-I",
        "--ignore-ip-format",
        action="store_true",
        help="Do not check if a local IP address starts or ends with 0 or 255.",
    )
    parser.add_argument(
        "-l",
        "--log",
        metavar="LOG_DIR",
        nargs="?",
        const=DEFAULT_LOG_DIR,
        type=Path,
        help=f"Enable logging files to LOG_DIR. Default directory is {DEFAULT_LOG_DIR}.",
    )
    parser.add_argument(
        "-L",
        "--log-level",
        metavar="LEVEL",
        type=_unsigned_int,
        default=DEFAULT_CHILD_LOG_LEVEL,
        help="When logging is enabled, tell instances to use log level LEVEL.",
    )
    parser.add_argument(
        "-m",
        "--max-instances",
        metavar="N",
        type=_max_instances,
        default=DEFAULT_MAX_INSTANCES,
        help=f"Maximum number of instances (1-{INSTANCES_LIMIT}).",
    )
    parser.add_argument(
        "-o",
        "--log-output",
        metavar="FILE",
        type=Path,
        help="When logging is enabled, write main log output to FILE.",
    )
    parser.add_argument(
        "-O",
        "--log-overwrite",
        action="store_true",
        help="When logging is enabled, truncate log files instead of appending.",
    )
    parser.add_argument(
        "-p",
        "--local-port",
        metavar="RANGE",
        default=DEFAULT_LOCAL_PORT_RANGE,
        help='Range of ports to listen to. Example: "2053,5300-5399"',
    )
    parser.add_argument(
        "-r",
        "--resolvers-list",
        metavar="PATH|URL",
        default=DEFAULT_RESOLVERS_LIST,
        help="Resolvers list to use: a local path, an http(s) URL or an s3:// URL.",
    )
    parser.add_argument(
        "-R",
        "--resolvers-list-encoding",
        metavar="ENCODING",
        default=DEFAULT_RESOLVERS_LIST_ENCODING,
    )
    parser.add_argument(
        "-s",
        "--port-check-async",
        metavar="N",
        type=_positive_int,
        default=DEFAULT_PORT_CHECK_ASYNC,
        help="Number of port-check queries to send simultaneously.",
    )
    parser.add_argument(
        "-S",
        "--syslog",
        metavar="PREFIX",
        nargs="?",
        const="",
        help="Log messages to the system log, optionally prefixed with PREFIX.",
    )
    parser.add_argument(
        "-t",
        "--port-check-timeout",
        metavar="SECONDS",
        type=partial(_seconds, allow_zero=False),
        default=DEFAULT_PORT_CHECK_TIMEOUT,
        help="Timeout when waiting for a port-check reply.",
    )
    parser.add_argument("-u", "--user", type=_non_empty, help="Drop privileges to USER.")
    parser.add_argument(
        "-U",
        "--dnscrypt-proxy-user",
        metavar="USER",
        type=_non_empty,
        help="Tell instances to drop privileges as USER.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show verbose messages.")
    parser.add_argument(
        "-V", "--version", action="version", version=f"dnscrypt-proxy-multi {VERSION}"
    )
    parser.add_argument(
        "-w",
        "--wait-for-connection",
        metavar="HOST:PORT[,HOST2:PORT2,...]",
        type=_option_type(parse_wait_targets),
        help="Wait until any of the specified hosts acknowledges a TCP connection.",
    )
    parser.add_argument(
        "-W",
        "--write-pids",
        metavar="DIR",
        nargs="?",
        const=DEFAULT_PID_DIR,
        type=Path,
        help=f"Enable writing PID files to DIR. Default directory is {DEFAULT_PID_DIR}.",
    )
    parser.add_argument(
        "-z",
        "--dnssec-only",
        action="store_true",
        help="Only use resolvers that support DNSSEC validation.",
    )
    parser.add_argument(
        "-Z",
        "--dnscrypt-proxy-syslog",
        metavar="PREFIX",
        nargs="?",
        const="",
        help="Tell instances to log to the system log instead of files.",
    )
    parser.add_argument(
        "--status-host",
        default=DEFAULT_STATUS_HOST,
        help="Interface for the optional status server.",
    )
    parser.add_argument(
        "--status-port",
        type=_positive_int,
        help="Serve /live, /ready and /instances on this port.",
    )
    return parser


def parse_args(argv: Sequence[str] | None = None) -> OrchestratorConfig:
    own_args, extra_args = _split_extra_args(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(own_args)

    checks: ResolverCheckSettings | None = args.check_resolvers
    cache_dir = os.environ.get("CATALOG_CACHE_DIR")
    return OrchestratorConfig(
        executable=args.dnscrypt_proxy,
        local_ip_range=args.local_ip,
        local_port_range=args.local_port,
        ignore_ip_format=args.ignore_ip_format,
        max_instances=args.max_instances,
        port_check_async=args.port_check_async,
        port_check_timeout=args.port_check_timeout,
        resolver_checks=checks.checks if checks else (),
        check_timeout=checks.timeout if checks else DEFAULT_CHECK_TIMEOUT,
        check_wait=checks.wait if checks else DEFAULT_CHECK_WAIT,
        instance_delay=args.instance_delay,
        resolvers_list=args.resolvers_list,
        resolvers_list_encoding=args.resolvers_list_encoding,
        dnssec_only=args.dnssec_only,
        catalog_cache_dir=Path(cache_dir) if cache_dir else DEFAULT_CATALOG_CACHE_DIR,
        catalog_s3_region=os.environ.get("CATALOG_S3_REGION"),
        log=args.log is not None,
        log_dir=args.log if args.log is not None else DEFAULT_LOG_DIR,
        log_file=args.log_output,
        log_overwrite=args.log_overwrite,
        child_log_level=args.log_level,
        syslog=args.syslog is not None,
        syslog_prefix=args.syslog or "",
        child_syslog=args.dnscrypt_proxy_syslog is not None,
        child_syslog_prefix=args.dnscrypt_proxy_syslog or None,
        child_user=args.dnscrypt_proxy_user,
        ephemeral_keys=args.ephemeral_keys,
        write_pids=args.write_pids is not None,
        pid_dir=args.write_pids if args.write_pids is not None else DEFAULT_PID_DIR,
        change_owner=args.change_owner,
        user=args.user,
        group=args.group,
        wait_for_connection=args.wait_for_connection or (),
        extra_args=extra_args,
        verbose=args.verbose,
        debug=args.debug,
        status_host=args.status_host,
        status_port=args.status_port,
    )


def run(config: OrchestratorConfig, coordinator: ShutdownCoordinator) -> int:
    """Probe, allocate and supervise; return the aggregate exit status."""

    state = coordinator.state
    if config.executable is None:
        config = replace(config, executable=locate_executable(DEFAULT_EXECUTABLE_NAME))

    endpoints = EndpointRange.parse(
        config.local_ip_range,
        config.local_port_range,
        ignore_ip_format=config.ignore_ip_format,
    )
    check_capacity(endpoints, config.max_instances)

    if config.write_pids:
        prepare_dir(config.pid_dir, owner=config.change_owner)

    document = hydrate_catalog(
        config.resolvers_list,
        cache_dir=config.catalog_cache_dir,
        region=config.catalog_s3_region,
    )
    candidates = load_catalog(
        document.path,
        encoding=config.resolvers_list_encoding,
        dnssec_only=config.dnssec_only,
    )

    drop_privileges(user=config.user, group=config.group)

    if config.wait_for_connection:
        asyncio.run(wait_for_connection(config.wait_for_connection))

    result = asyncio.run(
        probe_candidates(
            candidates,
            concurrency=config.port_check_async,
            timeout=config.port_check_timeout,
        )
    )
    if not result.reachable:
        raise ExhaustionError(
            f"No reachable entry among {len(candidates)} resolver(s) from "
            f"{config.resolvers_list}.",
            stage="probe",
        )

    validate_fn = None
    if config.resolver_checks:
        validate_fn = partial(
            check_instance,
            checks=config.resolver_checks,
            timeout=config.check_timeout,
            wait=config.check_wait,
        )

    supervisor = InstanceSupervisor(
        endpoints,
        result.reachable,
        state,
        launch_fn=partial(launch_instance, config=config),
        validate_fn=validate_fn,
        instance_delay=config.instance_delay,
        signal_guard=coordinator.defer_signals,
    )
    asyncio.run(supervisor.allocate())

    if not state.instances:
        raise ExhaustionError(
            "No instances were started. Try to make sure clock is updated."
        )

    LOGGER.info("Done starting %s instance(s).", len(state.instances))
    return coordinator.wait_all()


def main(argv: Sequence[str] | None = None) -> int:
    config = parse_args(argv)
    setup_logging(
        verbose=config.verbose,
        debug=config.debug,
        syslog=config.syslog,
        syslog_prefix=config.syslog_prefix,
    )

    state = RunState(config.max_instances)
    coordinator = ShutdownCoordinator(state)
    coordinator.install()
    status_server: StatusServer | None = None

    try:
        if config.log:
            prepare_dir(config.log_dir, owner=config.change_owner)
            try:
                add_file_handler(config.main_log_file, overwrite=config.log_overwrite)
            except OSError as exc:
                raise SystemSetupError(
                    f"Failed to open file {config.main_log_file}: {exc}"
                ) from exc

        LOGGER.info("Starting up.")
        if config.status_port is not None:
            status_server = StatusServer(
                state, host=config.status_host, port=config.status_port
            )
            status_server.start()

        return run(config, coordinator)
    except OrchestratorError as exc:
        LOGGER.critical("%s failure: %s", exc.stage.capitalize(), exc)
        coordinator.shutdown()
        return 1
    except Exception as exc:
        LOGGER.exception(
            "Unknown exception %s with message '%s' caught.", type(exc).__name__, exc
        )
        coordinator.shutdown()
        return 1
    finally:
        if status_server is not None:
            status_server.stop()
        coordinator.log_caught_signal()
        LOGGER.info("Exiting.")
        coordinator.restore()


if __name__ == "__main__":
    sys.exit(main())
