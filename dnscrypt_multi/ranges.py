"""
Expansion of local address and port range specifications.

An IP range is a comma-separated list of dotted-quad patterns where every
octet is either a literal or a ``start-end`` interval, e.g.
``127.0.1-254.1-254,10.0.0.1``. A port range is a comma-separated list of
literals or intervals, e.g. ``2053,5300-5399``. The endpoint sequence is the
product of both: every port of an address is used up before the next address.
"""

from __future__ import annotations

import itertools
import re
from typing import Iterator, List, Sequence, Tuple

from .errors import ConfigurationError
from .types import Endpoint

_SIMPLE_RANGE = re.compile(r"^(\d+)(?:-(\d+))?$")
MIN_PORT = 1
MAX_PORT = 65535


class RangeError(ConfigurationError):
    """Raised when a range specification contains a malformed token."""

    def __init__(self, message: str, *, token: str) -> None:
        super().__init__(message)
        self.token = token


def expand_simple_range(token: str, minimum: int, maximum: int) -> range:
    match = _SIMPLE_RANGE.match(token)
    if match is None:
        raise RangeError(f"Invalid range token: {token!r}", token=token)
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) is not None else start
    if start > end:
        raise RangeError(f"Range start is greater than its end: {token!r}", token=token)
    if start < minimum or end > maximum:
        raise RangeError(
            f"Range {token!r} is outside of {minimum}-{maximum}.", token=token
        )
    return range(start, end + 1)


class IPAddressRange:
    """Lazily enumerates the distinct IPv4 addresses of a range specification."""

    def __init__(self, spec: str, *, ignore_ip_format: bool = False) -> None:
        self._spec = spec
        self._sections: List[Tuple[range, range, range, range]] = []
        for part in spec.split(","):
            octets = part.split(".")
            if len(octets) != 4:
                raise RangeError(f"Invalid IP range: {part!r}", token=part)
            expanded = []
            for index, octet in enumerate(octets):
                minimum = 0 if ignore_ip_format or index in (1, 2) else 1
                maximum = 255 if ignore_ip_format else 254
                try:
                    expanded.append(expand_simple_range(octet, minimum, maximum))
                except RangeError as exc:
                    raise RangeError(f"Invalid IP range {part!r}: {exc}", token=part) from exc
            self._sections.append(tuple(expanded))  # type: ignore[arg-type]

    def __iter__(self) -> Iterator[str]:
        seen: set[str] = set()
        for first, second, third, fourth in self._sections:
            for w, x, y, z in itertools.product(first, second, third, fourth):
                address = f"{w}.{x}.{y}.{z}"
                if address in seen:
                    continue
                seen.add(address)
                yield address

    def __str__(self) -> str:
        return self._spec


class PortRange:
    """Distinct ports of a range specification, in first-seen order."""

    def __init__(self, spec: str) -> None:
        self._spec = spec
        ports: dict[int, None] = {}
        for part in spec.split(","):
            for port in expand_simple_range(part, MIN_PORT, MAX_PORT):
                ports.setdefault(port, None)
        self._ports = tuple(ports)

    def __iter__(self) -> Iterator[int]:
        return iter(self._ports)

    def __len__(self) -> int:
        return len(self._ports)

    def __str__(self) -> str:
        return self._spec


class EndpointRange:
    """Restartable sequence of local endpoints; every call to ``iter`` starts over."""

    def __init__(self, addresses: IPAddressRange, ports: PortRange) -> None:
        if next(iter(addresses), None) is None:
            raise RangeError(f"IP range {addresses} yields no address.", token=str(addresses))
        if not len(ports):
            raise RangeError(f"Port range {ports} yields no port.", token=str(ports))
        self.addresses = addresses
        self.ports = ports

    @classmethod
    def parse(
        cls, ip_spec: str, port_spec: str, *, ignore_ip_format: bool = False
    ) -> "EndpointRange":
        return cls(
            IPAddressRange(ip_spec, ignore_ip_format=ignore_ip_format),
            PortRange(port_spec),
        )

    def __iter__(self) -> Iterator[Endpoint]:
        for address in self.addresses:
            for port in self.ports:
                yield Endpoint(ip=address, port=port)

    def take(self, limit: int) -> Sequence[Endpoint]:
        return list(itertools.islice(iter(self), limit))

    def has_capacity(self, count: int) -> bool:
        return len(self.take(count)) >= count
