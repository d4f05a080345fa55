from __future__ import annotations

import asyncio
import logging
from typing import Sequence

import dns.asyncresolver
import dns.exception
import dns.flags

from .config import DEFAULT_CHECK_TIMEOUT, DEFAULT_CHECK_WAIT, ResolverCheck
from .logs import VERBOSE
from .types import Endpoint, Instance

LOGGER = logging.getLogger("Multi.Validation")

_EDNS_PAYLOAD = 1232


def _make_resolver(
    endpoint: Endpoint, timeout: float, dnssec: bool
) -> dns.asyncresolver.Resolver:
    resolver = dns.asyncresolver.Resolver(configure=False)
    # Port first: nameserver entries capture the port when assigned.
    resolver.port = endpoint.port
    resolver.nameservers = [endpoint.ip]
    resolver.timeout = timeout
    resolver.lifetime = timeout
    if dnssec:
        resolver.use_edns(0, dns.flags.DO, _EDNS_PAYLOAD)
    return resolver


async def check_instance(
    instance: Instance,
    checks: Sequence[ResolverCheck],
    *,
    timeout: float = DEFAULT_CHECK_TIMEOUT,
    wait: float = DEFAULT_CHECK_WAIT,
) -> bool:
    """Resolve every check name through the instance's own local endpoint.

    The first failing name fails the whole validation.
    """

    await asyncio.sleep(max(wait, 0.0))

    for check in checks:
        LOGGER.info(
            "Checking if %s can resolve %s.", instance.describe(), check.name
        )
        LOGGER.log(VERBOSE, "Timeout is %s.", timeout)
        resolver = _make_resolver(instance.endpoint, timeout, check.dnssec)
        try:
            answer = await resolver.resolve(check.name, "A")
        except dns.exception.DNSException as exc:
            LOGGER.error("Resolve error for %s: %s", check.name, exc)
            return False

        if check.dnssec and not answer.response.flags & dns.flags.AD:
            LOGGER.error(
                "Answer for %s from %s is not DNSSEC-authenticated.",
                check.name,
                instance.describe(),
            )
            return False

        LOGGER.info(
            "Success: %s", ", ".join(record.to_text() for record in answer)
        )

    return True
