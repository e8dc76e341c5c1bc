"""Resolving domain names into IPv4 and IPv6 addresses."""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import socket
import sys
from typing import Any, Iterable, Protocol

log = logging.getLogger(__name__)

_NOT_FOUND_ERRORS = {
    code
    for code in (getattr(socket, "EAI_NONAME", None), getattr(socket, "EAI_NODATA", None))
    if code is not None
}


class Resolver(Protocol):
    def resolve(self, domain: str) -> Iterable[Any]: ...


class DomainResolver:
    """Resolves names through the system resolver."""

    def resolve(self, domain: str) -> list[str]:
        """Addresses of ``domain``; an unknown domain yields no addresses."""
        try:
            infos = socket.getaddrinfo(domain, None)
        except socket.gaierror as err:
            # A missing domain is an expected answer, not a failure.
            if err.errno in _NOT_FOUND_ERRORS:
                return []
            raise
        addresses: list[str] = []
        for _family, _type, _proto, _canon, sockaddr in infos:
            address = str(sockaddr[0]).split("%")[0]
            if address not in addresses:
                addresses.append(address)
        return addresses


def handle_domain_resolution(resolver: Resolver, domain: str) -> dict[str, Any]:
    """Resolve one domain and split its addresses by family."""
    result: dict[str, Any] = {
        "domain_name": domain,
        "ipv4_addresses": [],
        "ipv6_addresses": [],
    }
    try:
        ips = list(resolver.resolve(domain))
    except OSError as err:
        log.error("error occurred during domain resolution of %s: %s", domain, err)
        return result

    for ip in ips:
        try:
            address = ipaddress.ip_address(str(ip))
        except ValueError:
            log.error("IP address %s of %s is neither IPv4 nor IPv6, ignoring", ip, domain)
            continue
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        if address.version == 4:
            result["ipv4_addresses"].append(str(address))
        else:
            result["ipv6_addresses"].append(str(address))
    return result


def run(request: str, resolver: Resolver) -> dict[str, Any]:
    """Handle a JSON request listing domains; return their resolutions in order."""
    data = json.loads(request)
    if not isinstance(data, dict):
        raise ValueError("Domain resolution request must be an object")
    resolutions = []
    for domain in data.get("domains") or []:
        name = domain.get("domain_name") if isinstance(domain, dict) else None
        if name is None:
            raise ValueError("Every domain in a domain request must have a domain name field")
        resolutions.append(handle_domain_resolution(resolver, name))
    return {"resolutions": resolutions}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="domain_resolution")
    parser.add_argument("--request", default="", help="The request details, a JSON object with domains")
    args = parser.parse_args(argv)
    if not args.request:
        parser.print_usage(sys.stderr)
        return 1
    log.info("Processing domain resolution, requested domains: %s", args.request)
    try:
        response = run(args.request, DomainResolver())
    except ValueError as err:
        log.error("Failed to parse domain resolution request string %s: %s", args.request, err)
        sys.stderr.write(str(err))
        return -1
    sys.stdout.write(json.dumps(response, separators=(",", ":")))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())