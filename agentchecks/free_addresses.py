"""Finding unoccupied IPv4 addresses in networks by scanning them with nmap."""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import sys
from typing import Any, Protocol

from agentchecks.execute import CommandResult, ProcessExecutor
from agentchecks.nmap import NmapParseError, parse_nmap

log = logging.getLogger(__name__)

ADDRESS_LIMIT = 8000
MIN_SUBNET_MASK_SIZE = 22


class Executor(Protocol):
    def execute(self, command: str, *args: str) -> CommandResult: ...


class FreeAddressesError(Exception):
    """A scan could not be done; carries the exit code to report."""

    def __init__(self, message: str, exit_code: int = -1) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


def _parse_network(network: Any, label: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    try:
        if not isinstance(network, str) or "/" not in network:
            raise ValueError(network)
        parsed = ipaddress.ip_network(network, strict=False)
    except ValueError as err:
        message = f"Network {network} is not a valid CIDR: invalid CIDR address: {network}"
        log.warning(message)
        raise FreeAddressesError(message) from err
    if str(parsed) != network:
        message = f"Requested CIDR {parsed} is not equal to provided {label} {network}"
        log.warning(message)
        raise FreeAddressesError(message)
    return parsed


def _scan_subnetwork(subnetwork: ipaddress.IPv4Network, executor: Executor) -> list[str]:
    result = executor.execute("nmap", "-sn", "-PR", "-n", "-oX", "-", str(subnetwork))
    if result.exit_code != 0:
        log.warning("nmap failed with exit-code %d: %s", result.exit_code, result.stderr)
        raise FreeAddressesError(result.stderr, result.exit_code)
    try:
        run = parse_nmap(result.stdout)
    except NmapParseError as err:
        log.warning("XML Unmarshal: %s", err)
        raise FreeAddressesError(str(err)) from err

    occupied = set()
    for host in run.up_hosts():
        first_ipv4 = next(host.addresses_of_type("ipv4"), None)
        if first_ipv4 is not None:
            occupied.add(first_ipv4.addr)
    return [str(ip) for ip in subnetwork if str(ip) not in occupied]


def scan_network(network: str, executor: Executor) -> dict[str, Any]:
    """Scan ``network`` and return its free addresses.

    Large networks are scanned in /22 pieces, and scanning stops once
    ``ADDRESS_LIMIT`` free addresses have been found. Non-IPv4 networks
    yield no addresses.
    """
    parsed = _parse_network(network, "network")
    free: list[str] = []
    if parsed.version == 4:
        mask = max(parsed.prefixlen, MIN_SUBNET_MASK_SIZE)
        for subnetwork in parsed.subnets(new_prefix=mask):
            if len(free) >= ADDRESS_LIMIT:
                break
            free.extend(_scan_subnetwork(subnetwork, executor))
    return {"network": network, "free_addresses": free}


def get_free_addresses(request: str, executor: Executor) -> list[dict[str, Any]]:
    """Handle a JSON request holding a list of networks in CIDR notation."""
    try:
        networks = json.loads(request)
    except json.JSONDecodeError as err:
        log.error("FreeAddresses: json decode: %s", err)
        raise FreeAddressesError(str(err)) from err
    if not isinstance(networks, list):
        raise FreeAddressesError("Free addresses request must be a list of networks")
    return [scan_network(network, executor) for network in networks]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="free_addresses")
    parser.add_argument("request", nargs="*", help="JSON list of networks to scan")
    args = parser.parse_args(argv)
    if len(args.request) != 1:
        log.warning(
            "Expecting exactly single argument to free_addresses. Received %d",
            len(args.request),
        )
        return -1
    try:
        result = get_free_addresses(args.request[0], ProcessExecutor())
    except FreeAddressesError as err:
        sys.stderr.write(err.message)
        return err.exit_code
    sys.stdout.write(json.dumps(result, separators=(",", ":")))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())