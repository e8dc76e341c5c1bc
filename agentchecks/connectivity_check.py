"""L2 and L3 connectivity checks from this host towards other hosts.

L3 connectivity is probed with ``ping`` on every outgoing NIC. L2
connectivity is probed with ``arping`` for IPv4 and ``nmap`` neighbour
discovery for IPv6.
"""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import re
import socket
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Iterable, Sequence

import psutil

from agentchecks.nmap import NmapParseError, parse_nmap

log = logging.getLogger(__name__)

PING_COUNT = "10"
_MAX_WORKERS = 256

_PACKET_LOSS_REGEX = (
    r"[\d]+ packets transmitted, [\d]+ received, (([\d]*[.])?[\d]+)% packet loss, time [\d]+ms"
)
_AVERAGE_RTT_REGEX = r"rtt min\/avg\/max\/mdev = .*\/([^\/]+)\/.*\/.* ms"
_ARPING_HEADER = re.compile(r"^ARPING ([^ ]+) from ([^ ]+) ([^ ]+)$")
_ARPING_REPLY = re.compile(r"^Unicast reply from ([^ ]+) \[([^]]+)\]  [^ ]+$")

_COMMAND_ERRORS = (OSError, subprocess.SubprocessError)


class PingParseError(ValueError):
    """The output of ping could not be understood."""


def _omit_empty(obj: Any) -> dict[str, Any]:
    return {f.name: getattr(obj, f.name) for f in fields(obj) if getattr(obj, f.name)}


@dataclass
class L2Connectivity:
    outgoing_ip_address: str = ""
    outgoing_nic: str = ""
    remote_ip_address: str = ""
    remote_mac: str = ""
    successful: bool = False

    def to_dict(self) -> dict[str, Any]:
        return _omit_empty(self)


@dataclass
class L3Connectivity:
    average_rtt_ms: float = 0.0
    outgoing_nic: str = ""
    packet_loss_percentage: float = 0.0
    remote_ip_address: str = ""
    successful: bool = False

    def to_dict(self) -> dict[str, Any]:
        return _omit_empty(self)


@dataclass
class ConnectivityRemoteHost:
    host_id: str = ""
    l2_connectivity: list[L2Connectivity] = field(default_factory=list)
    l3_connectivity: list[L3Connectivity] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"host_id": self.host_id} if self.host_id else {}
        result["l2_connectivity"] = [c.to_dict() for c in self.l2_connectivity]
        result["l3_connectivity"] = [c.to_dict() for c in self.l3_connectivity]
        return result


@dataclass(frozen=True)
class NetworkInterface:
    """A local network interface; ``kind`` is e.g. physical, bond or vlan."""

    name: str
    mac: str = ""
    addresses: tuple[str, ...] = ()
    kind: str = "physical"

    @property
    def is_physical(self) -> bool:
        return self.kind == "physical"

    @property
    def is_bonding(self) -> bool:
        return self.kind == "bond"

    @property
    def is_vlan(self) -> bool:
        return self.kind == "vlan"


@dataclass
class HostChecker:
    """A remote host to check and the local NICs to check it from."""

    host: dict[str, Any]
    outgoing_nics: list[str]

    def command(self, name: str, args: Sequence[str]) -> str:
        """Run a command and return its combined output; raise if it fails."""
        completed = subprocess.run(
            [name, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=True,
        )
        return completed.stdout

    @property
    def nics(self) -> list[dict[str, Any]]:
        return list(self.host.get("nics") or [])


def _regex_match_for(regex: str, text: str) -> re.Match[str]:
    match = re.search(regex, text)
    if match is None:
        raise PingParseError(f"unable to parse {text} with regex {regex}")
    return match


def parse_ping_output(output: str) -> tuple[float, float]:
    """Return ``(packet_loss_percentage, average_rtt_ms)`` from ping output."""
    if not output:
        raise PingParseError(f"Missing output for ping or invalid output:\n{output}")
    try:
        match = _regex_match_for(_PACKET_LOSS_REGEX, output)
    except PingParseError as err:
        raise PingParseError(f"Unable to retrieve packet loss percentage: {err}") from err
    packet_loss = float(match.group(1))
    try:
        match = _regex_match_for(_AVERAGE_RTT_REGEX, output)
    except PingParseError as err:
        raise PingParseError(f"Unable to retrieve the average RTT for ping: {err}") from err
    try:
        average_rtt = float(match.group(1))
    except ValueError as err:
        raise PingParseError(
            f"Error while trying to convert value for average RTT {match.group(1)}: {err}"
        ) from err
    return packet_loss, average_rtt


def _mac_in(mac: str, all_dst_macs: Iterable[str]) -> bool:
    return any(mac.lower() == dst.lower() for dst in all_dst_macs)


def _is_ipv4(address: str) -> bool:
    try:
        return ipaddress.ip_interface(address).version == 4
    except ValueError:
        return False


def _l3_check_on_nic(address: str, nic: str, checker: HostChecker, dry_run: bool) -> L3Connectivity:
    result = L3Connectivity(outgoing_nic=nic, remote_ip_address=address)
    if dry_run:
        result.successful = True
        return result
    try:
        output = checker.command(
            "ping", ["-c", PING_COUNT, "-W", "3", "-q", "-I", nic, address]
        )
    except _COMMAND_ERRORS as err:
        log.error("Error running ping to %s on interface %s: %s", address, nic, err)
        return result
    try:
        result.packet_loss_percentage, result.average_rtt_ms = parse_ping_output(output)
    except PingParseError as err:
        log.error("%s", err)
        return result
    result.successful = True
    return result


def _l2_ipv4(
    dst_addr: str, dst_mac: str, all_dst_macs: Sequence[str], src_nic: str,
    checker: HostChecker, dry_run: bool,
) -> list[L2Connectivity]:
    base = L2Connectivity(outgoing_nic=src_nic, remote_ip_address=dst_addr)
    if dry_run:
        base.successful = True
        return [base]
    try:
        output = checker.command("arping", ["-c", "1", "-w", "2", "-I", src_nic, dst_addr])
    except _COMMAND_ERRORS as err:
        log.error("Error while processing 'arping' command: %s", err)
        return [base]
    lines = output.split("\n")
    header = _ARPING_HEADER.match(lines[0])
    if header is None:
        log.warning("Wrong format for header line: %s", lines[0])
        return [base]
    base.outgoing_ip_address = header.group(2)
    results = []
    for line in lines[1:]:
        reply = _ARPING_REPLY.match(line)
        if reply is None:
            continue
        remote_mac = reply.group(2).lower()
        successful = _mac_in(remote_mac, all_dst_macs)
        if not successful:
            log.warning("Unexpected mac address for arping %s on nic %s: %s", dst_addr, src_nic, remote_mac)
        if dst_mac.lower() != remote_mac:
            log.info("Received remote mac %s different then expected mac %s", remote_mac, dst_mac)
        results.append(replace(base, remote_mac=remote_mac, successful=successful))
    return results


def analyze_nmap(
    dst_addr: str, dst_mac: str, all_dst_macs: Sequence[str], src_nic: str,
    checker: HostChecker, dry_run: bool,
) -> L2Connectivity:
    """Check L2 reachability of an IPv6 address through ``src_nic`` with nmap."""
    result = L2Connectivity(outgoing_nic=src_nic, remote_ip_address=dst_addr)
    if dry_run:
        result.successful = True
        return result
    try:
        output = checker.command("nmap", ["-6", "-sn", "-n", "-oX", "-", "-e", src_nic, dst_addr])
    except _COMMAND_ERRORS as err:
        log.warning("nmap command failed: %s", err)
        return result
    try:
        run = parse_nmap(output)
    except NmapParseError as err:
        log.warning("Failed to parse nmap XML: %s", err)
        return result
    for host in run.up_hosts():
        mac_address = next(host.addresses_of_type("mac"), None)
        if mac_address is None:
            continue
        remote_mac = mac_address.addr.lower()
        result.remote_mac = remote_mac
        result.successful = _mac_in(remote_mac, all_dst_macs)
        if not result.successful:
            log.warning("Unexpected MAC address for nmap %s on NIC %s: %s", dst_addr, src_nic, remote_mac)
        elif dst_mac.lower() != remote_mac:
            log.info("Received remote MAC %s different then expected MAC %s", remote_mac, dst_mac)
        return result
    return result


def _l2_check_on_nic(
    dst_addr: str, dst_mac: str, all_dst_macs: Sequence[str], src_nic: str,
    checker: HostChecker, dry_run: bool,
) -> list[L2Connectivity]:
    if _is_ipv4(dst_addr):
        return _l2_ipv4(dst_addr, dst_mac, all_dst_macs, src_nic, checker, dry_run)
    return [analyze_nmap(dst_addr, dst_mac, all_dst_macs, src_nic, checker, dry_run)]


def _outgoing_addresses(nics: Iterable[dict[str, Any]]) -> list[str]:
    addresses = (cidr.split("/")[0] for nic in nics for cidr in nic.get("ip_addresses") or [])
    return [a for a in addresses if a]


def check_host(checker: HostChecker, dry_run: bool = False) -> ConnectivityRemoteHost:
    """Run all L2 and L3 checks towards one remote host."""
    nics = checker.nics
    outgoing = list(checker.outgoing_nics or [])
    all_dst_macs = [nic.get("mac", "") for nic in nics]
    l3_addresses = _outgoing_addresses(nics)
    l2_targets = [
        (address, nic.get("mac", "")) for nic in nics for address in nic.get("ip_addresses") or []
    ]
    task_count = (len(l3_addresses) + len(l2_targets)) * len(outgoing)
    workers = max(1, min(task_count, _MAX_WORKERS))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        l3_futures = [
            [pool.submit(_l3_check_on_nic, address, nic, checker, dry_run) for nic in outgoing]
            for address in l3_addresses
        ]
        l2_futures = [
            [
                pool.submit(_l2_check_on_nic, address, mac, all_dst_macs, nic, checker, dry_run)
                for nic in outgoing
            ]
            for address, mac in l2_targets
        ]
        l3_results: list[L3Connectivity] = []
        for address, futures in zip(l3_addresses, l3_futures):
            successful = [r for r in (f.result() for f in futures) if r.successful]
            l3_results.extend(successful or [L3Connectivity(remote_ip_address=address)])
        l2_results: list[L2Connectivity] = []
        for (address, _), futures in zip(l2_targets, l2_futures):
            received = [r for f in futures for r in f.result()]
            l2_results.extend(received or [L2Connectivity(remote_ip_address=address)])
    return ConnectivityRemoteHost(
        host_id=str(checker.host.get("host_id") or ""),
        l2_connectivity=l2_results,
        l3_connectivity=l3_results,
    )


def canonize_result(remote_hosts: list[ConnectivityRemoteHost]) -> list[ConnectivityRemoteHost]:
    """Sort hosts by id and their results by remote address and NIC, in place."""
    for host in remote_hosts:
        host.l3_connectivity.sort(key=lambda c: (c.remote_ip_address, c.outgoing_nic))
        host.l2_connectivity.sort(key=lambda c: (c.remote_ip_address, c.outgoing_nic))
    remote_hosts.sort(key=lambda h: h.host_id)
    return remote_hosts


def get_outgoing_nics(interfaces: Iterable[NetworkInterface]) -> list[str]:
    """Names of physical, bond and VLAN interfaces that have an address."""
    result = []
    for interface in interfaces:
        if not (interface.is_physical or interface.is_bonding or interface.is_vlan):
            continue
        # Interfaces without addresses (e.g. bond slaves) would pollute ARP tables.
        if not interface.addresses:
            log.info("Skipping NIC %s (MAC %s) because of no addresses", interface.name, interface.mac)
            continue
        result.append(interface.name)
    return result


def _interface_kind(name: str) -> str:
    sys_path = Path("/sys/class/net") / name
    if (sys_path / "bonding").exists():
        return "bond"
    if (Path("/proc/net/vlan") / name).exists():
        return "vlan"
    if (sys_path / "device").exists():
        return "physical"
    return "virtual"


def system_interfaces() -> list[NetworkInterface]:
    """The network interfaces of this machine."""
    result = []
    for name, addrs in psutil.net_if_addrs().items():
        mac = ""
        addresses = []
        for addr in addrs:
            if addr.family == psutil.AF_LINK:
                mac = addr.address
            elif addr.family in (socket.AF_INET, socket.AF_INET6):
                ip = addr.address.split("%")[0]
                if addr.netmask:
                    try:
                        ip = str(ipaddress.ip_interface(f"{ip}/{addr.netmask}"))
                    except ValueError:
                        pass
                addresses.append(ip)
        result.append(NetworkInterface(name, mac, tuple(addresses), _interface_kind(name)))
    return result


def connectivity_check(
    request: str, dry_run: bool = False, interfaces: Iterable[NetworkInterface] | None = None
) -> dict[str, Any]:
    """Check connectivity to every host in a JSON request and return the report."""
    hosts = json.loads(request)
    if not isinstance(hosts, list):
        raise ValueError("Connectivity check request must be a list of hosts")
    nics = get_outgoing_nics(system_interfaces() if interfaces is None else interfaces)
    checkers = [HostChecker(host=host, outgoing_nics=nics) for host in hosts]
    with ThreadPoolExecutor(max_workers=max(1, min(len(checkers), _MAX_WORKERS))) as pool:
        remote_hosts = list(pool.map(lambda c: check_host(c, dry_run), checkers))
    canonize_result(remote_hosts)
    return {"remote_hosts": [h.to_dict() for h in remote_hosts]}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="connectivity_check")
    parser.add_argument("--dry-run", action="store_true", help="do not run any probes")
    parser.add_argument("request", nargs="*", help="JSON list of hosts to check")
    args = parser.parse_args(argv)
    if len(args.request) != 1:
        log.warning(
            "Expecting exactly single argument to connectivity check. Received %d",
            len(args.request),
        )
        return -1
    try:
        report = connectivity_check(args.request[0], args.dry_run)
    except ValueError as err:
        log.warning("Error unmarshalling json %s: %s", args.request[0], err)
        sys.stderr.write(str(err))
        return -1
    sys.stdout.write(json.dumps(report, separators=(",", ":")))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())