"""Allocating DHCP leases for the API and ingress virtual IPs."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from typing import Any, Protocol

from agentchecks.execute import TIMEOUT_EXIT_CODE, CommandResult, ProcessExecutor

log = logging.getLogger(__name__)

CONFIG_PATH = "/etc/keepalived"
DHCLIENT_TIMEOUT_SECONDS = 28
LEASE_FILE_MODE = 0o644

_INTERFACE_CLAUSE = re.compile(r'interface\s+"[^"]+"')
_LAST_LEASE = re.compile(r"(?:\A|\s)(lease\s*\{[^}{]*\})\s*\Z")
_LEASE_BLOCK = re.compile(r"lease\s*\{[^}{]*\}")
_LEASE_INTERFACE = re.compile(r'interface\s+"([^"]+)"')
_LEASE_ADDRESS = re.compile(r"fixed-address\s+([^;\s]+)")
_MAC_SEPARATED = re.compile(r"^[0-9A-Fa-f]{2}(?:([:-])[0-9A-Fa-f]{2})+$")
_MAC_DOTTED = re.compile(r"^[0-9A-Fa-f]{4}(?:\.[0-9A-Fa-f]{4})+$")


class LeaseError(Exception):
    """A lease could not be allocated."""


class LeaserDependencies(Protocol):
    def execute(self, command: str, *args: str) -> CommandResult: ...

    def write_file(self, filename: str, data: bytes, mode: int) -> None: ...

    def read_file(self, filename: str) -> bytes: ...

    def get_last_lease_from_file(self, filename: str) -> tuple[str, str]: ...

    def lease_interface(self, master_device: str, name: str, mac: str) -> str: ...

    def delete_link(self, name: str) -> None: ...

    def mkdir_all(self, path: str) -> None: ...


def _parse_last_lease(text: str) -> tuple[str, str]:
    """Interface name and address of the last lease in dhclient lease text."""
    blocks = _LEASE_BLOCK.findall(text)
    if not blocks:
        raise LeaseError("No lease found")
    last = blocks[-1]
    interface = _LEASE_INTERFACE.search(last)
    address = _LEASE_ADDRESS.search(last)
    if interface is None or address is None:
        raise LeaseError("Last lease has no interface or fixed address")
    return interface.group(1), address.group(1)


class SystemLeaserDependencies:
    """Leasing through the real system: files, ``ip`` and ``dhclient``."""

    def execute(self, command: str, *args: str) -> CommandResult:
        return ProcessExecutor().execute(command, *args)

    def _run_ip(self, *args: str) -> None:
        result = self.execute("ip", *args)
        if result.exit_code != 0:
            raise LeaseError(
                f"ip {' '.join(args)} exited with code {result.exit_code}: {result.stderr}"
            )

    def write_file(self, filename: str, data: bytes, mode: int) -> None:
        fd = os.open(filename, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)

    def read_file(self, filename: str) -> bytes:
        with open(filename, "rb") as handle:
            return handle.read()

    def get_last_lease_from_file(self, filename: str) -> tuple[str, str]:
        text = self.read_file(filename).decode(errors="replace")
        try:
            return _parse_last_lease(text)
        except LeaseError as err:
            raise LeaseError(f"{err} in {filename}") from err

    def lease_interface(self, master_device: str, name: str, mac: str) -> str:
        self._run_ip(
            "link", "add", "link", master_device, "name", name,
            "address", mac, "type", "macvlan", "mode", "private",
        )
        self._run_ip("link", "set", name, "up")
        return name

    def delete_link(self, name: str) -> None:
        self._run_ip("link", "del", name)

    def mkdir_all(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)


def _parse_mac(mac: Any) -> str:
    """Validate a hardware address and return it as lower-case, colon-separated."""
    if not isinstance(mac, str):
        raise LeaseError(f"address {mac}: invalid MAC address")
    if _MAC_DOTTED.match(mac):
        digits = mac.replace(".", "")
    elif _MAC_SEPARATED.match(mac):
        digits = mac.replace(":", "").replace("-", "")
        separator = _MAC_SEPARATED.match(mac).group(1)
        if separator and (":" in mac and "-" in mac):
            raise LeaseError(f"address {mac}: invalid MAC address")
    else:
        raise LeaseError(f"address {mac}: invalid MAC address")
    octets = [digits[i:i + 2] for i in range(0, len(digits), 2)]
    if len(octets) not in (6, 8, 20):
        raise LeaseError(f"address {mac}: invalid MAC address")
    return ":".join(octets).lower()


def format_lease_file(contents: str, interface_name: str) -> str:
    """Point every interface clause of a lease file at ``interface_name``."""
    return _INTERFACE_CLAUSE.sub(f'interface "{interface_name}"', contents)


def format_hostname(mac: str, suffix: str) -> str:
    """Hostname sent by dhclient: the MAC with dashes, then the suffix."""
    return f"{mac.replace(':', '-')}-{suffix}"


def extract_last_lease(dependencies: LeaserDependencies, lease_file: str) -> str:
    """The text of the last lease block, which must end the file."""
    try:
        content = dependencies.read_file(lease_file)
    except OSError as err:
        raise LeaseError(f"Could not read lease file: {err}") from err
    text = content.decode(errors="replace") if isinstance(content, bytes) else content
    match = _LAST_LEASE.search(text)
    if match is None:
        raise LeaseError(f"Failed to extract last lease from file {lease_file}")
    return match.group(1)


def _delete_interface(dependencies: LeaserDependencies, name: str) -> None:
    try:
        dependencies.delete_link(name)
    except (LeaseError, OSError) as err:
        log.error("deleteInterface: failed to delete link %s: %s", name, err)


def lease_vip(
    dependencies: LeaserDependencies,
    lease_file: str,
    master_device: str,
    name: str,
    mac: str,
    lease_file_contents: str,
) -> None:
    """Obtain a lease for a VIP through a temporary macvlan interface."""
    try:
        try:
            interface = dependencies.lease_interface(master_device, name, mac)
        except (LeaseError, OSError) as err:
            log.error("Failed to lease interface %s on %s: %s", name, master_device, err)
            raise LeaseError(str(err)) from err

        if lease_file_contents:
            data = format_lease_file(lease_file_contents, interface).encode()
            try:
                dependencies.write_file(lease_file, data, LEASE_FILE_MODE)
            except OSError as err:
                raise LeaseError(f"Failed to save lease file {lease_file}: {err}") from err

        # -sf keeps dhclient from configuring the address; --no-pid allows parallel runs.
        result = dependencies.execute(
            "timeout", str(DHCLIENT_TIMEOUT_SECONDS), "dhclient", "-v",
            "-H", format_hostname(mac, name),
            "-sf", "/bin/true", "-lf", lease_file,
            "--no-pid", "-1", interface,
        )
        if result.exit_code == 0:
            return
        if result.exit_code == TIMEOUT_EXIT_CODE:
            raise LeaseError(f"dhclient was timed out after {DHCLIENT_TIMEOUT_SECONDS} seconds")
        raise LeaseError(
            f"dhclient exited with non-zero exit code {result.exit_code}: {result.stderr}"
        )
    finally:
        _delete_interface(dependencies, name)


class Leaser:
    """Allocates leases for the API and ingress VIPs of a cluster."""

    def __init__(self, dependencies: LeaserDependencies) -> None:
        self.dependencies = dependencies

    def _lease_by_mac(
        self, cfg_path: str, master_device: str, name: str, mac_string: Any, contents: str
    ) -> tuple[str, str]:
        mac = _parse_mac(mac_string)
        lease_file = os.path.join(cfg_path, f"lease-{name}")
        lease_vip(self.dependencies, lease_file, master_device, name, mac, contents)

        try:
            interface, ip = self.dependencies.get_last_lease_from_file(lease_file)
        except (LeaseError, OSError) as err:
            log.error("Failed to get last lease from file %s: %s", lease_file, err)
            raise LeaseError(str(err)) from err
        if interface != name:
            message = f"Interface name {interface} is different from expected {name}"
            log.error(message)
            raise LeaseError(message)

        last_lease = extract_last_lease(self.dependencies, lease_file)
        return ip, last_lease

    def lease_allocate(self, request: str) -> dict[str, str]:
        """Handle a JSON allocation request and return the leased addresses."""
        try:
            data = json.loads(request)
        except json.JSONDecodeError as err:
            log.error("DhcpLeaseAllocate: json decode: %s", err)
            raise LeaseError(str(err)) from err
        if not isinstance(data, dict):
            raise LeaseError("DHCP allocation request must be an object")
        interface = data.get("interface")
        if not isinstance(interface, str):
            raise LeaseError("Missing interface in DHCP allocation request")

        try:
            self.dependencies.mkdir_all(CONFIG_PATH)
        except OSError as err:
            log.error("Could not mkdir %s: %s", CONFIG_PATH, err)
            raise LeaseError(f"Could not mkdir {CONFIG_PATH}: {err}") from err

        api_vip, api_lease = self._lease_by_mac(
            CONFIG_PATH, interface, "api", data.get("api_vip_mac"), data.get("api_vip_lease") or ""
        )
        ingress_vip, ingress_lease = self._lease_by_mac(
            CONFIG_PATH, interface, "ingress",
            data.get("ingress_vip_mac"), data.get("ingress_vip_lease") or "",
        )
        return {
            "api_vip_address": api_vip,
            "ingress_vip_address": ingress_vip,
            "api_vip_lease": api_lease,
            "ingress_vip_lease": ingress_lease,
        }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="dhcp_lease_allocate")
    parser.add_argument("request", nargs="*", help="JSON DHCP allocation request")
    args = parser.parse_args(argv)
    if len(args.request) != 1:
        log.warning(
            "Expecting exactly single argument to dhcp_lease_allocate. Received %d",
            len(args.request),
        )
        return -1
    try:
        response = Leaser(SystemLeaserDependencies()).lease_allocate(args.request[0])
    except LeaseError as err:
        sys.stderr.write(str(err))
        return -1
    sys.stdout.write(json.dumps(response, separators=(",", ":")))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())