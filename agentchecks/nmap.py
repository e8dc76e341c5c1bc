"""Parsing of nmap XML output."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Iterator


class NmapParseError(ValueError):
    """The nmap output is not valid XML."""


@dataclass(frozen=True)
class NmapAddress:
    addr: str
    addr_type: str


@dataclass(frozen=True)
class NmapHost:
    state: str
    addresses: tuple[NmapAddress, ...] = ()

    @property
    def is_up(self) -> bool:
        return self.state == "up"

    def addresses_of_type(self, addr_type: str) -> Iterator[NmapAddress]:
        return (a for a in self.addresses if a.addr_type == addr_type)


@dataclass(frozen=True)
class NmapRun:
    hosts: tuple[NmapHost, ...] = ()

    def up_hosts(self) -> Iterator[NmapHost]:
        return (h for h in self.hosts if h.is_up)


def _parse_host(element: ET.Element) -> NmapHost:
    status = element.find("status")
    state = status.get("state", "") if status is not None else ""
    addresses = tuple(
        NmapAddress(a.get("addr", ""), a.get("addrtype", ""))
        for a in element.findall("address")
    )
    return NmapHost(state, addresses)


def parse_nmap(xml_text: str | bytes) -> NmapRun:
    """Parse the ``-oX`` output of nmap into its hosts."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as err:
        raise NmapParseError(str(err)) from err
    return NmapRun(tuple(_parse_host(h) for h in root.findall("host")))