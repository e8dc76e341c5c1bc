import json

import pytest

from agentchecks.execute import CommandResult
from agentchecks.free_addresses import (
    ADDRESS_LIMIT,
    MIN_SUBNET_MASK_SIZE,
    FreeAddressesError,
    get_free_addresses,
    main,
    scan_network,
)

NMAP_ARGS = ("-sn", "-PR", "-n", "-oX", "-")

ONE_ADDRESS = """
<nmaprun>
<host>
<status state="up"/>
<address addr="10.0.0.254" addrtype="ipv4"/>
</host>
<host>
<status state="down"/>
<address addr="10.0.0.250" addrtype="ipv4"/>
</host>
</nmaprun>
"""


def _multiple(third, last):
    return f"""
<nmaprun>
<host>
<status state="up"/>
<address addr="192.168.{third}.1" addrtype="ipv4"/>
</host>
<host>
<status state="down"/>
<address addr="192.168.{third}.2" addrtype="ipv4"/>
</host>
<host>
<status state="up"/>
<address addr="192.168.{third}.{last}" addrtype="ipv4"/>
</host>
</nmaprun>
"""


EMPTY = "<nmaprun/>"


class FakeExecutor:
    def __init__(self, outputs):
        self.outputs = outputs
        self.calls = []

    def execute(self, command, *args):
        if command != "nmap" or args[:-1] != NMAP_ARGS:
            raise AssertionError(f"unexpected command {command} {args}")
        self.calls.append(args[-1])
        return self.outputs[args[-1]]


def ok(xml):
    return CommandResult(xml, "", 0)


def request(*networks):
    return json.dumps(list(networks))


def test_parse_error():
    executor = FakeExecutor({})
    with pytest.raises(FreeAddressesError) as info:
        get_free_addresses("blah blah", executor)
    assert info.value.exit_code == -1
    assert executor.calls == []


def test_bad_network():
    with pytest.raises(FreeAddressesError) as info:
        get_free_addresses(request("10.0.0.1/24"), FakeExecutor({}))
    assert info.value.exit_code == -1
    assert info.value.message == (
        "Requested CIDR 10.0.0.0/24 is not equal to provided network 10.0.0.1/24"
    )


def test_invalid_cidr():
    with pytest.raises(FreeAddressesError) as info:
        scan_network("blah", FakeExecutor({}))
    assert info.value.message.startswith("Network blah is not a valid CIDR")


def test_happy_flow():
    executor = FakeExecutor({"10.0.0.0/24": ok(ONE_ADDRESS)})
    response = get_free_addresses(request("10.0.0.0/24"), executor)
    assert len(response) == 1
    assert response[0]["network"] == "10.0.0.0/24"
    assert "10.0.0.254" not in response[0]["free_addresses"]
    assert "10.0.0.250" in response[0]["free_addresses"]
    assert len(response[0]["free_addresses"]) == 255
    assert executor.calls == ["10.0.0.0/24"]


def test_multiple_cidrs():
    outputs = {
        "10.0.0.0/24": ok(ONE_ADDRESS),
        "192.168.0.0/22": ok(_multiple(0, 10)),
        "192.168.4.0/22": ok(_multiple(4, 11)),
        "192.168.8.0/22": ok(_multiple(8, 12)),
        "192.168.12.0/22": ok(_multiple(12, 13)),
        "192.168.16.0/22": ok(EMPTY),
        "192.168.20.0/22": ok(EMPTY),
        "192.168.24.0/22": ok(EMPTY),
        "192.168.28.0/22": ok(EMPTY),
    }
    executor = FakeExecutor(outputs)
    response = get_free_addresses(request("10.0.0.0/24", "192.168.0.0/18"), executor)
    assert sorted(executor.calls) == sorted(outputs)
    assert len(response) == 2
    first, second = response
    assert first["network"] == "10.0.0.0/24"
    assert "10.0.0.254" not in first["free_addresses"]
    assert "10.0.0.250" in first["free_addresses"]

    assert second["network"] == "192.168.0.0/18"
    free = set(second["free_addresses"])
    assert len(second["free_addresses"]) >= ADDRESS_LIMIT
    assert len(second["free_addresses"]) <= ADDRESS_LIMIT - 1 + (1 << (32 - MIN_SUBNET_MASK_SIZE))
    for taken in ["192.168.0.1", "192.168.0.10", "192.168.4.1", "192.168.4.11",
                  "192.168.8.1", "192.168.8.12", "192.168.12.1", "192.168.12.13"]:
        assert taken not in free
    for available in ["192.168.3.3", "192.168.6.3", "192.168.9.3", "192.168.12.12",
                      "192.168.12.11", "192.168.12.10", "192.168.0.3"]:
        assert available in free


def test_nmap_failure_propagates_exit_code():
    executor = FakeExecutor({"10.0.0.0/24": CommandResult("", "nmap broke", 3)})
    with pytest.raises(FreeAddressesError) as info:
        get_free_addresses(request("10.0.0.0/24"), executor)
    assert info.value.exit_code == 3
    assert info.value.message == "nmap broke"


def test_invalid_nmap_xml():
    executor = FakeExecutor({"10.0.0.0/24": ok("plain text")})
    with pytest.raises(FreeAddressesError) as info:
        scan_network("10.0.0.0/24", executor)
    assert info.value.exit_code == -1


def test_ipv6_network_has_no_free_addresses():
    executor = FakeExecutor({})
    result = scan_network("2001:db8::/120", executor)
    assert result == {"network": "2001:db8::/120", "free_addresses": []}
    assert executor.calls == []


def test_main_requires_single_argument():
    assert main([]) == -1


def test_main_reports_bad_network(capsys):
    assert main([request("10.0.0.1/24")]) == -1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Requested CIDR 10.0.0.0/24 is not equal to provided network 10.0.0.1/24" in captured.err


def test_main_reports_bad_json(capsys):
    assert main(["blah blah"]) == -1
    assert capsys.readouterr().out == ""