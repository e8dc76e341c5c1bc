import json

import pytest

from agentchecks.dhcp_lease_allocate import (
    LeaseError,
    Leaser,
    SystemLeaserDependencies,
    extract_last_lease,
    format_hostname,
    format_lease_file,
    lease_vip,
    main,
)
from agentchecks.execute import CommandResult

MAC_API = "02:00:00:00:00:01"
MAC_INGRESS = "02:00:00:00:00:02"
API_LEASE = "lease { api }"
INGRESS_LEASE = "lease { ingress }"

SINGLE_LEASE = "lease {\n\t\tsingle Lease;\n}"
FIRST_LEASE = "lease {\n\t\tfirst Lease;\n}"
SECOND_LEASE = "lease {\n\t\tsecond Lease;\n}"
TWO_LEASES = FIRST_LEASE + "\n" + SECOND_LEASE


class FakeDependencies:
    def __init__(self, files=None, read_error=None, write_error=None, exit_code=0):
        self.files = dict(files or {})
        self.read_error = read_error
        self.write_error = write_error
        self.exit_code = exit_code
        self.executed = []
        self.written = {}
        self.leased = []
        self.deleted = []
        self.made = []
        self.ips = {"api": "1.2.3.0", "ingress": "1.2.3.1"}

    def execute(self, command, *args):
        self.executed.append((command, *args))
        return CommandResult("", "", self.exit_code)

    def write_file(self, filename, data, mode):
        if self.write_error:
            raise self.write_error
        self.written[filename] = (data, mode)

    def read_file(self, filename):
        if self.read_error:
            raise self.read_error
        return self.files[filename].encode()

    def get_last_lease_from_file(self, filename):
        name = filename.rsplit("lease-", 1)[1]
        return name, self.ips[name]

    def lease_interface(self, master_device, name, mac):
        self.leased.append((master_device, name, mac))
        return name

    def delete_link(self, name):
        self.deleted.append(name)

    def mkdir_all(self, path):
        self.made.append(path)


def lease_request(iface, api_mac, ingress_mac, api_lease, ingress_lease):
    return json.dumps(
        {
            "api_vip_lease": api_lease,
            "api_vip_mac": api_mac,
            "ingress_vip_lease": ingress_lease,
            "ingress_vip_mac": ingress_mac,
            "interface": iface,
        }
    )


def default_files():
    return {
        "/etc/keepalived/lease-api": API_LEASE,
        "/etc/keepalived/lease-ingress": INGRESS_LEASE,
    }


def dhclient_call(mac, name):
    return (
        "timeout", "28", "dhclient", "-v", "-H", format_hostname(mac, name),
        "-sf", "/bin/true", "-lf", f"/etc/keepalived/lease-{name}",
        "--no-pid", "-1", name,
    )


def test_success_first_time():
    deps = FakeDependencies(files=default_files())
    response = Leaser(deps).lease_allocate(lease_request("eth0", MAC_API, MAC_INGRESS, "", ""))
    assert response == {
        "api_vip_address": "1.2.3.0",
        "ingress_vip_address": "1.2.3.1",
        "api_vip_lease": API_LEASE,
        "ingress_vip_lease": INGRESS_LEASE,
    }
    assert deps.made == ["/etc/keepalived"]
    assert deps.written == {}
    assert deps.executed == [dhclient_call(MAC_API, "api"), dhclient_call(MAC_INGRESS, "ingress")]
    assert deps.deleted == ["api", "ingress"]
    assert deps.leased == [("eth0", "api", MAC_API), ("eth0", "ingress", MAC_INGRESS)]


def test_success_second_time_writes_lease_files():
    deps = FakeDependencies(files=default_files())
    response = Leaser(deps).lease_allocate(
        lease_request("eth0", MAC_API, MAC_INGRESS, API_LEASE, INGRESS_LEASE)
    )
    assert response["api_vip_address"] == "1.2.3.0"
    assert response["ingress_vip_address"] == "1.2.3.1"
    assert response["api_vip_lease"] == API_LEASE
    assert response["ingress_vip_lease"] == INGRESS_LEASE
    assert deps.written == {
        "/etc/keepalived/lease-api": (API_LEASE.encode(), 0o644),
        "/etc/keepalived/lease-ingress": (INGRESS_LEASE.encode(), 0o644),
    }
    assert deps.deleted == ["api", "ingress"]


def test_error_reading_lease_file():
    deps = FakeDependencies(files=default_files(), read_error=OSError("Blah"))
    with pytest.raises(LeaseError, match="Could not read lease file"):
        Leaser(deps).lease_allocate(
            lease_request("eth0", MAC_API, MAC_INGRESS, API_LEASE, INGRESS_LEASE)
        )
    assert deps.deleted == ["api"]


def test_error_writing_lease_file():
    deps = FakeDependencies(files=default_files(), write_error=OSError("Blah"))
    with pytest.raises(LeaseError, match="Failed to save lease file /etc/keepalived/lease-api"):
        Leaser(deps).lease_allocate(
            lease_request("eth0", MAC_API, MAC_INGRESS, API_LEASE, INGRESS_LEASE)
        )
    assert deps.executed == []
    assert deps.deleted == ["api"]


def test_invalid_json_request():
    with pytest.raises(LeaseError):
        Leaser(FakeDependencies()).lease_allocate("blah blah")


def test_invalid_mac_is_rejected():
    deps = FakeDependencies(files=default_files())
    with pytest.raises(LeaseError, match="invalid MAC address"):
        Leaser(deps).lease_allocate(lease_request("eth0", "not-a-mac", MAC_INGRESS, "", ""))
    assert deps.leased == []


def test_upper_case_mac_is_normalized_in_hostname():
    deps = FakeDependencies(files=default_files())
    Leaser(deps).lease_allocate(
        lease_request("eth0", MAC_API.upper(), MAC_INGRESS, "", "")
    )
    assert deps.executed[0][5] == "02-00-00-00-00-01-api"


def test_dhclient_timeout():
    deps = FakeDependencies(exit_code=124)
    with pytest.raises(LeaseError) as info:
        lease_vip(deps, "/etc/keepalived/lease-api", "eth0", "api", MAC_API, "")
    assert str(info.value) == "dhclient was timed out after 28 seconds"
    assert deps.deleted == ["api"]


def test_dhclient_failure():
    deps = FakeDependencies(exit_code=1)
    with pytest.raises(LeaseError, match="dhclient exited with non-zero exit code 1"):
        lease_vip(deps, "/etc/keepalived/lease-api", "eth0", "api", MAC_API, "")


def test_lease_vip_rewrites_interface_in_lease_file():
    deps = FakeDependencies()
    contents = 'lease {\n  interface "eth9";\n}'
    lease_vip(deps, "/tmp/lease-api", "eth0", "api", MAC_API, contents)
    assert deps.written["/tmp/lease-api"][0] == b'lease {\n  interface "api";\n}'


def test_format_hostname():
    assert format_hostname("02:00:00:00:00:01", "api") == "02-00-00-00-00-01-api"


def test_format_lease_file():
    assert format_lease_file('interface   "old"; interface "x";', "new") == (
        'interface "new"; interface "new";'
    )


def test_extract_single_lease():
    deps = FakeDependencies(files={"Blah": SINGLE_LEASE})
    assert extract_last_lease(deps, "Blah") == SINGLE_LEASE


def test_extract_untrimmed_single_lease():
    deps = FakeDependencies(files={"Blah": "\n\t \n" + SINGLE_LEASE + " \t\n\n "})
    assert extract_last_lease(deps, "Blah") == SINGLE_LEASE


def test_extract_invalid_single_lease():
    deps = FakeDependencies(files={"Blah": "\n\t \n" + SINGLE_LEASE + " \t\n\n l"})
    with pytest.raises(LeaseError):
        extract_last_lease(deps, "Blah")


def test_extract_two_leases():
    deps = FakeDependencies(files={"Blah": TWO_LEASES})
    assert extract_last_lease(deps, "Blah") == SECOND_LEASE


def test_system_dependencies_file_round_trip(tmp_path):
    deps = SystemLeaserDependencies()
    target = tmp_path / "lease-api"
    deps.write_file(str(target), b"data", 0o644)
    assert deps.read_file(str(target)) == b"data"


def test_system_dependencies_last_lease(tmp_path):
    target = tmp_path / "lease-api"
    target.write_text(
        'lease {\n  interface "eth0";\n  fixed-address 10.0.0.5;\n}\n'
        'lease {\n  interface "api";\n  fixed-address 10.0.0.7;\n}\n'
    )
    assert SystemLeaserDependencies().get_last_lease_from_file(str(target)) == ("api", "10.0.0.7")


def test_system_dependencies_no_lease(tmp_path):
    target = tmp_path / "lease-api"
    target.write_text("nothing here")
    with pytest.raises(LeaseError):
        SystemLeaserDependencies().get_last_lease_from_file(str(target))


def test_system_dependencies_mkdir_all(tmp_path):
    path = tmp_path / "a" / "b"
    SystemLeaserDependencies().mkdir_all(str(path))
    assert path.is_dir()


def test_main_requires_single_argument():
    assert main([]) == -1
    assert main(["a", "b"]) == -1


def test_main_reports_bad_request(capsys):
    assert main(["blah blah"]) == -1
    assert capsys.readouterr().err != ""