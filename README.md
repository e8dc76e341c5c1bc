# agentchecks

A set of small command-line checks that an installation agent runs on a
bare-metal host before an install. Each check reads one JSON request, does
its work with the usual system tools, and prints a JSON response on standard
output. Error messages go to standard error, and the exit status reports the
outcome: `0` for success, non-zero for failure.

## Installation

```
pip install .
```

The checks call the system tools they need, so the host must provide them:
`nmap`, `ping`, `arping`, `podman`, `timeout`, `fio`, `dhclient` and `ip`,
depending on which checks you run. Most of them need root privileges.

Every command is also available as a module, for example
`python -m agentchecks.free_addresses`.

## Commands

### free-addresses

Scans IPv4 networks with an ARP ping sweep (`nmap -sn -PR`) and reports the
addresses that no host answered on. Large networks are scanned in `/22`
slices, and scanning stops once 8000 free addresses have been found.

```
free-addresses '["10.0.0.0/24", "192.168.0.0/18"]'
```

Every network must be given in canonical form (`10.0.0.0/24`, not
`10.0.0.1/24`); otherwise the command fails. IPv6 networks yield an empty
address list. The output is a list of `{"network": ..., "free_addresses": [...]}`
objects in request order.

### connectivity-check

Checks layer 2 (`arping` for IPv4, `nmap` neighbour discovery for IPv6) and
layer 3 (`ping`) reachability of remote hosts from every local physical, bond
or VLAN interface that has an address.

```
connectivity-check '[{"host_id": "host-1", "nics": [{"ip_addresses": ["192.168.1.2"], "mac": "02:00:00:00:00:01"}]}]'
```

`--dry-run` skips all probes and reports every check as successful. The
result is `{"remote_hosts": [...]}`, sorted by host id, with each host's L2
and L3 outcomes sorted by remote address and outgoing NIC.

### container-image-availability

Pulls each requested image with podman within an overall timeout (in
seconds) and reports pull time, size and download rate for images that were
not present before.

```
container-image-availability --request '{"images": ["registry.example.com/app:latest"], "timeout": 60}'
```

`--dry-run` returns fixed successful results without pulling. Without
`--request` the command prints its usage and exits with status `1`; it exits
with status `2` if any image could not be pulled.

### disk-speed-check

Runs two `fio` jobs concurrently against a disk and reports the worst 99th
percentile `fdatasync` latency in milliseconds.

```
disk-speed-check '{"path": "/dev/sdb"}'
```

The output is `{"io_sync_duration": ..., "path": ...}`. If every job fails,
the duration is reported as `0` and the command exits non-zero. `--dry-run`
reports 1 ms without touching the disk.

### dhcp-lease-allocate

Obtains DHCP leases for the API and ingress virtual IPs through temporary
macvlan interfaces on the given device, and returns the addresses together
with the lease text so that the same leases can be renewed later by passing
it back as `api_vip_lease` and `ingress_vip_lease`.

```
dhcp-lease-allocate '{"interface": "eth0", "api_vip_mac": "02:00:00:00:00:01", "ingress_vip_mac": "02:00:00:00:00:02"}'
```

Lease files are kept as `/etc/keepalived/lease-api` and
`/etc/keepalived/lease-ingress`; `dhclient` is given 28 seconds per lease.

### domain-resolution

Resolves domain names through the system resolver and reports their IPv4
and IPv6 addresses. A name that does not exist yields empty address lists
rather than an error.

```
domain-resolution --request '{"domains": [{"domain_name": "example.com"}]}'
```

## Library use

Each check can also be called from Python with a custom executor, which is
how the tests drive them: `free_addresses.get_free_addresses`,
`connectivity_check.connectivity_check`, `container_image_availability.run`,
`disk_speed_check.DiskSpeedCheck`, `dhcp_lease_allocate.Leaser` and
`domain_resolution.run`. `execute.ProcessExecutor` runs real commands and
returns a `CommandResult` with `stdout`, `stderr` and `exit_code`.

## What it does not do

The package only holds the individual checks. It has no agent that
registers with an installation service, fetches requests from it or sends
results back, and it does not collect a hardware inventory. The commands do
not set up logging themselves; only warnings and errors reach standard error.

## Running the tests

```
pip install '.[test]'
pytest
```