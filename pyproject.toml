[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "agentchecks"
version = "0.1.0"
description = "Host-side network, disk and image checks for a bare-metal installation agent"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = [
    "agent",
    "installation",
    "connectivity",
    "nmap",
    "dhcp",
    "fio",
    "podman",
    "dns",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
free-addresses = "agentchecks.free_addresses:main"
connectivity-check = "agentchecks.connectivity_check:main"
container-image-availability = "agentchecks.container_image_availability:main"
disk-speed-check = "agentchecks.disk_speed_check:main"
dhcp-lease-allocate = "agentchecks.dhcp_lease_allocate:main"
domain-resolution = "agentchecks.domain_resolution:main"

[tool.hatch.build.targets.wheel]
packages = ["agentchecks"]

[tool.pytest.ini_options]
addopts = "-ra"
