"""Measuring disk write-sync latency with fio."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

from agentchecks.execute import CommandResult, ProcessExecutor

log = logging.getLogger(__name__)

DRY_MODE_SYNC_DURATION_NS = 1_000_000
NUM_OF_FIO_JOBS = 2
_NS_PER_MS = 1_000_000


class Executor(Protocol):
    def execute(self, command: str, *args: str) -> CommandResult: ...


class _AllJobsFailed(RuntimeError):
    def __init__(self, message: str, path: str) -> None:
        super().__init__(message)
        self.path = path


def _ns_to_ms(ns: int) -> int:
    return ns // _NS_PER_MS if ns >= 0 else -((-ns) // _NS_PER_MS)


def _response(io_sync_duration: int, path: str) -> dict[str, Any]:
    return {"io_sync_duration": io_sync_duration, "path": path}


class DiskSpeedCheck:
    """Runs fio against a disk and reports the 99th percentile fdatasync latency."""

    def __init__(self, executor: Executor, dry_run: bool = False) -> None:
        self.executor = executor
        self.dry_run = dry_run

    def fio_perf_check(self, request: str) -> dict[str, Any]:
        """Handle a JSON request naming a disk path; return the worst latency in ms.

        Several fio jobs run at once to load the disk. Raises ``ValueError``
        for a malformed request and ``RuntimeError`` when every job failed.
        """
        try:
            data = json.loads(request)
        except json.JSONDecodeError as err:
            message = f"Failed to unmarshal DiskSpeedCheckRequest: {err}"
            log.error(message)
            raise ValueError(message) from err
        if not isinstance(data, dict):
            raise ValueError("Failed to unmarshal DiskSpeedCheckRequest: request must be an object")
        path = data.get("path")
        if path is None:
            message = "Missing Filename in DiskSpeedCheckRequest"
            log.error(message)
            raise ValueError(message)
        if not isinstance(path, str):
            raise ValueError("Failed to unmarshal DiskSpeedCheckRequest: path must be a string")

        with ThreadPoolExecutor(max_workers=NUM_OF_FIO_JOBS) as pool:
            futures = [pool.submit(self.get_disk_perf, path) for _ in range(NUM_OF_FIO_JOBS)]

        max_latency = -1
        last_error = ""
        for future in futures:
            error = future.exception()
            if error is not None:
                last_error = str(error)
                # The failure may be temporary, so other jobs still count.
                log.warning("Failed to get disk's I/O performance: %s", last_error)
                continue
            max_latency = max(max_latency, future.result())

        if max_latency == -1:
            raise _AllJobsFailed(last_error, path)

        log.info("FIO result on disk %s :fdatasync duration %d ms", path, max_latency)
        return _response(max_latency, path)

    def get_disk_perf(self, path: str) -> int:
        """The 99th percentile of fdatasync durations in milliseconds."""
        if path == "":
            raise RuntimeError("Missing disk path")
        if self.dry_run:
            # Pretend the disk is fast rather than write to it.
            return _ns_to_ms(DRY_MODE_SYNC_DURATION_NS)

        # fio treats colons as device separators, which breaks by-path names.
        escaped = path.replace(":", "\\:")
        result = self.executor.execute(
            "fio", "--filename", escaped, "--name=test", "--rw=write", "--ioengine=sync",
            "--size=22m", "-bs=2300", "--fdatasync=1", "--offset=1M", "--output-format=json",
        )
        if result.exit_code != 0:
            raise RuntimeError(
                f"Could not get I/O performance for path {path} "
                f"(fio exit code: {result.exit_code}, stderr: {result.stderr})"
            )
        try:
            report = json.loads(result.stdout)
            percentile = report["jobs"][0].get("sync", {}).get("lat_ns", {}).get("percentile", {})
            sync_ns = int(percentile.get("99.000000", 0))
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as err:
            raise RuntimeError(
                f"Failed to get sync duration from I/O info for path {path}: {err}"
            ) from err
        return _ns_to_ms(sync_ns)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="disk_speed_check")
    parser.add_argument("--dry-run", action="store_true", help="do not write to the disk")
    parser.add_argument("request", nargs="*", help="JSON request with the disk path")
    args = parser.parse_args(argv)
    request = args.request[-1] if args.request else ""
    checker = DiskSpeedCheck(ProcessExecutor(), args.dry_run)
    try:
        response = checker.fio_perf_check(request)
    except ValueError as err:
        sys.stderr.write(str(err))
        return -1
    except _AllJobsFailed as err:
        sys.stdout.write(json.dumps(_response(0, err.path), separators=(",", ":")))
        sys.stderr.write(str(err))
        return -1
    sys.stdout.write(json.dumps(response, separators=(",", ":")))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())