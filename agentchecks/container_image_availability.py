"""Checking that container images can be pulled, and how fast."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass, fields
from typing import Any, Protocol

from agentchecks.execute import TIMEOUT_EXIT_CODE, CommandResult, ProcessExecutor

log = logging.getLogger(__name__)

MEGABYTE = 1e6
FAILED_TO_PULL_IMAGE_EXIT_CODE = 2

RESULT_SUCCESS = "success"
RESULT_FAILURE = "failure"


class PrivilegedExecutor(Protocol):
    def execute_privileged(self, command: str, *args: str) -> CommandResult: ...


class ImagePullError(RuntimeError):
    """Pulling or inspecting an image failed."""


@dataclass
class ImageAvailability:
    """The outcome of checking a single image."""

    name: str
    result: str = RESULT_FAILURE
    size_bytes: float = 0.0
    time: float = 0.0
    download_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name)}


def _dry_run_availability(image: str) -> ImageAvailability:
    return ImageAvailability(
        name=image,
        result=RESULT_SUCCESS,
        size_bytes=400000000,
        time=10,
        download_rate=100,
    )


def _calc_mbps(size_bytes: float, seconds: float) -> float:
    if seconds == 0:
        return 0.0
    return (size_bytes / MEGABYTE) / seconds


def is_image_available(executor: PrivilegedExecutor, image: str) -> bool:
    """Whether the image is already present locally."""
    result = executor.execute_privileged("podman", "images", "--quiet", image)
    return result.exit_code == 0 and result.stdout != ""


def get_image_size(executor: PrivilegedExecutor, image: str) -> float:
    """Size of a local image in bytes."""
    result = executor.execute_privileged(
        "podman", "image", "inspect", "--format={{.Size}}", image
    )
    if result.exit_code != 0:
        raise ImagePullError(
            f"podman inspect exited with non-zero exit code {result.exit_code}: "
            f"{result.stdout}\n {result.stderr}"
        )
    value = result.stdout.strip()
    try:
        return float(value)
    except ValueError as err:
        raise ImagePullError(f"Failed to convert {value} to float: {err}") from err


def pull_image(executor: PrivilegedExecutor, pull_timeout_seconds: int, image: str) -> None:
    """Pull the image, giving up after ``pull_timeout_seconds``."""
    result = executor.execute_privileged(
        "timeout", str(pull_timeout_seconds), "podman", "pull", image
    )
    if result.exit_code == 0:
        return
    if result.exit_code == TIMEOUT_EXIT_CODE:
        raise ImagePullError(f"podman pull was timed out after {pull_timeout_seconds} seconds")
    raise ImagePullError(
        f"podman pull exited with non-zero exit code {result.exit_code}: "
        f"{result.stdout}\n {result.stderr}"
    )


def handle_image_availability(
    executor: PrivilegedExecutor, image: str, pull_timeout_seconds: int, dry_run: bool = False
) -> ImageAvailability:
    """Pull one image and measure the download when it was not present before."""
    if dry_run:
        log.info("Running in dry mode - skipping image availability test, returning fake results")
        return _dry_run_availability(image)

    existed_before = is_image_available(executor, image)
    log.info("Image %s exists locally before pull: %s", image, str(existed_before).lower())

    response = ImageAvailability(name=image, result=RESULT_FAILURE)
    if pull_timeout_seconds <= 0:
        log.warning("Couldn't pull image %s. Timeout expired", image)
        return response

    start = time.perf_counter()
    try:
        pull_image(executor, pull_timeout_seconds, image)
    except ImagePullError as err:
        log.warning("Pulling image %s wasn't available: %s", image, err)
        return response
    pull_seconds = time.perf_counter() - start

    if not existed_before:
        log.info("Pulling image %s is available. Took %f seconds", image, pull_seconds)
        try:
            size = get_image_size(executor, image)
        except ImagePullError as err:
            log.warning("Couldn't get the image size of %s: %s", image, err)
            return response
        response.size_bytes = size
        response.time = pull_seconds
        response.download_rate = _calc_mbps(size, pull_seconds)

    response.result = RESULT_SUCCESS
    return response


def run(
    request: str, executor: PrivilegedExecutor, dry_run: bool = False
) -> list[ImageAvailability]:
    """Check every image of a JSON request within the request's overall timeout."""
    data = json.loads(request)
    if not isinstance(data, dict):
        raise ValueError("Image availability request must be an object")
    images = data.get("images") or []
    timeout = data.get("timeout") or 0
    deadline = time.monotonic() + timeout
    return [
        handle_image_availability(executor, image, int(deadline - time.monotonic()), dry_run)
        for image in images
    ]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="container_image_availability")
    parser.add_argument(
        "--request", default="", help="The request details, a JSON object with images and timeout"
    )
    parser.add_argument("--dry-run", action="store_true", help="do not pull anything")
    args = parser.parse_args(argv)
    if not args.request:
        parser.print_usage(sys.stderr)
        return 1
    log.info("Checking image availability, requested images: %s", args.request)
    try:
        results = run(args.request, ProcessExecutor(), args.dry_run)
    except ValueError as err:
        log.error("Failed to parse image availability request string %s: %s", args.request, err)
        sys.stderr.write(str(err))
        return -1
    sys.stdout.write(
        json.dumps({"images": [r.to_dict() for r in results]}, separators=(",", ":"))
    )
    if any(r.result != RESULT_SUCCESS for r in results):
        return FAILED_TO_PULL_IMAGE_EXIT_CODE
    return 0


if __name__ == "__main__":
    raise SystemExit(main())