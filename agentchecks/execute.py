"""Running external commands and collecting their output."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass

log = logging.getLogger(__name__)

# Exit code reported by the ``timeout`` utility when the command timed out.
TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True)
class CommandResult:
    """Output and exit code of a finished command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessExecutor:
    """Runs commands as child processes of the agent."""

    def execute(self, command: str, *args: str) -> CommandResult:
        """Run ``command`` with ``args`` and capture stdout, stderr and exit code.

        A command that cannot be started yields exit code -1 and the reason
        in stderr.
        """
        try:
            completed = subprocess.run(
                [command, *args],
                capture_output=True,
                text=True,
                errors="replace",
                check=False,
            )
        except OSError as err:
            log.warning("Failed to start %s: %s", command, err)
            return CommandResult("", str(err), -1)
        return CommandResult(completed.stdout, completed.stderr, completed.returncode)

    def execute_privileged(self, command: str, *args: str) -> CommandResult:
        """Run a command that needs the agent's privileges.

        The agent itself runs privileged, so the command is started directly.
        """
        return self.execute(command, *args)