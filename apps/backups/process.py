"""
External process execution.

SubprocessRunner is the only code in the backup app that touches the host
process table. Everything else depends on the ProcessRunner interface so
tests can substitute a fake.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

logger = logging.getLogger(__name__)


class ProcessTimeout(Exception):
    """Raised when an external process exceeds its timeout."""

    def __init__(self, command: str, timeout: float):
        super().__init__(f"{command} timed out after {timeout} seconds")
        self.command = command
        self.timeout = timeout


class ProcessLaunchError(Exception):
    """Raised when an external process cannot be started."""


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessRunner:
    """Interface for running external commands."""

    def run(
        self,
        command: str,
        args: Sequence[str],
        timeout: float,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult:
        """
        Run ``command`` with ``args`` and wait for it to finish.

        Args:
            command: Executable name or path
            args: Arguments passed to the executable
            timeout: Seconds before the process is killed and ProcessTimeout raised
            env: Extra environment variables for the child process

        Returns:
            ProcessResult with captured stdout, stderr and exit code

        Raises:
            ProcessTimeout: If the process exceeds the timeout
            ProcessLaunchError: If the process cannot be started
        """
        raise NotImplementedError


class SubprocessRunner(ProcessRunner):
    """ProcessRunner backed by subprocess.run."""

    def run(self, command, args, timeout, env=None):
        child_env = os.environ.copy()
        if env:
            child_env.update(env)

        logger.debug(f"Running {command} (timeout={timeout}s)")

        try:
            result = subprocess.run(
                [command, *args],
                env=child_env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"{command} timed out after {timeout} seconds")
            raise ProcessTimeout(command, timeout)
        except OSError as e:
            logger.error(f"Failed to start {command}: {e}")
            raise ProcessLaunchError(f"Failed to start {command}: {e}") from e

        return ProcessResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.returncode)
