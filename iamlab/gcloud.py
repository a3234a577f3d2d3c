"""
Thin wrapper around the gcloud command-line client.
"""

import json
import logging
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from .classify import classify_output, describe_output

logger = logging.getLogger(__name__)


class PrerequisiteError(Exception):
    """Raised when the environment cannot run the lab (tool, auth, project)."""


class GCloudError(Exception):
    """Raised when a gcloud command exits non-zero."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr or ""
        self.reason = classify_output(self.stderr)

        last_line = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else ""
        message = f"Command failed with exit code {returncode}: {shlex.join(self.command)}"
        if last_line:
            message += f" ({last_line})"
        super().__init__(message)

    @property
    def hint(self) -> str:
        return describe_output(self.stderr)["hint"]


@dataclass
class CommandResult:
    """Outcome of one gcloud invocation."""
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GCloud:
    """
    Runs gcloud commands synchronously.

    Every call blocks until the client exits. Output is captured, never
    streamed, so callers decide what reaches the console.
    """

    def __init__(self, executable: str = "gcloud"):
        self.executable = executable

    def is_installed(self) -> bool:
        """Check whether the gcloud executable is on PATH."""
        return shutil.which(self.executable) is not None

    def _execute(self, argv: List[str]) -> CommandResult:
        try:
            process = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise PrerequisiteError(
                f"{self.executable} CLI is not installed. Please install it first."
            ) from e

        return CommandResult(argv, process.returncode, process.stdout, process.stderr)

    def run(self, args: Sequence[str], check: bool = True) -> CommandResult:
        """
        Run a gcloud command.

        Args:
            args: Arguments following the executable name
            check: Raise GCloudError on a non-zero exit code

        Returns:
            CommandResult with captured output

        Raises:
            GCloudError: If the command fails and check is True
            PrerequisiteError: If the executable cannot be found
        """
        argv = [self.executable] + list(args)
        logger.debug("Running %s", shlex.join(argv))

        result = self._execute(argv)

        logger.debug("Exit code %d from %s", result.returncode, shlex.join(argv))
        if not result.ok and result.stderr:
            logger.debug("stderr: %s", result.stderr.strip())

        if check and not result.ok:
            raise GCloudError(argv, result.returncode, result.stderr)

        return result

    def succeeds(self, args: Sequence[str]) -> bool:
        """Existence predicate: True when the command exits zero."""
        return self.run(args, check=False).ok

    def value(self, args: Sequence[str]) -> str:
        """
        Read a single value, e.g. from `config get-value`.

        Returns an empty string when the command fails or the value is unset.
        """
        result = self.run(args, check=False)
        if not result.ok:
            return ""

        value = result.stdout.strip()
        if value == "(unset)":
            return ""
        return value

    def json(self, args: Sequence[str]) -> Any:
        """Run a command with --format=json and parse its output."""
        result = self.run(list(args) + ["--format=json"])
        if not result.stdout.strip():
            return None

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise GCloudError(result.args, 1, f"Unparseable JSON output: {e}") from e


def make_gcloud(executable: Optional[str] = None) -> GCloud:
    return GCloud(executable or "gcloud")
