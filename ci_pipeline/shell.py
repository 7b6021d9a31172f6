"""Thin wrapper around subprocess for the external tools the pipeline drives.

Usage:
    result = run(["docker", "ps", "-a"])               # never raises on exit code
    run(["npm", "ci"], check=True, capture=False)     # raises CommandError, streams output
    run_shell("npm run lint && npm run type-check")   # user-supplied command line
"""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Sequence

logger = logging.getLogger(__name__)

# Exit codes used by POSIX shells, reused so callers can treat both cases alike
EXIT_NOT_FOUND = 127
EXIT_CANNOT_EXECUTE = 126
EXIT_TIMEOUT = 124


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return shlex.join(self.args)

    def lines(self) -> list[str]:
        """Non-blank, stripped stdout lines."""
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]


class CommandError(Exception):
    """Raised by ``run(..., check=True)`` when a command exits non-zero."""

    def __init__(self, result: CommandResult) -> None:
        self.result = result
        super().__init__(
            f"Command failed with exit code {result.returncode}: {result.command}"
        )


def run(
    args: Sequence[str],
    *,
    check: bool = False,
    capture: bool = True,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run *args* and return a CommandResult.

    ``env`` is merged on top of the current process environment. With
    ``capture=False`` the child inherits stdout/stderr, so its output goes
    straight to the build log and the result carries empty strings.
    A *cwd* that is not a directory yields exit code 126 and nothing runs.
    """
    args = [str(a) for a in args]
    logger.debug("$ %s", shlex.join(args))

    if cwd is not None and not os.path.isdir(cwd):
        result = CommandResult(args, EXIT_CANNOT_EXECUTE, "", f"{cwd}: no such directory")
    else:
        result = _execute(args, capture, {**os.environ, **env} if env else None, cwd, timeout)

    if not result.ok:
        logger.debug("exit %d: %s", result.returncode, result.command)
    if check and not result.ok:
        raise CommandError(result)
    return result


def run_shell(command: str, **kwargs) -> CommandResult:
    """Run a command line through ``sh -c`` (pipes, ``&&`` and globs allowed)."""
    return run(["sh", "-c", command], **kwargs)


def _execute(args: list[str], capture: bool, env, cwd, timeout) -> CommandResult:
    try:
        completed = subprocess.run(
            args,
            capture_output=capture,
            text=True,
            env=env,
            cwd=cwd,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError:
        return CommandResult(args, EXIT_NOT_FOUND, "", f"{args[0]}: command not found")
    except subprocess.TimeoutExpired:
        return CommandResult(args, EXIT_TIMEOUT, "", f"timed out after {timeout}s")
    return CommandResult(args, completed.returncode, completed.stdout or "", completed.stderr or "")
