import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from patchseries.errors import CommandError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str


def run_command(
    cmd_name: str,
    cmd: list[str],
    timeout: int,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    check: bool = True,
) -> CommandResult:
    """
    Run `cmd` and capture its output.

    A timeout is reported as exit code 124 with a note appended to stderr.
    With check=True any non-zero exit raises CommandError.
    """

    logger.debug("Running %s: %s (cwd=%s)", cmd_name, " ".join(cmd), cwd)
    try:
        run_result = subprocess.run(
            args = cmd,
            cwd = cwd,
            env = env,
            capture_output = True,
            text = True,
            encoding = "utf-8",
            errors = "surrogateescape",
            timeout = timeout,
        )
        result = CommandResult(run_result.returncode, run_result.stdout, run_result.stderr)

    except FileNotFoundError as e:
        logger.error("%s: executable not found: %s", cmd_name, cmd[0])
        raise CommandError(cmd, None, str(e)) from e

    except subprocess.TimeoutExpired as e:
        stdout = e.stdout if isinstance(e.stdout, str) else ""
        stderr = e.stderr if isinstance(e.stderr, str) else ""
        result = CommandResult(
            TIMEOUT_EXIT_CODE,
            stdout,
            stderr + f"\nExecution timed out after {timeout} seconds",
        )

    if check and result.exit_code != 0:
        logger.error("%s exited with %d", cmd_name, result.exit_code)
        raise CommandError(cmd, result.exit_code, result.stderr)

    return result
