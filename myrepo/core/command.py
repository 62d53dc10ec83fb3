"""
External command runner.

Every external tool (dnf, createrepo_c, rsync, sudo) goes through
run_command() so timeouts and privilege elevation are handled once.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of an external command."""
    command: List[str]
    returncode: int
    stdout: str = ''
    stderr: str = ''
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stdout and stderr, for error classification."""
        return f"{self.stdout}\n{self.stderr}".strip()


def needs_elevation(user_mode: bool = False, elevate: bool = True) -> bool:
    """Whether filesystem-mutating commands should be prefixed with sudo."""
    if user_mode or not elevate:
        return False
    return os.geteuid() != 0


def elevate(cmd: List[str], enabled: bool) -> List[str]:
    """Prefix a command with non-interactive sudo when enabled."""
    if enabled:
        return ['sudo', '-n'] + cmd
    return cmd


def run_command(cmd: List[str], timeout: Optional[float] = None,
                env: Optional[dict] = None) -> CommandResult:
    """Run a command and capture its output.

    Never raises for a failing or hanging command: a timeout is reported
    with timed_out=True and returncode -1, a missing binary with 127.

    Args:
        cmd: Command and arguments
        timeout: Seconds before the command is killed
        env: Extra environment variables

    Returns:
        CommandResult
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    run_env = None
    if env:
        run_env = dict(os.environ)
        run_env.update(env)

    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout, env=run_env
        )
    except subprocess.TimeoutExpired as e:
        logger.debug(f"Timed out after {timeout}s: {cmd[0]}")
        stdout = e.stdout.decode(errors='replace') if isinstance(e.stdout, bytes) else (e.stdout or '')
        stderr = e.stderr.decode(errors='replace') if isinstance(e.stderr, bytes) else (e.stderr or '')
        return CommandResult(cmd, -1, stdout, stderr, timed_out=True)
    except FileNotFoundError as e:
        return CommandResult(cmd, 127, '', str(e))

    return CommandResult(cmd, result.returncode, result.stdout, result.stderr)
