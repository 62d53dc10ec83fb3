"""Exception types for myrepo.

Only terminal conditions raise. Per-package and per-repository problems
are collected into the run report instead.
"""

from typing import List, Optional


class MyrepoError(Exception):
    """Base class for fatal myrepo errors."""


class ConfigError(MyrepoError):
    """Configuration file or value is unreadable or invalid."""


class RepositoryError(MyrepoError):
    """Local repository tree is missing or inaccessible."""


class PackageManagerError(MyrepoError):
    """A package manager query failed in a way the run cannot recover from."""

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self):
        msg = super().__str__()
        lines = self.stderr.strip().splitlines()
        if lines:
            msg = f"{msg}: {lines[-1]}"
        return msg
