"""Core modules for myrepo"""

from .errors import MyrepoError, ConfigError, PackageManagerError, RepositoryError
from .rpm import Signature, normalize_epoch

__all__ = ['MyrepoError', 'ConfigError', 'PackageManagerError', 'RepositoryError',
           'Signature', 'normalize_epoch']
