"""
myrepo - Local RPM mirror of a golden-copy host

Keeps a local repository tree holding only the packages installed on
the reference host:
- Upstream metadata cache with freshness window
- NEW/UPDATE/EXISTS/UNKNOWN classification
- Parallel batched downloads and cleanup of uninstalled packages
- Selective createrepo and rsync to a shared path
"""

__version__ = "3.0.0"
__author__ = "myrepo contributors"
