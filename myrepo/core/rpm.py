"""
RPM utilities for myrepo.

Provides package signatures, NEVRA/filename parsing and version comparison.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Tuple


# Values the package manager prints when a package has no epoch
EPOCH_PLACEHOLDERS = ('', '(none)', 'None', '<none>')

_NEVRA_RE = re.compile(
    r'^(?P<name>.+)-(?:(?P<epoch>\d+):)?(?P<version>[^-:]+)-(?P<release>[^-]+)\.(?P<arch>[^.]+)$'
)


def normalize_epoch(epoch: Any) -> str:
    """Normalize an epoch value to a string, placeholders become "0"."""
    if epoch is None:
        return '0'
    epoch = str(epoch).strip()
    if epoch in EPOCH_PLACEHOLDERS:
        return '0'
    return epoch


@dataclass(frozen=True, order=True)
class Signature:
    """A package build: name, epoch, version, release, arch.

    Fields compare as plain strings; the epoch is normalized on creation.
    """
    name: str
    epoch: str
    version: str
    release: str
    arch: str

    def __post_init__(self):
        object.__setattr__(self, 'epoch', normalize_epoch(self.epoch))

    @property
    def evr(self) -> str:
        """Epoch:version-release string."""
        return f"{self.epoch}:{self.version}-{self.release}"

    @property
    def nevra(self) -> str:
        """Full NEVRA with explicit epoch (name-E:V-R.A)."""
        return f"{self.name}-{self.epoch}:{self.version}-{self.release}.{self.arch}"

    @property
    def nvra(self) -> str:
        """NEVRA without epoch, as used in RPM filenames."""
        return f"{self.name}-{self.version}-{self.release}.{self.arch}"

    @property
    def filename(self) -> str:
        """RPM filename (without epoch)."""
        return f"{self.nvra}.rpm"

    def __str__(self):
        return self.nevra


def parse_nevra(nevra: str) -> Optional[Signature]:
    """Parse a NEVRA string into a Signature.

    Accepts "name-E:V-R.A" and "name-V-R.A" (epoch 0).

    Args:
        nevra: String like "bash-0:5.1.8-9.el9.x86_64"

    Returns:
        Signature, or None if the string is not a NEVRA
    """
    nevra = nevra.strip()
    if nevra.endswith('.rpm'):
        nevra = nevra[:-4]
    match = _NEVRA_RE.match(nevra)
    if not match:
        return None
    return Signature(
        name=match.group('name'),
        epoch=match.group('epoch'),
        version=match.group('version'),
        release=match.group('release'),
        arch=match.group('arch'),
    )


def parse_rpm_filename(filename: str) -> Optional[Signature]:
    """Parse "name-version-release.arch.rpm" into a Signature with epoch 0.

    RPM filenames carry no epoch; scan_local_mirror() substitutes a known
    signature with the same NVRA when there is one.
    """
    if not filename.endswith('.rpm') or filename.endswith('.src.rpm'):
        return None
    sig = parse_nevra(filename)
    if sig is None or ':' in filename:
        return None
    return sig


def check_rpm_available() -> bool:
    """Check if rpm module is available."""
    try:
        import rpm  # noqa: F401
        return True
    except ImportError:
        return False


def read_rpm_signature(rpm_path: Path) -> Optional[Signature]:
    """Read the signature of a local RPM file from its header.

    Args:
        rpm_path: Path to the RPM file

    Returns:
        Signature, or None if the header could not be read
    """
    import rpm

    path = Path(rpm_path)
    if not path.exists():
        return None

    try:
        ts = rpm.TransactionSet()
        ts.setVSFlags(rpm._RPMVSF_NOSIGNATURES | rpm._RPMVSF_NODIGESTS)

        fd = os.open(str(path), os.O_RDONLY)
        try:
            hdr = ts.hdrFromFdno(fd)
        finally:
            os.close(fd)

        return Signature(
            name=hdr[rpm.RPMTAG_NAME],
            epoch=hdr[rpm.RPMTAG_EPOCH],
            version=hdr[rpm.RPMTAG_VERSION],
            release=hdr[rpm.RPMTAG_RELEASE],
            arch=hdr[rpm.RPMTAG_ARCH],
        )
    except Exception:
        return None


def split_version(v: str) -> List[Tuple[int, Any]]:
    """Split version into comparable parts (numeric vs alpha).

    Returns tuples (type, value) where type=0 for int, 1 for str.
    This ensures consistent ordering: numbers < strings.

    Args:
        v: Version string (e.g., "1.2.3", "1.0rc1")

    Returns:
        List of (type, value) tuples for comparison
    """
    parts = re.findall(r'(\d+|[a-zA-Z]+)', v or '0')
    return [(0, int(p)) if p.isdigit() else (1, p) for p in parts]


def evr_key(sig: Signature) -> Tuple:
    """Return a sortable key for epoch-version-release ordering.

    Example:
        sigs.sort(key=evr_key, reverse=True)  # newest first
    """
    try:
        epoch = int(sig.epoch)
    except ValueError:
        epoch = 0
    return (epoch, split_version(sig.version), split_version(sig.release))


def sort_key(sig: Signature) -> Tuple:
    """Deterministic ordering: name, then version, release, arch."""
    return (sig.name, evr_key(sig), sig.arch)


def _numeric_segments(value: str) -> List[int]:
    segments = []
    for part in value.split('.'):
        digits = re.match(r'\d+', part)
        segments.append(int(digits.group(0)) if digits else 0)
    return segments


def _compare_segments(left: List[int], right: List[int]) -> int:
    width = max(len(left), len(right))
    left = left + [0] * (width - len(left))
    right = right + [0] * (width - len(right))
    return (left > right) - (left < right)


def version_is_newer(left: str, right: str) -> bool:
    """Check whether EVR string `left` is strictly newer than `right`.

    Strings look like "[E:]V-R". Segments are split on dots and compared
    by their leading digits only, so "1.0" equals "1", "1.10" is newer
    than "1.9", and distro tags such as "el9" do not take part.
    """
    def split_evr(evr: str) -> Tuple[int, str, str]:
        epoch = 0
        if ':' in evr:
            epoch_str, evr = evr.split(':', 1)
            epoch = int(epoch_str) if epoch_str.isdigit() else 0
        if '-' in evr:
            version, release = evr.rsplit('-', 1)
        else:
            version, release = evr, '0'
        return epoch, version, release

    l_epoch, l_version, l_release = split_evr(left)
    r_epoch, r_version, r_release = split_evr(right)

    if l_epoch != r_epoch:
        return l_epoch > r_epoch

    cmp = _compare_segments(_numeric_segments(l_version), _numeric_segments(r_version))
    if cmp:
        return cmp > 0
    return _compare_segments(_numeric_segments(l_release), _numeric_segments(r_release)) > 0
