"""Derive registry tags from a version label.

Pure functions only; nothing here touches the network or the filesystem.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from .models import TagSet

LOGGER = logging.getLogger(__name__)

_SEMVER_RE = re.compile(
    r"(?P<prefix>v?)(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)(?:-(?P<prerelease>\S+))?",
    re.ASCII,
)


@dataclass(frozen=True)
class ParsedVersion:
    prefix: str
    major: int
    minor: int
    patch: int
    prerelease: Optional[str] = None

    @property
    def major_tag(self) -> str:
        return f"{self.prefix}{self.major}"


def parse_version(label: str) -> Optional[ParsedVersion]:
    """Parse ``[v]MAJOR.MINOR.PATCH[-pre]``; return ``None`` for anything else.

    Numeric components are compared by integer value, so ``01`` and ``1`` are equal.
    """

    match = _SEMVER_RE.fullmatch(label)
    if match is None:
        return None
    return ParsedVersion(
        prefix=match.group("prefix"),
        major=int(match.group("major")),
        minor=int(match.group("minor")),
        patch=int(match.group("patch")),
        prerelease=match.group("prerelease"),
    )


def classify(version_label: str) -> TagSet:
    """Return the tag set for ``version_label``.

    The label is used verbatim as the canonical tag. A major tag is derived only
    when the label is a dotted release version; major version ``0`` is not special.
    """

    parsed = parse_version(version_label)
    if parsed is None:
        LOGGER.info("Version label %r is not a release version; no major tag derived", version_label)
        return TagSet(canonical_tag=version_label)
    return TagSet(canonical_tag=version_label, major_tag=parsed.major_tag)
