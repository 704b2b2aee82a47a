from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .models import PublishOutcome


class ErrorKind(Enum):
    """Classes of failure that can be recorded against a single tag."""

    AUTH = "auth"
    PUSH = "push"
    DIGEST_MISMATCH = "digest_mismatch"


class PublishError(RuntimeError):
    """Base class for every failure raised by the publish pipeline."""


class ValidationError(PublishError):
    """Raised when required inputs are missing or malformed."""

    def __init__(self, problems: Sequence[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class AuthError(PublishError):
    """Raised when a registry credential cannot be obtained or has expired."""

    kind = ErrorKind.AUTH


class DockerfileNotFoundError(PublishError):
    """Raised when the Dockerfile does not resolve inside the build context."""


class BuildError(PublishError):
    """Raised for any failure reported by the external build engine."""

    def __init__(self, message: str, *, stderr: str = "") -> None:
        self.stderr = stderr
        super().__init__(message)


class PushError(PublishError):
    """Failure pushing one tag; recorded per tag rather than raised out of the publisher."""

    def __init__(self, tag: str, reason: str, kind: ErrorKind = ErrorKind.PUSH) -> None:
        self.tag = tag
        self.reason = reason
        self.kind = kind
        super().__init__(f"Push of tag {tag!r} failed ({kind.value}): {reason}")


class PartialPublishError(PublishError):
    """Raised when the canonical tag was not pushed, whatever happened to the others."""

    def __init__(self, canonical_tag: str, outcome: "PublishOutcome", reason: Optional[str] = None) -> None:
        self.canonical_tag = canonical_tag
        self.outcome = outcome
        detail = f": {reason}" if reason else ""
        super().__init__(f"Canonical tag {canonical_tag!r} was not published{detail}")
