from __future__ import annotations

import base64
import datetime as _dt
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import ErrorKind, ValidationError

LATEST_TAG = "latest"


@dataclass(frozen=True)
class CacheConfig:
    """A build cache backend selector such as ``type=gha,mode=max``."""

    type: str
    options: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_string(cls, value: str) -> "CacheConfig":
        value = (value or "").strip()
        if not value:
            raise ValidationError("cache selector must not be empty")
        cache_type = ""
        options: List[Tuple[str, str]] = []
        for chunk in value.split(","):
            chunk = chunk.strip()
            if not chunk:
                continue
            key, sep, item = chunk.partition("=")
            if not sep:
                raise ValidationError(f"cache selector entry {chunk!r} is not key=value")
            if key == "type":
                cache_type = item
            else:
                options.append((key, item))
        if not cache_type:
            raise ValidationError(f"cache selector {value!r} has no type")
        return cls(type=cache_type, options=tuple(options))

    def to_arg(self) -> str:
        parts = [f"type={self.type}"]
        parts.extend(f"{key}={value}" for key, value in self.options)
        return ",".join(parts)


@dataclass(frozen=True)
class BuildRequest:
    """Everything the build driver needs for one invocation."""

    source_context: Path
    dockerfile_path: Path
    version_label: str
    registry_url: str
    repository_name: str
    cache_from: CacheConfig
    cache_to: CacheConfig
    build_target: Optional[str] = None
    build_args: Tuple[Tuple[str, str], ...] = ()

    @property
    def repository_ref(self) -> str:
        return f"{self.registry_url}/{self.repository_name}"

    def image_ref(self, tag: str) -> str:
        return f"{self.repository_ref}:{tag}"


@dataclass(frozen=True)
class TagSet:
    """Tags derived from one version label; ``latest`` is always implied."""

    canonical_tag: str
    major_tag: Optional[str] = None

    def ordered(self) -> Tuple[str, ...]:
        tags: List[str] = []
        for tag in (LATEST_TAG, self.canonical_tag, self.major_tag):
            if tag is not None and tag not in tags:
                tags.append(tag)
        return tuple(tags)

    def __len__(self) -> int:
        return len(self.ordered())

    def as_set(self) -> frozenset:
        return frozenset(self.ordered())


@dataclass(frozen=True)
class CredentialLease:
    """A short-lived registry credential scoped to one pipeline run."""

    access_token: str
    expiry: _dt.datetime
    scope: str
    username: str = "AWS"

    def expired(self, now: Optional[_dt.datetime] = None) -> bool:
        now = now or _dt.datetime.now(_dt.timezone.utc)
        return now >= self.expiry

    def docker_auth(self, registry: Optional[str] = None) -> Dict[str, Any]:
        """Render a docker ``config.json`` payload for ``registry`` (defaults to the lease scope)."""

        encoded = base64.b64encode(f"{self.username}:{self.access_token}".encode("utf-8")).decode("ascii")
        return {"auths": {registry or self.scope: {"auth": encoded}}}

    def __repr__(self) -> str:
        return f"CredentialLease(scope={self.scope!r}, expiry={self.expiry.isoformat()}, access_token='***')"


@dataclass(frozen=True)
class BuildArtifact:
    """The single image produced by the build driver."""

    digest: str
    image_ref: str


@dataclass(frozen=True)
class TagOutcome:
    pushed: bool
    error: Optional[ErrorKind] = None
    reason: Optional[str] = None
    digest: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pushed": self.pushed,
            "error": self.error.value if self.error else None,
            "reason": self.reason,
            "digest": self.digest,
        }


class PublishOutcome:
    """Per-tag push results, filled in as the publisher works through the tag set."""

    def __init__(self) -> None:
        self._results: Dict[str, TagOutcome] = {}

    def record(self, tag: str, outcome: TagOutcome) -> None:
        if tag in self._results:
            raise ValueError(f"Outcome for tag {tag!r} already recorded")
        self._results[tag] = outcome

    def succeeded(self, tag: str) -> bool:
        result = self._results.get(tag)
        return bool(result and result.pushed)

    def pushed_tags(self) -> List[str]:
        return [tag for tag, result in self._results.items() if result.pushed]

    def failed_tags(self) -> List[str]:
        return [tag for tag, result in self._results.items() if not result.pushed]

    def __getitem__(self, tag: str) -> TagOutcome:
        return self._results[tag]

    def __contains__(self, tag: object) -> bool:
        return tag in self._results

    def __len__(self) -> int:
        return len(self._results)

    def __iter__(self) -> Iterator[str]:
        return iter(self._results)

    def to_dict(self) -> Dict[str, Any]:
        return {tag: result.to_dict() for tag, result in self._results.items()}


@dataclass(frozen=True)
class PipelineResult:
    """Terminal result handed back to the caller."""

    digest: str
    image: str
    major_tag: Optional[str] = None
    pushed_tags: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    def to_outputs(self) -> Dict[str, str]:
        outputs = {"digest": self.digest, "image": self.image}
        if self.major_tag:
            outputs["major-tag"] = self.major_tag
        return outputs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "digest": self.digest,
            "image": self.image,
            "major_tag": self.major_tag,
            "pushed_tags": list(self.pushed_tags),
            "warnings": list(self.warnings),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


@dataclass
class StageResult:
    """Summary emitted by a pipeline stage."""

    name: str
    status: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.name, "status": self.status, "details": self.details}
