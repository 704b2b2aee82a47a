from __future__ import annotations

import datetime as _dt
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .credentials import write_docker_config
from .errors import ErrorKind, PushError
from .models import BuildArtifact, CredentialLease, PublishOutcome, TagOutcome, TagSet
from .utils import CommandError, ensure_directory, run_command

LOGGER = logging.getLogger(__name__)

CommandRunner = Callable[..., object]
Clock = Callable[[], _dt.datetime]

_PUSH_DIGEST_RE = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")
_AUTH_MARKERS = ("unauthorized", "authentication required", "denied", "no basic auth credentials")


def parse_push_digest(output: str) -> Optional[str]:
    match = _PUSH_DIGEST_RE.search(output)
    return match.group(1) if match else None


def _classify_failure(stderr: str) -> ErrorKind:
    lowered = stderr.lower()
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return ErrorKind.AUTH
    return ErrorKind.PUSH


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def _reference_digest(tags: TagSet, ordered: Sequence[str], results: Sequence[TagOutcome]) -> Optional[str]:
    """Digest the registry reported for the canonical tag, else for the first tag that reported one.

    The locally loaded image is re-serialised on push, so only a registry-reported
    digest names what the tags actually point at.
    """

    reported = {tag: result.digest for tag, result in zip(ordered, results) if result.pushed and result.digest}
    if tags.canonical_tag in reported:
        return reported[tags.canonical_tag]
    return next(iter(reported.values()), None)


class TagPublisher:
    """Push one built image under every tag of a tag set.

    Every tag is attempted; a failure on one never stops the others. Tags are
    mutable pointers, so pushing an existing tag simply moves it. All tags must
    resolve to the same registry digest; a tag whose push reports another digest
    than the canonical tag is recorded as a digest mismatch.
    """

    def __init__(
        self,
        workspace: str | Path,
        *,
        runner: CommandRunner = run_command,
        concurrency: int = 1,
        clock: Clock = _utcnow,
        timeout: Optional[float] = None,
    ) -> None:
        self.workspace = Path(workspace)
        self._runner = runner
        self.concurrency = max(1, concurrency)
        self._clock = clock
        self.timeout = timeout

    def publish(
        self,
        artifact: BuildArtifact,
        tags: TagSet,
        registry_url: str,
        repository_name: str,
        lease: CredentialLease,
    ) -> PublishOutcome:
        docker_config = write_docker_config(lease, registry_url, ensure_directory(self.workspace) / "docker")
        ordered = tags.ordered()

        def push(tag: str) -> TagOutcome:
            target = f"{registry_url}/{repository_name}:{tag}"
            return self._push_one(artifact, tag, target, lease, docker_config)

        if self.concurrency > 1 and len(ordered) > 1:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(ordered))) as pool:
                results: List[TagOutcome] = list(pool.map(push, ordered))
        else:
            results = [push(tag) for tag in ordered]

        outcome = PublishOutcome()
        reference = _reference_digest(tags, ordered, results) or artifact.digest
        for tag, result in zip(ordered, results):
            if result.pushed and result.digest and result.digest != reference:
                error = PushError(
                    tag,
                    f"registry reports {result.digest}, expected {reference}",
                    ErrorKind.DIGEST_MISMATCH,
                )
                LOGGER.warning("%s", error)
                result = TagOutcome(pushed=False, error=error.kind, reason=error.reason, digest=result.digest)
            elif result.pushed and not result.digest:
                result = TagOutcome(pushed=True, digest=reference)
            outcome.record(tag, result)
        return outcome

    def _push_one(
        self,
        artifact: BuildArtifact,
        tag: str,
        target: str,
        lease: CredentialLease,
        docker_config: Path,
    ) -> TagOutcome:
        if lease.expired(self._clock()):
            error = PushError(tag, "registry credential expired before push", ErrorKind.AUTH)
            LOGGER.warning("%s", error)
            return TagOutcome(pushed=False, error=error.kind, reason=error.reason)

        env = {"DOCKER_CONFIG": str(docker_config)}
        try:
            self._runner(["docker", "tag", artifact.image_ref, target], env=env, timeout=self.timeout)
            result = self._runner(["docker", "push", target], env=env, timeout=self.timeout)
        except CommandError as exc:
            error = PushError(tag, exc.tail(5), _classify_failure(exc.stderr))
            LOGGER.warning("%s", error)
            return TagOutcome(pushed=False, error=error.kind, reason=error.reason)

        reported = parse_push_digest(getattr(result, "stdout", "") or "")
        LOGGER.info("Pushed %s (%s)", target, reported or "digest not reported")
        return TagOutcome(pushed=True, digest=reported)
