from __future__ import annotations

import logging
from typing import Iterable, List

from .errors import PartialPublishError
from .models import BuildArtifact, PipelineResult, PublishOutcome, TagSet

LOGGER = logging.getLogger(__name__)


def report(
    artifact: BuildArtifact,
    tags: TagSet,
    outcome: PublishOutcome,
    registry_url: str,
    repository_name: str,
    *,
    warnings: Iterable[str] = (),
) -> PipelineResult:
    """Turn per-tag outcomes into the caller-visible result.

    Only the canonical tag is mandatory. Failed ``latest`` or major-tag pushes
    become warnings and are left out of ``pushed_tags``. The reported digest is
    the one the registry returned for the canonical tag.
    """

    canonical = tags.canonical_tag
    if not outcome.succeeded(canonical):
        reason = outcome[canonical].reason if canonical in outcome else "no push was attempted"
        raise PartialPublishError(canonical, outcome, reason)

    collected: List[str] = list(warnings)
    for tag in outcome.failed_tags():
        result = outcome[tag]
        kind = result.error.value if result.error else "unknown"
        message = f"Convenience tag {tag!r} was not pushed ({kind}): {result.reason}"
        LOGGER.warning("%s", message)
        collected.append(message)

    major_tag = tags.major_tag if tags.major_tag and outcome.succeeded(tags.major_tag) else None
    return PipelineResult(
        digest=outcome[canonical].digest or artifact.digest,
        image=f"{registry_url}/{repository_name}:{canonical}",
        major_tag=major_tag,
        pushed_tags=tuple(outcome.pushed_tags()),
        warnings=tuple(collected),
    )
