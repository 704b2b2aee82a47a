from __future__ import annotations

import logging
import shutil
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Iterable, List, Optional

from .builder import BuildDriver
from .config import PublishConfig
from .credentials import CredentialBroker
from .errors import PartialPublishError, PublishError
from .models import (
    BuildArtifact,
    BuildRequest,
    CredentialLease,
    PipelineResult,
    PublishOutcome,
    StageResult,
    TagSet,
)
from .publisher import TagPublisher
from .reporter import report
from .utils import dump_json, ensure_directory
from .versioning import classify

LOGGER = logging.getLogger(__name__)


class Stage(Enum):
    VALIDATE = auto()
    CLASSIFY = auto()
    AUTHENTICATE = auto()
    BUILD = auto()
    PUBLISH = auto()
    REPORT = auto()

    @classmethod
    def ordered(cls) -> Iterable["Stage"]:
        return (
            cls.VALIDATE,
            cls.CLASSIFY,
            cls.AUTHENTICATE,
            cls.BUILD,
            cls.PUBLISH,
            cls.REPORT,
        )


@dataclass
class PipelineContext:
    config: PublishConfig
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def workspace(self) -> Path:
        return Path(self.config.workspace)

    @property
    def run_dir(self) -> Path:
        return ensure_directory(self.workspace / "runs" / self.run_id)

    def stage_output(self, stage: Stage) -> Path:
        return self.run_dir / f"{stage.name.lower()}.json"


def prune_runs(runs_dir: Path, keep: int, *, current: str) -> List[Path]:
    """Delete all but the ``keep`` newest run directories; ``current`` always survives."""

    if not runs_dir.is_dir():
        return []
    others = [path for path in runs_dir.iterdir() if path.is_dir() and path.name != current]
    others.sort(key=lambda path: (path.stat().st_mtime, path.name), reverse=True)
    removed = others[max(keep - 1, 0):]
    for path in removed:
        shutil.rmtree(path, ignore_errors=True)
    if removed:
        LOGGER.info("Pruned %d old run record(s) under %s", len(removed), runs_dir)
    return removed


@dataclass
class _RunState:
    request: Optional[BuildRequest] = None
    tags: Optional[TagSet] = None
    lease: Optional[CredentialLease] = None
    artifact: Optional[BuildArtifact] = None
    outcome: Optional[PublishOutcome] = None
    result: Optional[PipelineResult] = None
    warnings: List[str] = field(default_factory=list)


class PublishPipeline:
    """Single-shot build-and-publish run: validate, classify, authenticate, build, publish, report.

    Each stage only consumes what earlier stages produced. Stage records are
    written under the run directory for diagnostics and never read back; only the
    newest ``keep_runs`` run directories are kept.
    """

    def __init__(
        self,
        context: PipelineContext,
        *,
        broker: Optional[CredentialBroker] = None,
        builder: Optional[BuildDriver] = None,
        publisher: Optional[TagPublisher] = None,
    ) -> None:
        self.context = context
        config = context.config
        self.broker = broker or CredentialBroker(
            web_identity_token_file=config.web_identity_token_file,
            session_name=config.session_name,
            duration_s=config.session_duration_s,
        )
        self.builder = builder or BuildDriver(context.run_dir, context.run_id)
        self.publisher = publisher or TagPublisher(context.run_dir, concurrency=config.push_concurrency)

    def run(self) -> PipelineResult:
        state = _RunState()
        try:
            for stage in Stage.ordered():
                self._run_stage(stage, state)
        finally:
            # Registry credentials must not outlive the run.
            shutil.rmtree(self.context.run_dir / "docker", ignore_errors=True)
            if state.artifact is not None:
                self.builder.cleanup(state.artifact)
            prune_runs(self.context.workspace / "runs", self.context.config.keep_runs, current=self.context.run_id)
        assert state.result is not None
        return state.result

    def _run_stage(self, stage: Stage, state: _RunState) -> None:
        handler = getattr(self, f"_stage_{stage.name.lower()}")
        LOGGER.info("Stage %s started", stage.name.lower())
        try:
            result = handler(state)
        except PartialPublishError as exc:
            self._record(StageResult(stage.name.lower(), "failed", {"message": str(exc), "outcome": exc.outcome.to_dict()}))
            raise
        except PublishError as exc:
            self._record(StageResult(stage.name.lower(), "failed", {"message": str(exc), "error": type(exc).__name__}))
            raise
        self._record(result)
        LOGGER.info("Stage %s %s", result.name, result.status)

    def _record(self, result: StageResult) -> None:
        dump_json(self.context.stage_output(Stage[result.name.upper()]), result.to_dict())

    def _stage_validate(self, state: _RunState) -> StageResult:
        state.request = self.context.config.to_build_request()
        return StageResult(
            "validate",
            "completed",
            {
                "repository": state.request.repository_ref,
                "version_label": state.request.version_label,
                "build_args": [key for key, _ in state.request.build_args],
            },
        )

    def _stage_classify(self, state: _RunState) -> StageResult:
        assert state.request is not None
        state.tags = classify(state.request.version_label)
        if state.tags.major_tag is None:
            message = f"Version label {state.request.version_label!r} is not a release version; no major tag derived"
            LOGGER.warning("%s", message)
            state.warnings.append(message)
        return StageResult("classify", "completed", {"tags": list(state.tags.ordered())})

    def _stage_authenticate(self, state: _RunState) -> StageResult:
        config = self.context.config
        state.lease = self.broker.acquire(config.role_identifier, config.region)
        return StageResult(
            "authenticate",
            "completed",
            {"scope": state.lease.scope, "expiry": state.lease.expiry.isoformat()},
        )

    def _stage_build(self, state: _RunState) -> StageResult:
        assert state.request is not None and state.lease is not None
        state.artifact = self.builder.build(state.request, state.lease)
        return StageResult(
            "build",
            "completed",
            {"digest": state.artifact.digest, "image_ref": state.artifact.image_ref},
        )

    def _stage_publish(self, state: _RunState) -> StageResult:
        assert state.request is not None and state.tags is not None
        assert state.artifact is not None and state.lease is not None
        state.outcome = self.publisher.publish(
            state.artifact,
            state.tags,
            state.request.registry_url,
            state.request.repository_name,
            state.lease,
        )
        status = "completed" if not state.outcome.failed_tags() else "partial"
        return StageResult("publish", status, {"outcome": state.outcome.to_dict()})

    def _stage_report(self, state: _RunState) -> StageResult:
        assert state.request is not None and state.tags is not None
        assert state.artifact is not None and state.outcome is not None
        state.result = report(
            state.artifact,
            state.tags,
            state.outcome,
            state.request.registry_url,
            state.request.repository_name,
            warnings=state.warnings,
        )
        return StageResult("report", "completed", state.result.to_dict())
