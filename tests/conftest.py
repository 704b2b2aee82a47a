from __future__ import annotations

import datetime as _dt
import json
from pathlib import Path
from subprocess import CompletedProcess
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from container_publish.models import CacheConfig, BuildRequest, CredentialLease
from container_publish.utils import CommandError

DIGEST = "sha256:" + "a" * 64
OTHER_DIGEST = "sha256:" + "b" * 64


class FakeDocker:
    """Records docker invocations and imitates buildx/push output."""

    def __init__(self, digest: str = DIGEST) -> None:
        self.digest = digest
        self.push_digest: Optional[str] = None
        self.push_digests: Dict[str, str] = {}
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self.registry: Dict[str, str] = {}
        self.failures: Dict[str, str] = {}
        self.build_failure: Optional[str] = None
        self.write_metadata = True

    def fail_push(self, target: str, stderr: str) -> None:
        self.failures[target] = stderr

    def __call__(self, command: Sequence[str], *, env=None, cwd=None, timeout=None, check=True) -> CompletedProcess:
        command = list(command)
        self.calls.append(command)
        self.envs.append(dict(env or {}))
        if command[:3] == ["docker", "buildx", "build"]:
            if self.build_failure is not None:
                raise CommandError(command, 1, "", self.build_failure)
            metadata_file = Path(command[command.index("--metadata-file") + 1])
            if self.write_metadata:
                metadata_file.write_text(json.dumps({"containerimage.digest": self.digest}))
            return CompletedProcess(command, 0, "", "")
        if command[:2] == ["docker", "push"]:
            target = command[2]
            if target in self.failures:
                raise CommandError(command, 1, "", self.failures[target])
            digest = self.push_digests.get(target) or self.push_digest or self.digest
            self.registry[target] = digest
            tag = target.rsplit(":", 1)[1]
            return CompletedProcess(command, 0, f"{tag}: digest: {digest} size: 1234\n", "")
        return CompletedProcess(command, 0, "", "")

    def commands(self, prefix: Sequence[str]) -> List[List[str]]:
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]


@pytest.fixture
def fake_docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def lease() -> CredentialLease:
    return CredentialLease(
        access_token="secret-token",
        expiry=_dt.datetime.now(_dt.timezone.utc) + _dt.timedelta(hours=1),
        scope="123456789012.dkr.ecr.eu-west-1.amazonaws.com",
    )


@pytest.fixture
def build_context(tmp_path: Path) -> Path:
    context = tmp_path / "src"
    context.mkdir()
    (context / "Dockerfile").write_text("FROM scratch\n")
    return context


@pytest.fixture
def make_request(build_context: Path) -> Callable[..., BuildRequest]:
    def factory(**changes) -> BuildRequest:
        values = dict(
            source_context=build_context,
            dockerfile_path=Path("Dockerfile"),
            version_label="v1.2.3",
            registry_url="registry.example.com",
            repository_name="team/app",
            cache_from=CacheConfig.from_string("type=gha"),
            cache_to=CacheConfig.from_string("type=gha,mode=max"),
        )
        values.update(changes)
        return BuildRequest(**values)

    return factory
