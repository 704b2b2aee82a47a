from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from container_publish.models import BuildArtifact
from container_publish.publisher import TagPublisher
from container_publish.utils import CommandError, run_command, write_outputs
from container_publish.versioning import classify

from conftest import DIGEST


def _refuse(*args, **kwargs):
    raise PermissionError(13, "Permission denied", "docker")


def test_unlaunchable_command_becomes_command_error(monkeypatch) -> None:
    monkeypatch.setattr(subprocess, "run", _refuse)
    with pytest.raises(CommandError) as excinfo:
        run_command(["docker", "version"])
    assert excinfo.value.returncode == 126
    assert "Permission denied" in excinfo.value.tail()


def test_missing_executable_is_exit_127(monkeypatch) -> None:
    def missing(*args, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", "docker")

    monkeypatch.setattr(subprocess, "run", missing)
    with pytest.raises(CommandError) as excinfo:
        run_command(["docker", "version"])
    assert excinfo.value.returncode == 127


def test_unlaunchable_docker_is_recorded_per_tag(monkeypatch, lease, tmp_path: Path) -> None:
    monkeypatch.setattr(subprocess, "run", _refuse)
    artifact = BuildArtifact(digest=DIGEST, image_ref="registry.example.com/team/app:build-1")
    outcome = TagPublisher(tmp_path).publish(artifact, classify("v1.2.3"), "registry.example.com", "team/app", lease)
    assert outcome.failed_tags() == ["latest", "v1.2.3", "v1"]
    assert all("Permission denied" in outcome[tag].reason for tag in outcome)


def test_write_outputs_appends(tmp_path: Path) -> None:
    path = tmp_path / "out"
    path.write_text("existing=1\n")
    write_outputs(path, {"digest": DIGEST})
    assert path.read_text().splitlines() == ["existing=1", f"digest={DIGEST}"]
