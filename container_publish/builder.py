from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Callable, List, Mapping, Optional

from .credentials import write_docker_config
from .errors import BuildError, DockerfileNotFoundError
from .models import BuildArtifact, BuildRequest, CredentialLease
from .utils import CommandError, ensure_directory, run_command

LOGGER = logging.getLogger(__name__)

CommandRunner = Callable[..., object]

_DIGEST_KEYS = ("containerimage.digest", "containerimage.config.digest")


def resolve_dockerfile(request: BuildRequest) -> Path:
    """Return the absolute Dockerfile path, which must be a file inside the build context."""

    context = Path(request.source_context).resolve()
    dockerfile = Path(request.dockerfile_path)
    if not dockerfile.is_absolute():
        dockerfile = context / dockerfile
    dockerfile = dockerfile.resolve()
    if not dockerfile.is_file():
        raise DockerfileNotFoundError(f"Dockerfile not found: {dockerfile}")
    if context not in dockerfile.parents:
        raise DockerfileNotFoundError(f"Dockerfile {dockerfile} is outside the build context {context}")
    return dockerfile


def build_command(
    request: BuildRequest,
    dockerfile: Path,
    local_ref: str,
    metadata_file: Path,
) -> List[str]:
    command = ["docker", "buildx", "build", "--file", str(dockerfile)]
    for key, value in request.build_args:
        command.extend(["--build-arg", f"{key}={value}"])
    if request.build_target:
        command.extend(["--target", request.build_target])
    command.extend(["--cache-from", request.cache_from.to_arg()])
    command.extend(["--cache-to", request.cache_to.to_arg()])
    command.extend(["--metadata-file", str(metadata_file)])
    command.extend(["--tag", local_ref, "--load"])
    command.append(str(Path(request.source_context).resolve()))
    return command


def read_digest(metadata_file: Path) -> str:
    if not metadata_file.exists():
        raise BuildError(f"Build engine did not write metadata to {metadata_file}")
    try:
        metadata = json.loads(metadata_file.read_text())
    except json.JSONDecodeError as exc:
        raise BuildError(f"Build metadata {metadata_file} is not valid JSON: {exc}") from exc
    for key in _DIGEST_KEYS:
        digest = metadata.get(key)
        if digest:
            return str(digest)
    raise BuildError(f"Build metadata {metadata_file} does not contain an image digest")


def buildx_config_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Directory holding the caller's buildx builder instances.

    Builds run with a per-run ``DOCKER_CONFIG``, so buildx has to be pointed back
    at the caller's own builders explicitly.
    """

    environ = os.environ if environ is None else environ
    if environ.get("BUILDX_CONFIG"):
        return Path(environ["BUILDX_CONFIG"])
    docker_config = environ.get("DOCKER_CONFIG") or str(Path.home() / ".docker")
    return Path(docker_config) / "buildx"


class BuildDriver:
    """Run exactly one ``docker buildx build`` and report the resulting digest.

    Cache locations are passed through untouched; the engine treats a cache-read
    miss as a full build, so it is never an error here.
    """

    def __init__(
        self,
        workspace: str | Path,
        run_id: str,
        *,
        runner: CommandRunner = run_command,
        timeout: Optional[float] = None,
    ) -> None:
        self.workspace = Path(workspace)
        self.run_id = run_id
        self._runner = runner
        self.timeout = timeout

    def local_ref(self, request: BuildRequest) -> str:
        return request.image_ref(f"build-{self.run_id[:12]}")

    def build(self, request: BuildRequest, lease: CredentialLease) -> BuildArtifact:
        dockerfile = resolve_dockerfile(request)
        run_dir = ensure_directory(self.workspace)
        metadata_file = run_dir / "build-metadata.json"
        if metadata_file.exists():
            metadata_file.unlink()
        docker_config = write_docker_config(lease, request.registry_url, run_dir / "docker")
        local_ref = self.local_ref(request)

        command = build_command(request, dockerfile, local_ref, metadata_file)
        LOGGER.info("Building %s from %s", local_ref, dockerfile)
        try:
            self._runner(
                command,
                cwd=request.source_context,
                env={"DOCKER_CONFIG": str(docker_config), "BUILDX_CONFIG": str(buildx_config_dir())},
                timeout=self.timeout,
            )
        except CommandError as exc:
            raise BuildError(
                f"Build engine failed with exit code {exc.returncode}:\n{exc.tail()}",
                stderr=exc.stderr,
            ) from exc

        digest = read_digest(metadata_file)
        LOGGER.info("Built %s with digest %s", local_ref, digest)
        return BuildArtifact(digest=digest, image_ref=local_ref)

    def cleanup(self, artifact: BuildArtifact) -> None:
        """Remove the local build reference; the pushed tags keep the image alive in the registry."""

        try:
            self._runner(["docker", "image", "rm", artifact.image_ref], timeout=self.timeout)
        except CommandError as exc:
            LOGGER.warning("Could not remove local image %s: %s", artifact.image_ref, exc.tail(3))
