"""Invocation settings: defaults, an optional JSON/YAML file, environment, CLI flags."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import ValidationError
from .models import BuildRequest, CacheConfig

ENV_PREFIX = "CONTAINER_PUBLISH_"
DEFAULT_CACHE_FROM = "type=gha"
DEFAULT_CACHE_TO = "type=gha,mode=max"

_REQUIRED = ("role_identifier", "region", "registry_url", "repository_name", "version_label")
_INT_FIELDS = ("session_duration_s", "push_concurrency", "keep_runs")


def _require_str(name: str, value: Any) -> str:
    # Unquoted YAML scalars such as 1.10 or on arrive as float or bool.
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string, got {type(value).__name__} {value!r} (quote it)")
    return value


def parse_build_args(value: Any) -> Tuple[Tuple[str, str], ...]:
    """Accept a mapping, a list of ``KEY=VALUE`` strings, or a newline separated string."""

    if value is None or value == "":
        return ()
    if isinstance(value, Mapping):
        pairs = [
            (_require_str("build_args", key), "" if item is None else _require_str(f"build_args.{key}", item))
            for key, item in value.items()
        ]
    else:
        if isinstance(value, str):
            entries = value.splitlines()
        elif not isinstance(value, (list, tuple)):
            raise ValidationError(f"build_args must be a mapping, a list or a string, got {type(value).__name__}")
        else:
            entries = [_require_str("build_args", entry) for entry in value]
        pairs = []
        for entry in entries:
            entry = entry.strip()
            if not entry:
                continue
            key, sep, item = entry.partition("=")
            if not sep:
                raise ValidationError(f"build argument {entry!r} is not KEY=VALUE")
            pairs.append((key.strip(), item))
    for key, _ in pairs:
        if not key:
            raise ValidationError("build argument with an empty key")
    return tuple(pairs)


@dataclass
class PublishConfig:
    role_identifier: str = ""
    region: str = ""
    registry_url: str = ""
    repository_name: str = ""
    version_label: str = ""
    build_args: Tuple[Tuple[str, str], ...] = ()
    build_target: Optional[str] = None
    build_context: str = "."
    dockerfile: str = "Dockerfile"
    cache_from: str = DEFAULT_CACHE_FROM
    cache_to: str = DEFAULT_CACHE_TO
    web_identity_token_file: Optional[str] = None
    session_name: str = "container-publish"
    session_duration_s: int = 3600
    push_concurrency: int = 1
    workspace: str = ".container-publish"
    keep_runs: int = 20

    def update(self, data: Mapping[str, Any], *, strict: bool = True) -> None:
        known = {item.name for item in fields(self)}
        for raw_key, value in data.items():
            key = str(raw_key).replace("-", "_")
            if key not in known:
                if strict:
                    raise ValidationError(f"unknown setting {raw_key!r}")
                continue
            if value is None:
                continue
            if key == "build_args":
                value = parse_build_args(value)
            elif key in _INT_FIELDS:
                if isinstance(value, bool):
                    raise ValidationError(f"{key} must be an integer, got {value!r}")
                try:
                    value = int(value)
                except (TypeError, ValueError) as exc:
                    raise ValidationError(f"{key} must be an integer, got {value!r}") from exc
            else:
                value = _require_str(key, value)
                if key == "build_target":
                    value = value or None
            setattr(self, key, value)

    def validate(self) -> None:
        problems: List[str] = []
        missing = [name for name in _REQUIRED if not getattr(self, name)]
        if missing:
            problems.append("missing required setting(s): " + ", ".join(missing))
        if self.push_concurrency < 1:
            problems.append("push_concurrency must be at least 1")
        if self.session_duration_s < 1:
            problems.append("session_duration_s must be positive")
        if self.keep_runs < 1:
            problems.append("keep_runs must be at least 1")
        for name in ("cache_from", "cache_to"):
            try:
                CacheConfig.from_string(getattr(self, name))
            except ValidationError as exc:
                problems.append(f"{name}: " + "; ".join(exc.problems))
        if problems:
            raise ValidationError(problems)

    def to_build_request(self) -> BuildRequest:
        self.validate()
        return BuildRequest(
            source_context=Path(self.build_context),
            dockerfile_path=Path(self.dockerfile),
            version_label=self.version_label,
            registry_url=self.registry_url.rstrip("/"),
            repository_name=self.repository_name.strip("/"),
            cache_from=CacheConfig.from_string(self.cache_from),
            cache_to=CacheConfig.from_string(self.cache_to),
            build_target=self.build_target or None,
            build_args=tuple(self.build_args),
        )


def read_config_file(path: str | Path) -> Dict[str, Any]:
    try:
        raw_text = Path(path).read_text()
    except OSError as exc:
        raise ValidationError(f"Cannot read config file {path}: {exc}") from exc
    try:
        raw_data = json.loads(raw_text)
    except json.JSONDecodeError:
        try:
            raw_data = yaml.safe_load(raw_text)
        except yaml.YAMLError as exc:
            raise ValidationError(f"Cannot parse config file {path}: {exc}") from exc
    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ValidationError(f"Config file {path} must contain a top-level mapping")
    return raw_data


def env_settings(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    environ = os.environ if environ is None else environ
    return {
        key[len(ENV_PREFIX):].lower(): value
        for key, value in environ.items()
        if key.startswith(ENV_PREFIX) and value != ""
    }


def load_config(
    path: str | Path | None = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> PublishConfig:
    """Merge defaults, file, environment and explicit overrides (highest wins)."""

    config = PublishConfig()
    if path is not None:
        config.update(read_config_file(path))
    config.update(env_settings(environ), strict=False)
    if overrides:
        config.update(overrides)
    return config
