"""Federated credential exchange for the target registry.

A web identity token (for example a CI OIDC token) is exchanged with STS for
temporary keys, which are then used to request an ECR authorization token. The
result is a :class:`CredentialLease` that lives only as long as one pipeline run.
"""

from __future__ import annotations

import base64
import datetime as _dt
import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import AuthError
from .models import CredentialLease
from .utils import dump_json

LOGGER = logging.getLogger(__name__)

SessionFactory = Callable[..., Any]


def _aware(value: _dt.datetime) -> _dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=_dt.timezone.utc)
    return value


class CredentialBroker:
    """Obtain a scoped, time-limited registry credential."""

    def __init__(
        self,
        *,
        web_identity_token_file: str | Path | None = None,
        session_name: str = "container-publish",
        duration_s: int = 3600,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.web_identity_token_file = web_identity_token_file
        self.session_name = session_name
        self.duration_s = duration_s
        self._session_factory = session_factory or boto3.session.Session

    def _read_token(self) -> str:
        token_file = self.web_identity_token_file or os.environ.get("AWS_WEB_IDENTITY_TOKEN_FILE")
        if not token_file:
            raise AuthError("No web identity token file configured")
        try:
            token = Path(token_file).read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise AuthError(f"Cannot read web identity token file {token_file}: {exc}") from exc
        if not token:
            raise AuthError(f"Web identity token file {token_file} is empty")
        return token

    def acquire(self, role_identifier: str, region: str) -> CredentialLease:
        token = self._read_token()
        try:
            sts = self._session_factory(region_name=region).client("sts")
            assumed = sts.assume_role_with_web_identity(
                RoleArn=role_identifier,
                RoleSessionName=self.session_name,
                WebIdentityToken=token,
                DurationSeconds=self.duration_s,
            )
            keys = assumed["Credentials"]
            ecr = self._session_factory(
                region_name=region,
                aws_access_key_id=keys["AccessKeyId"],
                aws_secret_access_key=keys["SecretAccessKey"],
                aws_session_token=keys["SessionToken"],
            ).client("ecr")
            auth = ecr.get_authorization_token()["authorizationData"][0]
            decoded = base64.b64decode(auth["authorizationToken"], validate=True).decode("utf-8")
            expiry = min(_aware(keys["Expiration"]), _aware(auth["expiresAt"]))
        except (ClientError, BotoCoreError) as exc:
            raise AuthError(f"Credential exchange for {role_identifier} failed: {exc}") from exc
        except (KeyError, IndexError) as exc:
            raise AuthError(f"Unexpected credential broker response: missing {exc}") from exc
        except (TypeError, ValueError) as exc:
            raise AuthError(f"Unexpected credential broker response: {exc}") from exc

        username, sep, password = decoded.partition(":")
        if not sep:
            raise AuthError("Unexpected credential broker response: authorization token is not user:password")
        scope = auth.get("proxyEndpoint", "").removeprefix("https://")
        LOGGER.info("Acquired registry credential for %s (expires %s)", scope, expiry.isoformat())
        return CredentialLease(access_token=password, expiry=expiry, scope=scope, username=username)


def write_docker_config(lease: CredentialLease, registry: str, directory: str | Path) -> Path:
    """Write a per-run docker config directory for ``registry`` and return it.

    Pass the directory as ``DOCKER_CONFIG`` so that no global docker login state is touched.
    """

    directory = Path(directory)
    dump_json(directory / "config.json", lease.docker_auth(registry))
    os.chmod(directory / "config.json", 0o600)
    return directory
