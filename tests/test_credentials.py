from __future__ import annotations

import base64
import datetime as _dt
import json
from pathlib import Path
from typing import Dict, List

import boto3
import pytest
from botocore.stub import Stubber

from container_publish.credentials import CredentialBroker, write_docker_config
from container_publish.errors import AuthError
from container_publish.models import CredentialLease

ROLE = "arn:aws:iam::123456789012:role/ci-publisher"
REGION = "eu-west-1"
STS_EXPIRY = _dt.datetime(2030, 1, 1, 12, 0, tzinfo=_dt.timezone.utc)
ECR_EXPIRY = _dt.datetime(2030, 1, 1, 11, 0, tzinfo=_dt.timezone.utc)


class StubbedSessions:
    """Session factory handing out pre-stubbed clients and remembering how it was called."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, str]] = []
        self.clients = {}
        self.stubbers = {}
        for service in ("sts", "ecr"):
            client = boto3.session.Session(
                region_name=REGION,
                aws_access_key_id="testing",
                aws_secret_access_key="testing",
            ).client(service)
            self.clients[service] = client
            self.stubbers[service] = Stubber(client)

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        return self

    def client(self, service: str):
        return self.clients[service]

    def activate(self) -> None:
        for stubber in self.stubbers.values():
            stubber.activate()


@pytest.fixture
def token_file(tmp_path: Path) -> Path:
    path = tmp_path / "token"
    path.write_text("eyJ.federated.token\n")
    return path


def _sts_response() -> dict:
    return {
        "Credentials": {
            "AccessKeyId": "ASIATESTKEY12345",
            "SecretAccessKey": "secret",
            "SessionToken": "session",
            "Expiration": STS_EXPIRY,
        }
    }


def _ecr_response() -> dict:
    return {
        "authorizationData": [
            {
                "authorizationToken": base64.b64encode(b"AWS:registry-password").decode(),
                "expiresAt": ECR_EXPIRY,
                "proxyEndpoint": "https://123456789012.dkr.ecr.eu-west-1.amazonaws.com",
            }
        ]
    }


def test_acquire_exchanges_token_for_registry_lease(token_file: Path) -> None:
    sessions = StubbedSessions()
    sessions.stubbers["sts"].add_response(
        "assume_role_with_web_identity",
        _sts_response(),
        {
            "RoleArn": ROLE,
            "RoleSessionName": "container-publish",
            "WebIdentityToken": "eyJ.federated.token",
            "DurationSeconds": 3600,
        },
    )
    sessions.stubbers["ecr"].add_response("get_authorization_token", _ecr_response(), {})
    sessions.activate()

    lease = CredentialBroker(web_identity_token_file=token_file, session_factory=sessions).acquire(ROLE, REGION)

    assert lease.access_token == "registry-password"
    assert lease.username == "AWS"
    assert lease.expiry == ECR_EXPIRY
    assert lease.scope == "123456789012.dkr.ecr.eu-west-1.amazonaws.com"
    assert sessions.calls[1]["aws_session_token"] == "session"
    assert "registry-password" not in repr(lease)


def test_refused_exchange_is_auth_error(token_file: Path) -> None:
    sessions = StubbedSessions()
    sessions.stubbers["sts"].add_client_error(
        "assume_role_with_web_identity",
        service_error_code="InvalidIdentityToken",
        service_message="Token audience mismatch",
    )
    sessions.activate()
    with pytest.raises(AuthError):
        CredentialBroker(web_identity_token_file=token_file, session_factory=sessions).acquire(ROLE, REGION)


def test_missing_token_file_is_auth_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("AWS_WEB_IDENTITY_TOKEN_FILE", raising=False)
    with pytest.raises(AuthError):
        CredentialBroker(session_factory=StubbedSessions()).acquire(ROLE, REGION)
    with pytest.raises(AuthError):
        CredentialBroker(web_identity_token_file=tmp_path / "absent", session_factory=StubbedSessions()).acquire(ROLE, REGION)


def test_token_file_falls_back_to_environment(token_file: Path, monkeypatch) -> None:
    monkeypatch.setenv("AWS_WEB_IDENTITY_TOKEN_FILE", str(token_file))
    assert CredentialBroker()._read_token() == "eyJ.federated.token"


def test_write_docker_config(tmp_path: Path) -> None:
    lease = CredentialLease(access_token="pw", expiry=STS_EXPIRY, scope="scope.example.com")
    directory = write_docker_config(lease, "registry.example.com", tmp_path / "docker")
    payload = json.loads((directory / "config.json").read_text())
    encoded = payload["auths"]["registry.example.com"]["auth"]
    assert base64.b64decode(encoded) == b"AWS:pw"


@pytest.mark.parametrize("authorization_token", ["not base64!", base64.b64encode(b"no-separator").decode()])
def test_malformed_registry_token_is_auth_error(token_file: Path, authorization_token: str) -> None:
    sessions = StubbedSessions()
    sessions.stubbers["sts"].add_response("assume_role_with_web_identity", _sts_response())
    response = _ecr_response()
    response["authorizationData"][0]["authorizationToken"] = authorization_token
    sessions.stubbers["ecr"].add_response("get_authorization_token", response, {})
    sessions.activate()
    with pytest.raises(AuthError):
        CredentialBroker(web_identity_token_file=token_file, session_factory=sessions).acquire(ROLE, REGION)


def test_registry_token_without_expiry_is_auth_error(token_file: Path) -> None:
    sessions = StubbedSessions()
    sessions.stubbers["sts"].add_response("assume_role_with_web_identity", _sts_response())
    response = _ecr_response()
    del response["authorizationData"][0]["expiresAt"]
    sessions.stubbers["ecr"].add_response("get_authorization_token", response, {})
    sessions.activate()
    with pytest.raises(AuthError):
        CredentialBroker(web_identity_token_file=token_file, session_factory=sessions).acquire(ROLE, REGION)
