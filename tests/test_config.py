from __future__ import annotations

import json

import pytest

from shared.config import (
    PLATFORM_BITBUCKET,
    PLATFORM_CONFLUENCE,
    env_int,
    is_truthy_env,
    load_service_config,
)


class FakeSecrets:
    def __init__(self, secret: str):
        self._secret = secret
        self.requested: list[str] = []

    def get_secret_value(self, SecretId: str) -> dict:
        self.requested.append(SecretId)
        return {"SecretString": self._secret}


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for platform in ("BITBUCKET", "JIRA", "CONFLUENCE"):
        for suffix in ("_BASE_URL", "_API_TOKEN", "_API_TOKEN_SECRET_ARN"):
            monkeypatch.delenv(platform + suffix, raising=False)


def test_load_from_plain_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BITBUCKET_BASE_URL", "https://git.example.com/")
    monkeypatch.setenv("BITBUCKET_API_TOKEN", " tok ")

    config = load_service_config(PLATFORM_BITBUCKET)

    assert config.base_url == "https://git.example.com"
    assert config.api_token == "tok"


def test_missing_base_url_names_the_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JIRA_API_TOKEN", "tok")
    with pytest.raises(RuntimeError, match="JIRA_BASE_URL"):
        load_service_config("jira")


def test_missing_token_names_both_sources(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONFLUENCE_BASE_URL", "https://wiki.example.com")
    with pytest.raises(RuntimeError, match="CONFLUENCE_API_TOKEN_SECRET_ARN"):
        load_service_config(PLATFORM_CONFLUENCE)


def test_token_from_plain_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONFLUENCE_BASE_URL", "https://wiki.example.com")
    monkeypatch.setenv("CONFLUENCE_API_TOKEN_SECRET_ARN", "arn:aws:secretsmanager:us-east-1:1:secret:wiki")
    secrets = FakeSecrets("secret-token\n")

    config = load_service_config(PLATFORM_CONFLUENCE, secrets_client=secrets)

    assert config.api_token == "secret-token"
    assert secrets.requested == ["arn:aws:secretsmanager:us-east-1:1:secret:wiki"]


def test_token_from_json_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BITBUCKET_BASE_URL", "https://git.example.com")
    monkeypatch.setenv("BITBUCKET_API_TOKEN_SECRET_ARN", "arn:bb")

    config = load_service_config(PLATFORM_BITBUCKET, secrets_client=FakeSecrets(json.dumps({"api_token": "json-tok"})))

    assert config.api_token == "json-tok"


def test_json_secret_without_token_field(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BITBUCKET_BASE_URL", "https://git.example.com")
    monkeypatch.setenv("BITBUCKET_API_TOKEN_SECRET_ARN", "arn:bb")
    with pytest.raises(RuntimeError, match="api_token"):
        load_service_config(PLATFORM_BITBUCKET, secrets_client=FakeSecrets(json.dumps({"user": "x"})))


def test_plain_token_wins_over_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BITBUCKET_BASE_URL", "https://git.example.com")
    monkeypatch.setenv("BITBUCKET_API_TOKEN", "env-tok")
    monkeypatch.setenv("BITBUCKET_API_TOKEN_SECRET_ARN", "arn:bb")
    secrets = FakeSecrets("secret-tok")

    assert load_service_config(PLATFORM_BITBUCKET, secrets_client=secrets).api_token == "env-tok"
    assert secrets.requested == []


@pytest.mark.parametrize("value", ["1", "true", "TRUE", "yes", "on", " On "])
def test_truthy_env_values(monkeypatch: pytest.MonkeyPatch, value: str) -> None:
    monkeypatch.setenv("BITBUCKET_ENABLE_DANGEROUS", value)
    assert is_truthy_env("BITBUCKET_ENABLE_DANGEROUS")


@pytest.mark.parametrize("value", ["", "0", "false", "no", "enabled"])
def test_falsy_env_values(monkeypatch: pytest.MonkeyPatch, value: str) -> None:
    monkeypatch.setenv("BITBUCKET_ENABLE_DANGEROUS", value)
    assert not is_truthy_env("BITBUCKET_ENABLE_DANGEROUS")


def test_env_int(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HTTP_TIMEOUT_SECONDS", raising=False)
    assert env_int("HTTP_TIMEOUT_SECONDS", 20) == 20
    monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "45")
    assert env_int("HTTP_TIMEOUT_SECONDS", 20) == 45
    monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "soon")
    with pytest.raises(RuntimeError, match="HTTP_TIMEOUT_SECONDS"):
        env_int("HTTP_TIMEOUT_SECONDS", 20)
