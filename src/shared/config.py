from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.client import BaseClient

PLATFORM_BITBUCKET = "BITBUCKET"
PLATFORM_JIRA = "JIRA"
PLATFORM_CONFLUENCE = "CONFLUENCE"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ServiceConfig:
    base_url: str
    api_token: str


def required_env(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def is_truthy_env(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in _TRUTHY


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _token_from_secret(secret_arn: str, secrets_client: Optional[BaseClient]) -> str:
    client = secrets_client or boto3.client("secretsmanager")
    response = client.get_secret_value(SecretId=secret_arn)
    secret = (response.get("SecretString") or "").strip()
    if not secret:
        raise RuntimeError(f"Secret {secret_arn} has no SecretString")

    # Either a bare token or a JSON document with an api_token field.
    if secret.startswith("{"):
        data = json.loads(secret)
        token = str(data.get("api_token") or "").strip()
        if not token:
            raise RuntimeError(f"Secret {secret_arn} is missing field: api_token")
        return token
    return secret


def load_service_config(platform: str, secrets_client: Optional[BaseClient] = None) -> ServiceConfig:
    """Resolve ``<PLATFORM>_BASE_URL`` and the platform's bearer token.

    The token comes from ``<PLATFORM>_API_TOKEN`` or, when that is unset, from the
    Secrets Manager secret named by ``<PLATFORM>_API_TOKEN_SECRET_ARN``.
    """
    prefix = platform.upper()
    base_url = required_env(f"{prefix}_BASE_URL").rstrip("/")

    token = os.getenv(f"{prefix}_API_TOKEN", "").strip()
    if not token:
        secret_arn = os.getenv(f"{prefix}_API_TOKEN_SECRET_ARN", "").strip()
        if not secret_arn:
            raise RuntimeError(
                f"Missing required environment variable: {prefix}_API_TOKEN "
                f"(or {prefix}_API_TOKEN_SECRET_ARN)"
            )
        token = _token_from_secret(secret_arn, secrets_client)

    return ServiceConfig(base_url=base_url, api_token=token)
