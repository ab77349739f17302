from __future__ import annotations

from functools import lru_cache
from typing import Any, Callable, TypeVar

from mcp.server.fastmcp.exceptions import ToolError

from shared.bitbucket_client import BitbucketClient
from shared.config import (
    PLATFORM_BITBUCKET,
    PLATFORM_CONFLUENCE,
    PLATFORM_JIRA,
    is_truthy_env,
    load_service_config,
)
from shared.confluence_client import ConfluenceClient
from shared.http_client import HttpClient
from shared.jira_client import JiraClient
from shared.logging import get_logger
from shared.result import Err, Result

T = TypeVar("T")

DANGEROUS_TOOLS_ENV = "BITBUCKET_ENABLE_DANGEROUS"


def required_arg(name: str, value: Any) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValueError(f"{name} must not be empty")
    return text


def clamp(value: int, upper: int, lower: int = 1) -> int:
    return max(lower, min(int(value), upper))


def _http_client(platform: str) -> HttpClient:
    config = load_service_config(platform)
    return HttpClient(config.base_url, config.api_token)


@lru_cache(maxsize=1)
def bitbucket_client() -> BitbucketClient:
    return BitbucketClient(_http_client(PLATFORM_BITBUCKET))


@lru_cache(maxsize=1)
def jira_client() -> JiraClient:
    return JiraClient(_http_client(PLATFORM_JIRA))


@lru_cache(maxsize=1)
def confluence_client() -> ConfluenceClient:
    return ConfluenceClient(_http_client(PLATFORM_CONFLUENCE))


def require_dangerous_tools(tool_name: str) -> None:
    if not is_truthy_env(DANGEROUS_TOOLS_ENV):
        raise ToolError(f"{tool_name} is disabled; set {DANGEROUS_TOOLS_ENV}=true to enable it")


def unwrap(result: Result[T]) -> T:
    if isinstance(result, Err):
        raise ToolError(f"{result.kind.value}: {result.message}")
    return result.value


def run_tool(tool: str, fn: Callable[[], T]) -> T:
    """Run one tool body with an info line on entry and an error line on failure."""
    log = get_logger("mcp_server", tool=tool)
    log.info("Tool invoked")
    try:
        return fn()
    except Exception:
        log.exception("Tool failed")
        raise
