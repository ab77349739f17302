from __future__ import annotations

from typing import Any, Optional

import requests

from shared.config import env_int
from shared.retry import RetryConfig, call_with_retry, is_retryable_status

DEFAULT_TIMEOUT_SECONDS = 20


class UpstreamError(Exception):
    """A platform REST call failed with a non-2xx status or a transport error."""

    def __init__(self, method: str, url: str, message: str, status_code: Optional[int] = None) -> None:
        self.method = method
        self.url = url
        self.status_code = status_code
        self.detail = message
        status = status_code if status_code is not None else "n/a"
        super().__init__(f"HTTP {method} Error: {message} (Status: {status})")


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return str(errors[0]["message"])
        if body.get("message"):
            return str(body["message"])
        if isinstance(body.get("errorMessages"), list) and body["errorMessages"]:
            return "; ".join(str(m) for m in body["errorMessages"])
    return response.reason or f"HTTP {response.status_code}"


class HttpClient:
    """Bearer-token JSON client for one platform's REST API.

    Paths are relative to ``base_url``. Non-2xx responses become
    :class:`UpstreamError`; transient statuses are retried first.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        session: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._session = session or requests.Session()
        self._timeout = timeout or env_int("HTTP_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
        self._retry_config = retry_config or RetryConfig.from_env()

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def token(self) -> str:
        return self._token

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = path if path.startswith("http") else f"{self._base_url}{path}"
        base_headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }
        if "json" in kwargs:
            base_headers["Content-Type"] = "application/json"
        base_headers.update(kwargs.pop("headers", {}) or {})

        def _do() -> requests.Response:
            return self._session.request(method, url, headers=dict(base_headers), timeout=self._timeout, **kwargs)

        try:
            response = call_with_retry(
                operation_name=f"{method} {path}",
                fn=_do,
                is_retryable_exception=lambda exc: isinstance(exc, (requests.ConnectionError, requests.Timeout)),
                is_retryable_result=lambda r: is_retryable_status(r.status_code),
                config=self._retry_config,
            )
        except requests.RequestException as exc:
            raise UpstreamError(method, url, str(exc)) from exc

        if response.status_code >= 400:
            raise UpstreamError(method, url, _error_message(response), response.status_code)
        return response

    @staticmethod
    def _decode(response: requests.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return self._decode(self._request("GET", path, params=params))

    def post(self, path: str, data: Any = None, params: Optional[dict[str, Any]] = None) -> Any:
        return self._decode(self._request("POST", path, json=data, params=params))

    def put(self, path: str, data: Any = None, params: Optional[dict[str, Any]] = None) -> Any:
        return self._decode(self._request("PUT", path, json=data, params=params))

    def delete(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return self._decode(self._request("DELETE", path, params=params))

    def get_text(self, path: str, params: Optional[dict[str, Any]] = None) -> str:
        response = self._request("GET", path, params=params, headers={"Accept": "text/plain"})
        return response.text

    def get_bytes(self, path: str) -> bytes:
        response = self._request("GET", path, headers={"Accept": "*/*"})
        return response.content

    def post_multipart(
        self,
        path: str,
        file_name: str,
        content: bytes,
        fields: Optional[dict[str, str]] = None,
    ) -> Any:
        # requests sets the multipart Content-Type itself when files= is used.
        response = self._request(
            "POST",
            path,
            files={"file": (file_name, content)},
            data=fields or {},
            headers={"X-Atlassian-Token": "no-check"},
        )
        return self._decode(response)
