"""HTTP plumbing shared by provider API clients."""

import logging
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

HTTP_STATUS_MESSAGES = {
    400: 'Bad request',
    401: 'Unauthorized - check credentials',
    403: 'Forbidden',
    404: 'Not found',
    408: 'Timeout',
    409: 'Conflict',
    422: 'Unprocessable entity',
    429: 'Rate limited',
    500: 'Server error',
    502: 'Bad gateway',
    503: 'Service unavailable',
    504: 'Timeout',
}


class ProviderError(Exception):
    """Provider misuse or an unexpected provider response."""


class ApiError(ProviderError):
    """Non-success HTTP response from a provider API."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def not_found(self) -> bool:
        return self.status == 404

    @property
    def unauthorized(self) -> bool:
        return self.status == 401

    @property
    def rate_limited(self) -> bool:
        return self.status == 429


def error_message_for_status(status: int) -> str:
    if status in HTTP_STATUS_MESSAGES:
        return HTTP_STATUS_MESSAGES[status]
    if 500 <= status <= 599:
        return 'Server error'
    return 'Request failed'


def _error_detail(body: Any) -> str:
    if isinstance(body, dict):
        error = body.get('error')
        if isinstance(error, dict):
            error = error.get('message')
        errors = body.get('errors')
        if not error and isinstance(errors, list) and errors:
            first = errors[0]
            error = first.get('message') if isinstance(first, dict) else first
        return str(body.get('message') or error or body)[:200]
    return str(body)[:200]


class HttpClient:
    """Minimal JSON-over-HTTPS client.

    Subclasses set BASE_URL and override auth_headers().
    """

    BASE_URL = ''

    def __init__(self, timeout: int = 120, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(self.auth_headers())

    def auth_headers(self) -> dict:
        return {}

    def _url(self, path: str) -> str:
        return f"{self.BASE_URL}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self._url(path)
        logger.debug(f"{method} {url}")
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise ApiError(f"Timeout calling {url}", status=408) from e
        except requests.exceptions.ConnectionError as e:
            raise ApiError(f"Cannot connect to {url}: {e}") from e

    def _handle(self, response: requests.Response) -> Any:
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = response.text
        if response.ok:
            return body
        raise ApiError(
            f"[{response.status_code}] {error_message_for_status(response.status_code)}: {_error_detail(body)}",
            status=response.status_code,
            body=body,
        )

    def get(self, path: str, params: Optional[dict] = None) -> Any:
        return self._handle(self._request('GET', path, params=params or {}))

    def post(self, path: str, body: Optional[dict] = None) -> Any:
        return self._handle(self._request('POST', path, json=body or {}))

    def put(self, path: str, body: Any = None, **kwargs) -> Any:
        if body is not None:
            kwargs['json'] = body
        return self._handle(self._request('PUT', path, **kwargs))

    def delete(self, path: str) -> Any:
        """DELETE path. Returns None for 204 and 404."""
        response = self._request('DELETE', path)
        if response.status_code in (204, 404):
            return None
        return self._handle(response)
