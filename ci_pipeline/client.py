"""GitHub REST API client.

Usage:
    client = GitHubClient(token="ghp_xxx")
    pulls  = client.get("/repos/org/repo/pulls", {"state": "open"})
    status = client.post("/repos/org/repo/statuses/<sha>", {"state": "pending"})
"""

from typing import Any

import requests

DEFAULT_API_URL = "https://api.github.com"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GitHubClientError(Exception):
    """Base exception for all client errors."""


class AuthenticationError(GitHubClientError):
    """Raised on HTTP 401 — invalid or expired token."""


class NotFoundError(GitHubClientError):
    """Raised on HTTP 404 — repository, commit or resource not found.

    GitHub also answers 404 for private resources the token cannot see.
    """


class PermissionDeniedError(GitHubClientError):
    """Raised on HTTP 403 when the token lacks a scope (repo:status, issues)."""


class RateLimitError(GitHubClientError):
    """Raised on HTTP 403/429 once the API rate limit is exhausted."""

    def __init__(self, message: str, reset_at: int | None = None) -> None:
        self.reset_at = reset_at
        super().__init__(message)


class NetworkError(GitHubClientError):
    """Raised on connection timeout or unreachable server."""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GitHubClient:
    """Thin wrapper around the GitHub REST API (v3)."""

    def __init__(self, token: str, api_url: str = DEFAULT_API_URL, timeout: int = 30) -> None:
        self.base_url = api_url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json",
        })

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """Perform a GET request and return the parsed JSON response.

        Raises:
            AuthenticationError:   HTTP 401
            RateLimitError:        HTTP 429, or 403 with no requests remaining
            PermissionDeniedError: any other HTTP 403
            NotFoundError:         HTTP 404
            GitHubClientError:     Any other non-2xx response
            NetworkError:          Timeout or connection failure
        """
        return self._request("GET", endpoint, params=params or {})

    def post(self, endpoint: str, payload: dict[str, Any]) -> Any:
        """Perform a POST request with a JSON body and return the parsed response.

        Raises the same exceptions as :meth:`get`.
        """
        return self._request("POST", endpoint, json=payload)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        url = f"{self.base_url}{endpoint}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.Timeout as exc:
            raise NetworkError(
                f"Request timed out after {self._timeout}s while contacting '{url}'"
            ) from exc
        except requests.exceptions.ConnectionError as exc:
            raise NetworkError(
                f"Unable to reach GitHub API at '{self.base_url}'"
            ) from exc

        if response.status_code == 401:
            raise AuthenticationError(
                "Authentication failed — check that your token is valid and not expired."
            )
        if response.status_code in (403, 429):
            if response.headers.get("X-RateLimit-Remaining") == "0" or response.status_code == 429:
                reset = response.headers.get("X-RateLimit-Reset")
                raise RateLimitError(
                    f"GitHub API rate limit exceeded (resets at {reset or 'unknown'})",
                    reset_at=int(reset) if reset and reset.isdigit() else None,
                )
            raise PermissionDeniedError(
                f"Permission denied for {url}: {_error_message(response)}"
            )
        if response.status_code == 404:
            raise NotFoundError(f"Resource not found: {url}")
        if not response.ok:
            raise GitHubClientError(
                f"Unexpected response {response.status_code} from {url}: {_error_message(response)}"
            )

        if not response.content:
            return {}
        return response.json()


def _error_message(response: requests.Response) -> str:
    """GitHub puts the reason in a JSON ``message`` field; fall back to the raw body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text[:200]
