"""Minimal JSON-over-HTTP helper for provider REST APIs.

Uses stdlib ``urllib.request``, no extra dependencies required.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any


class HttpApiError(Exception):
    """Raised when a provider API returns an error status or invalid JSON."""

    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class JsonApi:
    """Bearer-authenticated JSON client for one API base URL."""

    def __init__(self, base_url: str, token: str, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout

    def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        query: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        """Send a request and decode the JSON response.

        Returns ``None`` for a 404 or an empty body.
        """
        url = self._base_url + path
        if query:
            url += "?" + urllib.parse.urlencode(query)
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            detail = e.read().decode("utf-8", errors="replace")
            raise HttpApiError(f"{method} {path} returned {e.code}: {detail}", e.code, detail) from e
        except urllib.error.URLError as e:
            raise HttpApiError(f"{method} {path} failed: {e.reason}") from e

        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise HttpApiError(f"{method} {path} returned invalid JSON", body=raw) from e
