"""Dataverse Web API transport with bearer-token authentication."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib import request as urllib_request
from urllib.error import HTTPError

logger = logging.getLogger(__name__)

ODATA_HEADERS = {
    "OData-MaxVersion": "4.0",
    "OData-Version": "4.0",
    "Accept": "application/json",
    "Content-Type": "application/json; charset=utf-8",
    "Prefer": 'odata.include-annotations="*"',
}


class DataverseApiError(Exception):
    """Raised when the Web API returns a non-2xx response."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Dataverse API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class DataverseClient:
    """Thin JSON client for one environment's Web API.

    The caller supplies the access token on every call; this class holds
    no credentials.
    """

    def __init__(self, base_url: str, api_version: str) -> None:
        """Initialise the client.

        Args:
            base_url: Environment URL (e.g. "https://contoso.crm.dynamics.com").
            api_version: Web API version (e.g. "9.2").
        """
        self._api_base = f"{base_url.rstrip('/')}/api/data/v{api_version}"

    @property
    def api_base(self) -> str:
        return self._api_base

    def get(self, path: str, token: str) -> dict[str, Any]:
        """Perform an authenticated GET request.

        Args:
            path: URL path relative to the API base (starting with '/'), or an
                absolute URL such as an @odata.nextLink.
            token: Bearer access token.

        Returns:
            Parsed JSON response body as a dict.

        Raises:
            DataverseApiError: If the API returns a non-2xx status code.
        """
        return self._send("GET", path, token)

    def patch(self, path: str, body: dict[str, Any], token: str) -> None:
        """Perform an authenticated PATCH request with a JSON body.

        Raises:
            DataverseApiError: If the API returns a non-2xx status code.
        """
        self._send("PATCH", path, token, body)

    def post(self, path: str, body: dict[str, Any], token: str) -> dict[str, Any]:
        """Perform an authenticated POST request with a JSON body.

        Returns:
            Parsed JSON response body, or an empty dict for 204 responses.

        Raises:
            DataverseApiError: If the API returns a non-2xx status code.
        """
        return self._send("POST", path, token, body)

    def _send(
        self,
        method: str,
        path: str,
        token: str,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = path if path.lower().startswith(("https://", "http://")) else f"{self._api_base}{path}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib_request.Request(
            url,
            data=data,
            headers={**ODATA_HEADERS, "Authorization": f"Bearer {token}"},
            method=method,
        )
        logger.debug("[_send] request; method:%s;path:%s", method, path.split("?", 1)[0])
        try:
            with urllib_request.urlopen(req) as resp:
                raw = resp.read()
                return json.loads(raw) if raw else {}  # type: ignore[no-any-return]
        except HTTPError as exc:
            raw = exc.read()
            try:
                detail = json.loads(raw).get("error", {}).get("message", exc.reason)
            except (ValueError, AttributeError):
                detail = exc.reason
            logger.error("[_send] request failed; method:%s;status:%d", method, exc.code)
            raise DataverseApiError(exc.code, detail) from exc
