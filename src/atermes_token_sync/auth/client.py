from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib.parse import urlparse

import requests

from ..errors import ApiError
from ..models import AuthData


logger = logging.getLogger(__name__)


API_KEY_HEADER = "atermes_ea_api_key"


class ApiClient:
    """
    Minimal JSON client for the Atermes API, authenticated with a token captured by the login flow.
    """

    def __init__(
        self,
        *,
        base_url: str,
        auth: AuthData,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._http = session or requests.Session()
        self._set_cookies()

    def _set_cookies(self) -> None:
        domain = (urlparse(self.base_url).hostname or "").lower()
        for name, value in self.auth.cookies.items():
            self._http.cookies.set(name, value, domain=domain, path="/")

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers[API_KEY_HEADER] = self._api_key
        if self.auth.token:
            headers["Authorization"] = f"Bearer {self.auth.token}"
        return headers

    def call_api(self, method: str, endpoint: str, body: Optional[Any] = None) -> bytes:
        url = self.base_url + endpoint
        data = json.dumps(body) if body is not None else None
        try:
            resp = self._http.request(method, url, data=data, headers=self._headers(), timeout=self._timeout)
        except requests.RequestException as e:
            raise ApiError(f"request failed: {e}") from e

        if resp.status_code >= 400:
            raise ApiError(
                f"API error (status {resp.status_code}): {resp.text}",
                status=resp.status_code,
                body=resp.content,
            )
        return resp.content

    def call_json(self, method: str, endpoint: str, body: Optional[Any] = None) -> Any:
        raw = self.call_api(method, endpoint, body)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise ApiError(f"API returned non-JSON response for {endpoint}") from e

    def get_client_overview(self, take: int, skip: int) -> Any:
        return self.call_json("POST", "/api/v1/Client/overzicht", {"take": take, "skip": skip})

    def get_dossier_overview(self, take: int, skip: int) -> Any:
        return self.call_json("POST", "/api/v1/Dossier/overzicht", {"take": take, "skip": skip})

    def get_client(self, client_id: str) -> Any:
        return self.call_json("GET", f"/api/v1/Client/{client_id}")
