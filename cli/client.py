from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the dashboard API."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        headers = {"Authorization": f"Bearer {config.token}"} if config.token else {}
        self._client = httpx.Client(base_url=config.base_url, timeout=30.0, headers=headers)

    def close(self) -> None:
        self._client.close()

    def login(self, email: str, password: str, admin: bool = False) -> str:
        path = "/auth/admin/login" if admin else "/auth/login"
        payload = self._request("POST", path, json={"email": email, "password": password})
        token = (payload.get("data") or {}).get("accessToken")
        if not isinstance(token, str):
            raise typer.BadParameter("Unexpected response payload when logging in.")
        return token

    def list_readings(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = {key: value for key, value in params.items() if value is not None}
        return self._request("GET", "/sensor-data", params=query)

    def iter_readings(self, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """Yield every reading, following ``nextPageToken`` until exhausted."""
        query = dict(params)
        while True:
            payload = self.list_readings(query)
            yield from payload.get("data") or []
            token = (payload.get("metadata") or {}).get("nextPageToken")
            if not token:
                return
            query["nextPageToken"] = token

    def get_stats(self, device_id: Optional[str] = None, hours: Optional[float] = None) -> Dict[str, Any]:
        params = {"deviceId": device_id, "hours": hours}
        payload = self._request(
            "GET", "/sensor-data/stats", params={k: v for k, v in params.items() if v is not None}
        )
        return payload.get("data") or {}

    def list_devices(self) -> List[Dict[str, Any]]:
        payload = self._request("GET", "/sensor-data/devices/summary")
        return payload.get("data") or []

    def generate(self, count: int, prefix: Optional[str] = None, location: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"count": count}
        if prefix:
            body["deviceIdPrefix"] = prefix
        if location:
            body["location"] = location
        payload = self._request("POST", "/sensor-data/generate", json=body)
        return payload.get("data") or {}

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            typer.secho(f"Could not reach {self._config.base_url}: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: Any = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
