"""Base HTTP Client for the Analysis Worker ops API"""

from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel

console = Console()


class OpsAPIError(Exception):
    """Base exception for ops API errors"""

    pass


class APIClient:
    """HTTP client for the Analysis Worker ops API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8010",
        timeout: int = 30,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_headers = headers or {}
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers=self.default_headers,
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Handle API response and extract data"""
        try:
            data = response.json()
        except Exception:
            console.print(f"[red]Failed to parse response: {response.text}[/red]")
            raise OpsAPIError(f"Invalid JSON response: {response.status_code}") from None

        if response.status_code >= 400:
            error_msg = data.get("error", {}).get("message", "Unknown error")
            console.print(Panel(f"[red]{error_msg}[/red]", title="API Error"))
            raise OpsAPIError(f"API Error {response.status_code}: {error_msg}")

        # Envelope format
        if "ok" in data and "data" in data:
            return data.get("data") or {}

        return data

    def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make GET request"""
        try:
            response = self.client.get(f"/v1{path}", params=params)
            return self._handle_response(response)
        except httpx.RequestError as e:
            raise OpsAPIError(f"Connection failed: {e}") from None

    def post(self, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make POST request"""
        try:
            response = self.client.post(f"/v1{path}", json=json)
            return self._handle_response(response)
        except httpx.RequestError as e:
            raise OpsAPIError(f"Connection failed: {e}") from None
