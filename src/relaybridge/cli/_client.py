"""Thin HTTP client for CLI commands that talk to a running relaybridge server."""

from __future__ import annotations

from typing import Any

import httpx

from relaybridge.core.config import RelayBridgeConfig
from relaybridge.core.exceptions import SessionNotFoundError

_CONNECT_TIMEOUT = 1.0
_REQUEST_TIMEOUT = 10.0

_WILDCARD_HOSTS = {"0.0.0.0": "127.0.0.1", "::": "::1", "": "127.0.0.1"}


def server_url(config: RelayBridgeConfig) -> str:
    host = _WILDCARD_HOSTS.get(config.server.host, config.server.host)
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{config.server.port}"


def _make_http(config: RelayBridgeConfig) -> httpx.Client:
    headers = {}
    if config.server.auth_token is not None:
        headers["Authorization"] = f"Bearer {config.server.auth_token.get_secret_value()}"
    return httpx.Client(
        base_url=server_url(config),
        headers=headers,
        timeout=httpx.Timeout(_REQUEST_TIMEOUT, connect=_CONNECT_TIMEOUT),
    )


class ServerClient:
    """Session API calls the CLI needs.  HTTP errors other than 404 propagate."""

    def __init__(self, http: httpx.Client) -> None:
        self._http = http

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> ServerClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self._http.request(method, path, **kwargs)
        if resp.status_code == 404:
            raise SessionNotFoundError(resp.json().get("error", f"Not found: {path}"))
        resp.raise_for_status()
        return resp.json()

    def list_sessions(self) -> list[dict[str, Any]]:
        return self._request("GET", "/sessions")["sessions"]

    def get_session(self, session_id: str, history_lines: int) -> dict[str, Any]:
        return self._request(
            "GET", f"/sessions/{session_id}", params={"history_lines": history_lines}
        )

    def delete_session(self, session_id: str) -> None:
        self._request("DELETE", f"/sessions/{session_id}")


def connect(config: RelayBridgeConfig) -> ServerClient | None:
    """Return a client for the configured server, or None if nothing answers there."""
    http = _make_http(config)
    try:
        resp = http.get("/health")
        resp.raise_for_status()
    except httpx.HTTPError:
        http.close()
        return None
    return ServerClient(http)
