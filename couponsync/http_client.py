"""HTTP utilities shared by the upstream network clients."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

LOGGER = logging.getLogger(__name__)


class TransientUpstreamError(RuntimeError):
    """Raised when an upstream request fails or returns an unusable body."""


class JsonApiClient:
    """Bearer-token JSON client with sane defaults for the affiliate APIs."""

    def __init__(
        self,
        base_url: str,
        token: str | None,
        *,
        user_agent: str,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._token = token
        self._user_agent = user_agent
        self._timeout = timeout
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None

    def _build_client(self) -> httpx.Client:
        headers = {"User-Agent": self._user_agent, "Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        kwargs: dict[str, object] = {
            "base_url": self._base_url,
            "timeout": self._timeout,
            "headers": headers,
            "follow_redirects": True,
        }
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def get_json(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        return self._request("GET", path, params=params)

    def post_json(self, path: str, payload: Mapping[str, Any]) -> Any:
        return self._request("POST", path, json=payload)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TransientUpstreamError(str(exc)) from exc

        if response.status_code != httpx.codes.OK:
            raise TransientUpstreamError(
                f"Unexpected status {response.status_code} for {method} {response.request.url}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransientUpstreamError(f"Invalid JSON from {method} {response.request.url}") from exc

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "JsonApiClient":  # pragma: no cover - convenience wrapper
        return self

    def __exit__(self, *_exc_info) -> None:  # pragma: no cover - convenience wrapper
        self.close()


__all__ = ["JsonApiClient", "TransientUpstreamError"]
