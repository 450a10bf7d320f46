"""YOURLS client used to shorten brand affiliate links."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import DEFAULT_USER_AGENT, ShortenerConfig
from .text import slugify

LOGGER = logging.getLogger(__name__)


class YourlsShortener:
    """Create or reuse a short URL per keyword; failures return None."""

    def __init__(
        self,
        config: ShortenerConfig,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 15.0,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        if client is None:
            kwargs: dict[str, object] = {"timeout": timeout, "headers": {"User-Agent": user_agent}}
            if transport:
                kwargs["transport"] = transport
            client = httpx.Client(**kwargs)
            self._owns_client = True
        else:
            self._owns_client = False
        self._client = client

    def _auth_params(self) -> dict[str, str]:
        if self._config.signature:
            return {"signature": self._config.signature}
        return {"username": self._config.username or "", "password": self._config.password or ""}

    def _call(self, params: dict[str, str]) -> dict[str, Any] | None:
        assert self._config.api_url
        data = {**params, **self._auth_params(), "format": "json"}
        try:
            response = self._client.post(self._config.api_url, data=data)
        except httpx.HTTPError as exc:
            LOGGER.warning("YOURLS request %s failed: %s", params.get("action"), exc)
            return None
        try:
            payload = response.json()
        except ValueError:
            LOGGER.warning("YOURLS returned non-JSON body for %s", params.get("action"))
            return None
        return payload if isinstance(payload, dict) else None

    def lookup(self, keyword: str) -> str | None:
        payload = self._call({"action": "expand", "shorturl": keyword})
        if payload and payload.get("longurl"):
            return payload.get("shorturl") or None
        return None

    def create_short_url(self, long_url: str, keyword: str) -> str | None:
        if not self._config.is_configured() or not long_url:
            return None

        keyword = slugify(keyword)
        if keyword:
            existing = self.lookup(keyword)
            if existing:
                LOGGER.debug("Reusing short URL %s for keyword %s", existing, keyword)
                return existing

        params = {"action": "shorturl", "url": long_url}
        if keyword:
            params["keyword"] = keyword
        payload = self._call(params)
        if not payload:
            return None
        short_url = payload.get("shorturl")
        if short_url:
            LOGGER.info("Created short URL %s", short_url)
            return str(short_url)

        LOGGER.warning("YOURLS did not return a short URL: %s", payload.get("message"))
        return None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


__all__ = ["YourlsShortener"]
