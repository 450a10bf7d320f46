"""Fetcher for the AddRevenue advertiser and campaign listings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..config import AddRevenueConfig, DEFAULT_USER_AGENT
from ..http_client import JsonApiClient, TransientUpstreamError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AddRevenueSnapshot:
    advertisers: list[dict[str, Any]] = field(default_factory=list)
    campaigns: list[dict[str, Any]] = field(default_factory=list)


class AddRevenueFetcher:
    """Read-only client for the AddRevenue publisher API."""

    def __init__(
        self,
        config: AddRevenueConfig,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        api: JsonApiClient | None = None,
    ) -> None:
        self._config = config
        self._api = api or JsonApiClient(
            config.base_url,
            config.api_token,
            user_agent=user_agent,
            timeout=timeout,
            transport=transport,
        )

    def fetch(self) -> AddRevenueSnapshot:
        if not self._config.is_configured():
            LOGGER.warning("AddRevenue API token not configured; skipping network A")
            return AddRevenueSnapshot()
        return AddRevenueSnapshot(
            advertisers=self.fetch_advertisers(),
            campaigns=self.fetch_campaigns(),
        )

    def fetch_advertisers(self) -> list[dict[str, Any]]:
        return self._results("advertisers")

    def fetch_campaigns(self) -> list[dict[str, Any]]:
        return self._results("campaigns")

    def test_connection(self) -> bool:
        try:
            payload = self._api.get_json("advertisers", params={"channelId": self._config.channel_id})
        except TransientUpstreamError as exc:
            LOGGER.warning("AddRevenue connection test failed: %s", exc)
            return False
        return isinstance(payload, dict) and "results" in payload

    def _results(self, endpoint: str) -> list[dict[str, Any]]:
        try:
            payload = self._api.get_json(endpoint, params={"channelId": self._config.channel_id})
        except TransientUpstreamError as exc:
            LOGGER.warning("AddRevenue %s request failed: %s", endpoint, exc)
            return []

        if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
            LOGGER.warning("AddRevenue %s response has no 'results' array", endpoint)
            return []

        results = [entry for entry in payload["results"] if isinstance(entry, dict)]
        LOGGER.info("Fetched %d AddRevenue %s", len(results), endpoint)
        return results

    def close(self) -> None:
        self._api.close()


__all__ = ["AddRevenueFetcher", "AddRevenueSnapshot"]
