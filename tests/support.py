"""Shared fixtures: in-memory database, fake clock and a fake upstream API."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from couponsync.config import SyncConfig
from couponsync.pipeline import build_pipeline
from couponsync.rate_limit import RateLimiter
from models import Base


def make_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


def at(hour: int, minute: int = 0, *, day: int = 1) -> datetime:
    return datetime(2024, 5, day, hour, minute, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.brands: list[tuple[str, str]] = []
        self.offers: list[tuple[str, str, str]] = []
        self.failures: list[str] = []

    def brand_created(self, *, name: str, brand_id: str) -> None:
        self.brands.append((name, brand_id))

    def offer_created(self, *, title: str, brand_name: str, external_id: str) -> None:
        self.offers.append((title, brand_name, external_id))

    def run_failed(self, *, message: str) -> None:
        self.failures.append(message)


class RecordingScheduler:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def schedule_next(self, *, run_id: str, delay_seconds: float, manual: bool) -> None:
        self.calls.append({"run_id": run_id, "delay_seconds": delay_seconds, "manual": manual})


def advertiser(advertiser_id: int = 11, name: str = "Acme") -> dict[str, Any]:
    return {
        "id": advertiser_id,
        "featured": True,
        "logoImageFilename": f"https://cdn.example.com/{advertiser_id}.png",
        "relation": {"trackingLink": f"https://track.example.com/adv/{advertiser_id}"},
        "markets": {"SE": {"displayName": name, "url": f"https://{name.lower()}.example.com"}},
    }


def campaign(campaign_id: int = 501, name: str = "Acme", **overrides: Any) -> dict[str, Any]:
    record = {
        "id": campaign_id,
        "advertiserName": name,
        "description": f"20% off everything, offer {campaign_id}",
        "discountCode": f"SAVE{campaign_id}",
        "trackingLink": f"https://track.example.com/c/{campaign_id}",
        "validTo": "2024-12-31T23:59:59",
        "terms": "Valid online only. One use per customer.",
        "markets": {"SE": {}},
    }
    record.update(overrides)
    return record


def promotion(promotion_id: int = 9001, advertiser_id: int = 77, name: str = "Nordic Gear") -> dict[str, Any]:
    return {
        "promotionId": promotion_id,
        "type": "voucher",
        "description": "Free shipping on orders over 500 SEK",
        "voucher": {"code": "SHIPFREE"},
        "urlTracking": f"https://awin.example.com/p/{promotion_id}",
        "endDate": "2024-11-30",
        "terms": "",
        "advertiser": {"id": advertiser_id, "name": name},
        "regions": {"all": False, "list": [{"code": "SE"}]},
    }


TITLE_TEXT = '"Get 20% Off Everything"'
TERMS_TEXT = "- Valid online only\n- One use per customer\n- Cannot be combined with other offers"
BRAND_TEXT = "<h4>About</h4><p>A trusted shop.</p><script>alert(1)</script>"
WHY_TEXT = "Fast Delivery, Secure Payment, Premium Quality"


def completion_kind(prompt: str) -> str:
    if "coupon title" in prompt:
        return "title"
    if "terms and conditions" in prompt:
        return "terms"
    if "brand description" in prompt:
        return "brand_description"
    return "why_we_love"


class FakeUpstream:
    """httpx MockTransport handler standing in for every remote API."""

    def __init__(
        self,
        *,
        advertisers: list[dict] | None = None,
        campaigns: list[dict] | None = None,
        promotions: list[dict] | None = None,
        programmes: dict[str, dict] | None = None,
    ) -> None:
        self.advertisers = advertisers or []
        self.campaigns = campaigns or []
        self.promotions = promotions or []
        self.programmes = programmes or {}
        self.failing_kinds: set[str] = set()
        self.requests: list[httpx.Request] = []
        self.texts = {
            "title": TITLE_TEXT,
            "terms": TERMS_TEXT,
            "brand_description": BRAND_TEXT,
            "why_we_love": WHY_TEXT,
        }

    def hosts(self) -> list[str]:
        return [request.url.host for request in self.requests]

    def completions(self, kind: str | None = None) -> list[httpx.Request]:
        found = []
        for request in self.requests:
            if request.url.host != "api.openai.com":
                continue
            prompt = json.loads(request.content)["messages"][-1]["content"]
            if kind is None or completion_kind(prompt) == kind:
                found.append(request)
        return found

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path

        if host == "addrevenue.io":
            if path.endswith("/advertisers"):
                return httpx.Response(200, json={"results": self.advertisers})
            if path.endswith("/campaigns"):
                return httpx.Response(200, json={"results": self.campaigns})

        if host == "api.awin.com":
            if path.endswith("/promotions/"):
                return httpx.Response(200, json={"data": self.promotions})
            if path.endswith("/programmedetails"):
                info = self.programmes.get(request.url.params.get("advertiserId", ""))
                if info is None:
                    return httpx.Response(404, json={"error": "unknown advertiser"})
                return httpx.Response(200, json={"programmeInfo": info})

        if host == "api.openai.com":
            prompt = json.loads(request.content)["messages"][-1]["content"]
            kind = completion_kind(prompt)
            if kind in self.failing_kinds:
                return httpx.Response(503, json={"error": {"message": "overloaded"}})
            return httpx.Response(200, json={"choices": [{"message": {"content": self.texts[kind]}}]})

        return httpx.Response(404)


def make_config(log_dir: Path) -> SyncConfig:
    config = SyncConfig(log_dir=log_dir)
    config.addrevenue.api_token = "ar-token"
    config.awin.api_token = "awin-token"
    config.awin.publisher_id = "123"
    config.enrichment.api_key = "sk-test"
    config.schedule.batch_size = 10
    return config


def make_pipeline(upstream: FakeUpstream, clock: FakeClock, log_dir: Path, *, config: SyncConfig | None = None):
    config = config or make_config(log_dir)
    session_factory = make_session_factory()
    scheduler = RecordingScheduler()
    notifier = RecordingNotifier()
    limiter = RateLimiter(config.awin.rate_limit, time_source=lambda: 0.0, sleep=lambda _seconds: None)
    pipeline = build_pipeline(
        config,
        session_factory,
        scheduler,
        transport=httpx.MockTransport(upstream),
        notifier=notifier,
        clock=clock,
        rate_limiter=limiter,
    )
    return pipeline, scheduler, notifier
