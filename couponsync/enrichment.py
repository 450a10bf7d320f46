"""Generative text enrichment with a one-shot deferred retry on failure."""

from __future__ import annotations

import hashlib
import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Mapping

import httpx

from .config import DEFAULT_USER_AGENT, EnrichmentConfig
from .formatting import (
    clean_title,
    extract_phrases,
    format_brand_description,
    render_terms,
    render_why_we_love,
    split_terms,
)
from .state import SyncStateStore
from .text import clean_text

LOGGER = logging.getLogger(__name__)

TERMS_SYSTEM_MESSAGE = (
    "You are a coupon terms creator. Your task is to create concise, clear, and varied bullet "
    "points for coupon terms. Always follow the given instructions exactly. Ensure each point "
    "is unique and complete."
)


class EnrichmentFailure(RuntimeError):
    """Raised when the text provider cannot produce a usable completion."""


class GenerationKind(str, Enum):
    TITLE = "title"
    TERMS = "terms"
    BRAND_DESCRIPTION = "brand_description"
    WHY_WE_LOVE = "why_we_love"


class _Pending:
    """Marker returned when generation was deferred to the retry schedule."""

    _instance: "_Pending | None" = None

    def __new__(cls) -> "_Pending":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "PENDING"


PENDING = _Pending()


@dataclass(slots=True)
class CompletionRequest:
    prompt: str
    max_tokens: int
    temperature: float
    system_message: str | None = None


# kind -> (max_tokens, temperature, system message)
_KIND_PARAMETERS: dict[GenerationKind, tuple[int, float, str | None]] = {
    GenerationKind.TITLE: (80, 0.7, None),
    GenerationKind.TERMS: (150, 0.4, TERMS_SYSTEM_MESSAGE),
    GenerationKind.BRAND_DESCRIPTION: (1000, 0.7, None),
    GenerationKind.WHY_WE_LOVE: (500, 0.7, None),
}


class ChatCompletionProvider:
    """Minimal client for an OpenAI-compatible ``chat/completions`` endpoint."""

    def __init__(
        self,
        config: EnrichmentConfig,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 60.0,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._user_agent = user_agent
        self._timeout = timeout
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None

    def _build_client(self) -> httpx.Client:
        headers = {"User-Agent": self._user_agent, "Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        kwargs: dict[str, object] = {
            "base_url": self._config.base_url,
            "timeout": self._timeout,
            "headers": headers,
        }
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def complete(self, request: CompletionRequest) -> str:
        if not self._config.api_key:
            raise EnrichmentFailure("Enrichment API key is not configured")

        messages = []
        if request.system_message:
            messages.append({"role": "system", "content": request.system_message})
        messages.append({"role": "user", "content": request.prompt})
        body = {
            "model": self._config.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }

        try:
            response = self._client.post("chat/completions", json=body)
        except httpx.HTTPError as exc:
            raise EnrichmentFailure(str(exc)) from exc

        if response.status_code != httpx.codes.OK:
            raise EnrichmentFailure(f"Provider returned status {response.status_code}")

        try:
            payload = response.json()
            content = payload["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise EnrichmentFailure(f"Unexpected provider response: {exc}") from exc

        text = str(content or "").strip()
        if not text:
            raise EnrichmentFailure("Provider returned empty content")
        return text

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def input_key(kind: GenerationKind, inputs: Mapping[str, str]) -> str:
    encoded = json.dumps({"kind": kind.value, "inputs": dict(inputs)}, sort_keys=True)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class RetrySweepResult:
    consumed: int = 0
    recovered: int = 0
    failed: int = 0
    expired: int = 0


class ContentEnricher:
    """Turn inputs into finished text, deferring failed calls by ``retry_delay_seconds``."""

    def __init__(
        self,
        provider: ChatCompletionProvider,
        store: SyncStateStore,
        config: EnrichmentConfig,
        *,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rng = rng or random.Random()

    def build_request(self, kind: GenerationKind, inputs: Mapping[str, str]) -> CompletionRequest:
        prompts = self._config.prompts
        max_tokens, temperature, system_message = _KIND_PARAMETERS[kind]
        if kind is GenerationKind.TITLE:
            prompt = f"{prompts.title} {clean_text(inputs.get('description'))}"
        elif kind is GenerationKind.TERMS:
            prompt = f"{prompts.terms} {clean_text(inputs.get('terms'))}"
        elif kind is GenerationKind.BRAND_DESCRIPTION:
            brand_name = clean_text(inputs.get("brand_name"))
            context = [f"Brand Name: {brand_name}"]
            if inputs.get("sector"):
                context.append(f"Sector: {clean_text(inputs['sector'])}")
            if inputs.get("tagline"):
                context.append(f"Tagline: {clean_text(inputs['tagline'])}")
            template = prompts.brand_description.replace("[BRAND_NAME]", brand_name)
            prompt = template + "\n\nContext:\n" + "\n".join(context)
        elif kind is GenerationKind.WHY_WE_LOVE:
            prompt = f"{prompts.why_we_love}\n\nBrand: {clean_text(inputs.get('brand_name'))}"
        else:
            raise ValueError(f"Unsupported generation kind {kind!r}")
        return CompletionRequest(
            prompt=prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            system_message=system_message,
        )

    def post_process(self, kind: GenerationKind, raw: str, inputs: Mapping[str, str]) -> str:
        if kind is GenerationKind.TITLE:
            return clean_title(raw)
        if kind is GenerationKind.TERMS:
            return render_terms(split_terms(raw))
        if kind is GenerationKind.BRAND_DESCRIPTION:
            return format_brand_description(raw, clean_text(inputs.get("brand_name")))
        if kind is GenerationKind.WHY_WE_LOVE:
            return render_why_we_love(extract_phrases(raw), rng=self._rng)
        raise ValueError(f"Unsupported generation kind {kind!r}")

    def fallback_terms(self) -> str:
        return render_terms(self._config.fallback_terms)

    def _complete(self, kind: GenerationKind, inputs: Mapping[str, str]) -> str:
        raw = self._provider.complete(self.build_request(kind, inputs))
        text = self.post_process(kind, raw, inputs)
        if not text:
            raise EnrichmentFailure(f"Post-processing left no {kind.value} text")
        return text

    def generate(self, kind: GenerationKind, inputs: Mapping[str, str]) -> str | _Pending:
        key = input_key(kind, inputs)
        recovered = self._store.pop_recovered_text(kind.value, key)
        if recovered:
            LOGGER.info("Using %s recovered by an earlier retry", kind.value)
            return recovered

        try:
            return self._complete(kind, inputs)
        except EnrichmentFailure as exc:
            not_before = self._clock() + timedelta(seconds=self._config.retry_delay_seconds)
            scheduled = self._store.add_retry(
                kind.value, {"inputs": dict(inputs)}, not_before, input_key=key
            )
            if scheduled is None:
                LOGGER.warning("%s generation failed (%s); a retry is already scheduled", kind.value, exc)
            else:
                LOGGER.warning(
                    "%s generation failed (%s); retry scheduled for %s",
                    kind.value,
                    exc,
                    not_before.isoformat(),
                )
            return PENDING

    def sweep_due_retries(self, now: datetime | None = None, *, limit: int = 50) -> RetrySweepResult:
        """Consume every due retry entry once; failures are dropped, not rescheduled.

        Recovered texts older than ``recovered_text_ttl_seconds`` are dropped first.
        """

        now = now or self._clock()
        result = RetrySweepResult()
        ttl = timedelta(seconds=self._config.recovered_text_ttl_seconds)
        result.expired = self._store.purge_recovered_texts(now - ttl)
        if result.expired:
            LOGGER.info("Dropped %d unused recovered texts", result.expired)

        for entry in self._store.claim_due_retries(now, limit=limit):
            result.consumed += 1
            try:
                kind = GenerationKind(entry.kind)
            except ValueError:
                LOGGER.warning("Dropping retry %s with unknown kind %r", entry.id, entry.kind)
                result.failed += 1
                continue

            inputs = {str(k): str(v) for k, v in (entry.payload.get("inputs") or {}).items()}
            try:
                text = self._complete(kind, inputs)
            except EnrichmentFailure as exc:
                LOGGER.warning("Retry %s for %s failed again; dropping: %s", entry.id, kind.value, exc)
                result.failed += 1
                continue

            self._store.store_recovered_text(kind.value, input_key(kind, inputs), text, recovered_at=now)
            result.recovered += 1
            LOGGER.info("Retry %s recovered %s", entry.id, kind.value)
        return result


__all__ = [
    "PENDING",
    "ChatCompletionProvider",
    "CompletionRequest",
    "ContentEnricher",
    "EnrichmentFailure",
    "GenerationKind",
    "RetrySweepResult",
    "TERMS_SYSTEM_MESSAGE",
    "input_key",
]
