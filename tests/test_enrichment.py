import json
import random
import unittest
from collections import deque

import httpx

from couponsync.config import EnrichmentConfig
from couponsync.enrichment import (
    PENDING,
    ChatCompletionProvider,
    CompletionRequest,
    ContentEnricher,
    EnrichmentFailure,
    GenerationKind,
)
from couponsync.state import SyncStateStore

from tests.support import FakeClock, at, make_session_factory


def _completion(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": text}}]})


class ChatCompletionProviderTestCase(unittest.TestCase):
    def test_posts_chat_request(self) -> None:
        seen = deque()

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _completion("  Hello  ")

        provider = ChatCompletionProvider(
            EnrichmentConfig(api_key="sk-test", model="test-model"),
            transport=httpx.MockTransport(handler),
        )
        try:
            text = provider.complete(
                CompletionRequest(prompt="Write", max_tokens=80, temperature=0.7, system_message="Be brief")
            )
        finally:
            provider.close()

        self.assertEqual(text, "Hello")
        request = seen.popleft()
        self.assertEqual(request.url.path, "/v1/chat/completions")
        self.assertEqual(request.headers["Authorization"], "Bearer sk-test")
        body = json.loads(request.content)
        self.assertEqual(body["model"], "test-model")
        self.assertEqual([message["role"] for message in body["messages"]], ["system", "user"])
        self.assertEqual(body["max_tokens"], 80)

    def test_missing_key_and_bad_responses_raise(self) -> None:
        unconfigured = ChatCompletionProvider(
            EnrichmentConfig(),
            transport=httpx.MockTransport(lambda request: _completion("x")),
        )
        request = CompletionRequest(prompt="p", max_tokens=10, temperature=0.1)
        with self.assertRaises(EnrichmentFailure):
            unconfigured.complete(request)
        unconfigured.close()

        responses = deque(
            [
                httpx.Response(429, json={"error": "slow down"}),
                httpx.Response(200, json={"choices": []}),
                _completion("   "),
            ]
        )
        provider = ChatCompletionProvider(
            EnrichmentConfig(api_key="sk-test"),
            transport=httpx.MockTransport(lambda request: responses.popleft()),
        )
        try:
            for _ in range(3):
                with self.assertRaises(EnrichmentFailure):
                    provider.complete(request)
        finally:
            provider.close()


class ContentEnricherTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SyncStateStore(make_session_factory())
        self.clock = FakeClock(at(2))
        self.responses: deque = deque()
        self.requests: list[httpx.Request] = []
        self.config = EnrichmentConfig(api_key="sk-test")

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.responses.popleft()

        self.provider = ChatCompletionProvider(self.config, transport=httpx.MockTransport(handler))
        self.addCleanup(self.provider.close)
        self.enricher = ContentEnricher(
            self.provider,
            self.store,
            self.config,
            clock=self.clock,
            rng=random.Random(7),
        )

    def test_title_is_cleaned(self) -> None:
        self.responses.append(_completion('"Save 20% On Shoes"'))

        title = self.enricher.generate(GenerationKind.TITLE, {"description": "20% off shoes"})

        self.assertEqual(title, "Save 20% On Shoes")
        prompt = json.loads(self.requests[0].content)["messages"][-1]["content"]
        self.assertTrue(prompt.endswith("20% off shoes"))

    def test_terms_become_three_item_list(self) -> None:
        self.responses.append(_completion("1. online only\n2. one per customer"))

        terms = self.enricher.generate(GenerationKind.TERMS, {"terms": "Online only"})

        self.assertEqual(terms.count("<li>"), 3)
        self.assertIn("<li>Online only.</li>", terms)
        body = json.loads(self.requests[0].content)
        self.assertEqual(body["messages"][0]["role"], "system")
        self.assertEqual(body["temperature"], 0.4)

    def test_brand_description_prompt_names_brand(self) -> None:
        self.responses.append(_completion("<p>Great shop</p>"))

        description = self.enricher.generate(
            GenerationKind.BRAND_DESCRIPTION,
            {"brand_name": "Acme", "sector": "Shoes", "tagline": ""},
        )

        prompt = json.loads(self.requests[0].content)["messages"][-1]["content"]
        self.assertIn("About Acme", prompt)
        self.assertIn("Sector: Shoes", prompt)
        self.assertNotIn("Tagline", prompt)
        self.assertIn("#acme-discountcodes", description)

    def test_failure_returns_pending_and_schedules_retry_in_an_hour(self) -> None:
        self.responses.append(httpx.Response(500))

        result = self.enricher.generate(GenerationKind.TITLE, {"description": "20% off shoes"})

        self.assertIs(result, PENDING)
        self.assertFalse(result)
        retries = self.store.pending_retries()
        self.assertEqual(len(retries), 1)
        self.assertEqual(retries[0].kind, "title")
        self.assertEqual(retries[0].not_before, at(3))
        self.assertEqual(retries[0].payload, {"inputs": {"description": "20% off shoes"}})

    def test_sweep_recovers_text_for_the_next_identical_request(self) -> None:
        inputs = {"description": "20% off shoes"}
        self.responses.append(httpx.Response(500))
        self.enricher.generate(GenerationKind.TITLE, inputs)

        self.assertEqual(self.enricher.sweep_due_retries().consumed, 0)

        self.clock.advance(hours=1)
        self.responses.append(_completion("Recovered Title"))
        result = self.enricher.sweep_due_retries()

        self.assertEqual((result.consumed, result.recovered, result.failed), (1, 1, 0))
        self.assertEqual(self.enricher.sweep_due_retries().consumed, 0)

        request_count = len(self.requests)
        self.assertEqual(self.enricher.generate(GenerationKind.TITLE, inputs), "Recovered Title")
        self.assertEqual(len(self.requests), request_count)

    def test_failed_retry_is_dropped(self) -> None:
        self.responses.append(httpx.Response(500))
        self.enricher.generate(GenerationKind.WHY_WE_LOVE, {"brand_name": "Acme"})
        self.clock.advance(hours=2)
        self.responses.append(httpx.Response(500))

        result = self.enricher.sweep_due_retries()

        self.assertEqual((result.consumed, result.failed), (1, 1))
        self.assertEqual(self.store.pending_retries(), [])

    def test_repeated_failures_share_one_retry_and_one_recovered_text(self) -> None:
        inputs = {"brand_name": "Acme"}
        for _ in range(5):
            self.responses.append(httpx.Response(500))
            self.assertIs(self.enricher.generate(GenerationKind.WHY_WE_LOVE, inputs), PENDING)

        self.assertEqual(len(self.store.pending_retries()), 1)

        self.clock.advance(hours=1)
        self.responses.append(_completion("Great Prices, Fast Shipping, Friendly Staff"))
        result = self.enricher.sweep_due_retries()

        self.assertEqual((result.consumed, result.recovered), (1, 1))
        self.assertEqual(self.store.recovered_text_count(), 1)
        self.assertIn("Great Prices", self.enricher.generate(GenerationKind.WHY_WE_LOVE, inputs))
        self.assertEqual(self.store.recovered_text_count(), 0)

    def test_unused_recovered_text_expires(self) -> None:
        self.responses.append(httpx.Response(500))
        self.enricher.generate(GenerationKind.TITLE, {"description": "20% off shoes"})
        self.clock.advance(hours=1)
        self.responses.append(_completion("Recovered Title"))
        self.enricher.sweep_due_retries()

        self.clock.advance(days=6)
        self.assertEqual(self.enricher.sweep_due_retries().expired, 0)
        self.clock.advance(days=2)
        result = self.enricher.sweep_due_retries()

        self.assertEqual(result.expired, 1)
        self.assertEqual(self.store.recovered_text_count(), 0)

    def test_fallback_terms(self) -> None:
        self.assertEqual(
            self.enricher.fallback_terms(),
            "<ul><li>See full terms on website.</li>\n<li>Terms and conditions apply.</li></ul>",
        )


if __name__ == "__main__":
    unittest.main()
