"""
Tests for the registry client: rate limiting, retries and pagination.
"""

import unittest
from datetime import date

import requests

from contract_fixtures import FakeClock, FakeResponse, FakeSession

from farol_analyzer.config import RegistryConfig
from farol_analyzer.download.downloader import (
    RateLimiter,
    RegistryClient,
    backoff_delay_ms,
    extract_records,
    parse_retry_after,
)
from farol_analyzer.download.orchestrator import CrawlerStats
from farol_analyzer.utils.result import RegistryErrorCode

FROM = date(2024, 1, 1)
TO = date(2024, 1, 31)


def make_client(responses, clock=None, **config):
    clock = clock or FakeClock()
    config.setdefault("rate_limit_ms", 0)
    session = FakeSession(responses, clock=clock)
    client = RegistryClient(
        RegistryConfig(**config),
        session=session,
        rate_limiter=RateLimiter(config["rate_limit_ms"], clock=clock, sleep=clock.sleep),
        sleep=clock.sleep,
    )
    return client, session, clock


class TestRateLimiter(unittest.TestCase):
    def test_consecutive_acquires_are_spaced(self):
        """Dispatch times are never closer than the minimum interval."""
        clock = FakeClock()
        limiter = RateLimiter(1000, clock=clock, sleep=clock.sleep)
        times = [limiter.acquire() for _ in range(5)]
        for earlier, later in zip(times, times[1:]):
            self.assertGreaterEqual(later - earlier, 1.0)

    def test_no_wait_after_interval_elapsed(self):
        clock = FakeClock()
        limiter = RateLimiter(1000, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        clock.now += 5
        limiter.acquire()
        self.assertEqual(clock.sleeps, [])

    def test_client_requests_are_spaced(self):
        """Requests made through the client respect the shared limiter."""
        client, session, _ = make_client(
            [FakeResponse(200, []) for _ in range(3)], rate_limit_ms=1000
        )
        for _ in range(3):
            self.assertTrue(client.fetch_page(FROM, TO).ok)
        times = [call["time"] for call in session.calls]
        for earlier, later in zip(times, times[1:]):
            self.assertGreaterEqual(later - earlier, 1.0)


class TestRetries(unittest.TestCase):
    def test_backoff_delay(self):
        self.assertEqual(backoff_delay_ms(0), 1000)
        self.assertEqual(backoff_delay_ms(1), 2000)
        self.assertEqual(backoff_delay_ms(4), 16000)
        self.assertEqual(backoff_delay_ms(5), 30000)

    def test_rate_limit_response_does_not_consume_attempt(self):
        """A 429 waits Retry-After seconds and repeats the same attempt."""
        client, session, clock = make_client(
            [FakeResponse(429, headers={"Retry-After": "5"}), FakeResponse(200, [{"a": 1}])],
            max_retries=0,
        )
        result = client.fetch_page(FROM, TO)
        self.assertTrue(result.ok)
        self.assertEqual(result.value, [{"a": 1}])
        self.assertEqual(clock.sleeps, [5.0])
        self.assertEqual(len(session.calls), 2)

    def test_rate_limit_default_wait(self):
        client, _, clock = make_client(
            [FakeResponse(429), FakeResponse(200, [])], rate_limit_wait_seconds=60
        )
        client.fetch_page(FROM, TO)
        self.assertEqual(clock.sleeps, [60])

    def test_persistent_rate_limit_gives_up(self):
        client, session, clock = make_client(
            [FakeResponse(429, headers={"Retry-After": "2"})] * 3, max_rate_limit_waits=2
        )
        result = client.fetch_page(FROM, TO)
        self.assertFalse(result.ok)
        self.assertEqual(result.error.code, RegistryErrorCode.RATE_LIMIT)
        self.assertTrue(result.error.retryable)
        self.assertEqual(clock.sleeps, [2.0, 2.0])
        self.assertEqual(len(session.calls), 3)

    def test_server_errors_retry_with_backoff(self):
        client, session, clock = make_client(
            [FakeResponse(500), FakeResponse(503), FakeResponse(200, [])], max_retries=3
        )
        result = client.fetch_page(FROM, TO)
        self.assertTrue(result.ok)
        self.assertEqual(clock.sleeps, [1.0, 2.0])
        self.assertEqual(len(session.calls), 3)

    def test_retries_exhausted(self):
        client, session, _ = make_client([FakeResponse(500)] * 3, max_retries=2)
        result = client.fetch_page(FROM, TO)
        self.assertFalse(result.ok)
        self.assertEqual(result.error.code, RegistryErrorCode.API_ERROR)
        self.assertTrue(result.error.retryable)
        self.assertEqual(len(session.calls), 3)

    def test_client_error_fails_immediately(self):
        client, session, clock = make_client([FakeResponse(404, text="not found")], max_retries=3)
        result = client.fetch_page(FROM, TO)
        self.assertFalse(result.ok)
        self.assertEqual(result.error.code, RegistryErrorCode.API_ERROR)
        self.assertFalse(result.error.retryable)
        self.assertEqual(result.error.details["status"], 404)
        self.assertEqual(len(session.calls), 1)
        self.assertEqual(clock.sleeps, [])

    def test_timeout_is_retried(self):
        client, _, _ = make_client([requests.Timeout("slow"), FakeResponse(200, [])], max_retries=1)
        self.assertTrue(client.fetch_page(FROM, TO).ok)

    def test_network_error(self):
        client, _, _ = make_client([requests.ConnectionError("refused")], max_retries=0)
        result = client.fetch_page(FROM, TO)
        self.assertEqual(result.error.code, RegistryErrorCode.NETWORK_ERROR)
        self.assertTrue(result.error.retryable)

    def test_invalid_json_is_retried(self):
        client, _, _ = make_client(
            [FakeResponse(200, json_error=True), FakeResponse(200, [])], max_retries=1
        )
        self.assertTrue(client.fetch_page(FROM, TO).ok)

    def test_timeout_error_code(self):
        client, _, _ = make_client([requests.Timeout("slow")], max_retries=0)
        self.assertEqual(client.fetch_page(FROM, TO).error.code, RegistryErrorCode.TIMEOUT)


class TestResponses(unittest.TestCase):
    def test_no_content_is_empty_page(self):
        client, _, _ = make_client([FakeResponse(204)])
        result = client.fetch_page(FROM, TO)
        self.assertTrue(result.ok)
        self.assertEqual(result.value, [])

    def test_both_response_shapes(self):
        self.assertEqual(extract_records([{"a": 1}]), [{"a": 1}])
        self.assertEqual(extract_records({"data": [{"a": 1}], "totalRegistros": 1}), [{"a": 1}])
        self.assertEqual(extract_records({"totalRegistros": 0, "paginaAtual": 1}), [])
        self.assertIsNone(extract_records({"foo": 1}))
        self.assertIsNone(extract_records("text"))

    def test_unexpected_shape_is_parse_error(self):
        client, _, _ = make_client([FakeResponse(200, {"foo": 1})])
        result = client.fetch_page(FROM, TO)
        self.assertEqual(result.error.code, RegistryErrorCode.PARSE_ERROR)

    def test_query_parameters(self):
        client, session, _ = make_client([FakeResponse(200, [])], page_size=50)
        client.fetch_page(FROM, TO, municipality_code="3550308", page=2, agency_cnpj="46395000000139")
        call = session.calls[0]
        self.assertTrue(call["url"].endswith("/contratos"))
        self.assertEqual(
            call["params"],
            {
                "dataInicial": "20240101",
                "dataFinal": "20240131",
                "pagina": 2,
                "tamanhoPagina": 50,
                "codigoMunicipio": "3550308",
                "cnpjOrgao": "46395000000139",
            },
        )
        self.assertEqual(call["timeout"], 30.0)

    def test_parse_retry_after(self):
        self.assertEqual(parse_retry_after("7", 60), 7.0)
        self.assertEqual(parse_retry_after(None, 60), 60)
        self.assertEqual(parse_retry_after("soon", 60), 60)


class TestPagination(unittest.TestCase):
    def test_stops_on_short_page(self):
        client, session, _ = make_client(
            [FakeResponse(200, [{"n": 1}, {"n": 2}]), FakeResponse(200, {"data": [{"n": 3}]})],
            page_size=2,
        )
        stats = CrawlerStats()
        result = client.fetch_all(FROM, TO, stats=stats)
        self.assertTrue(result.ok)
        self.assertEqual([r["n"] for r in result.value], [1, 2, 3])
        self.assertEqual([c["params"]["pagina"] for c in session.calls], [1, 2])
        self.assertEqual(stats.pages, 2)
        self.assertEqual(stats.total_found, 3)

    def test_page_failure_stops_iteration(self):
        client, _, _ = make_client(
            [FakeResponse(200, [{"n": 1}, {"n": 2}]), FakeResponse(400)], page_size=2
        )
        pages = list(client.iter_pages(FROM, TO))
        self.assertEqual(len(pages), 2)
        self.assertTrue(pages[0][1].ok)
        self.assertFalse(pages[1][1].ok)
        client2, _, _ = make_client([FakeResponse(200, [{"n": 1}]), FakeResponse(400)], page_size=1)
        self.assertFalse(client2.fetch_all(FROM, TO).ok)

    def test_max_pages(self):
        client, session, _ = make_client([FakeResponse(200, [{"n": i}]) for i in range(5)], page_size=1)
        pages = list(client.iter_pages(FROM, TO, max_pages=3))
        self.assertEqual(len(pages), 3)

    def test_contract_history_url(self):
        client, session, _ = make_client([FakeResponse(200, [{"sequencialHistorico": 1}])])
        result = client.fetch_contract_history("46395000000139", 2024, 123)
        self.assertTrue(result.ok)
        self.assertEqual(
            session.calls[0]["url"],
            "https://pncp.gov.br/api/pncp/v1/orgaos/46395000000139/contratos/2024/123/historico",
        )


if __name__ == "__main__":
    unittest.main()
