import asyncio
import time
import unittest

import httpx
from tenacity import wait_none

from tests.base import TempDirTestCase
from vcopilot.auth.session import TOKEN_EXCHANGE_URL, SessionExchanger, compute_expiry
from vcopilot.errors import NoSubscriptionError, SessionExchangeError
from vcopilot.models import LongLivedCredential, SessionCredential

GITHUB_TOKEN = LongLivedCredential(token="tok_abc")


class _Exchange:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        response = self._responses[min(len(self.calls), len(self._responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


class SessionExchangerTests(TempDirTestCase):
    def _exchanger(self, exchange: _Exchange) -> SessionExchanger:
        client = httpx.AsyncClient(transport=httpx.MockTransport(exchange.handler))
        return SessionExchanger(self._store, client=client, wait=wait_none())

    def test_exchange_sends_token_and_persists_session(self) -> None:
        exchange = _Exchange([
            httpx.Response(200, json={
                "token": "sess_1",
                "refresh_in": 1800,
                "endpoints": {"api": "https://api.individual.githubcopilot.com"},
            })
        ])

        session = asyncio.run(self._exchanger(exchange).ensure_session(GITHUB_TOKEN))

        self.assertEqual("sess_1", session.token)
        self.assertEqual("https://api.individual.githubcopilot.com", session.endpoint)
        self.assertEqual(TOKEN_EXCHANGE_URL, str(exchange.calls[0].url))
        self.assertEqual("token tok_abc", exchange.calls[0].headers["Authorization"])
        self.assertIn("Editor-Version", exchange.calls[0].headers)
        self.assertEqual("sess_1", self._store.read_session().token)

    def test_fresh_cached_session_skips_network(self) -> None:
        self._store.write_session(SessionCredential(token="cached", expires_at=time.time() + 3600))
        exchange = _Exchange([httpx.Response(500)])

        session = asyncio.run(self._exchanger(exchange).ensure_session(GITHUB_TOKEN))

        self.assertEqual("cached", session.token)
        self.assertEqual([], exchange.calls)

    def test_session_inside_buffer_is_refreshed(self) -> None:
        self._store.write_session(SessionCredential(token="stale", expires_at=time.time() + 60))
        exchange = _Exchange([httpx.Response(200, json={"token": "fresh", "refresh_in": 1500})])

        session = asyncio.run(self._exchanger(exchange).ensure_session(GITHUB_TOKEN))

        self.assertEqual("fresh", session.token)
        self.assertEqual(1, len(exchange.calls))

    def test_in_memory_session_reused_until_invalidated(self) -> None:
        exchange = _Exchange([
            httpx.Response(200, json={"token": "one", "refresh_in": 1800}),
            httpx.Response(200, json={"token": "two", "refresh_in": 1800}),
        ])
        exchanger = self._exchanger(exchange)

        async def scenario():
            first = await exchanger.ensure_session(GITHUB_TOKEN)
            again = await exchanger.ensure_session(GITHUB_TOKEN)
            exchanger.invalidate()
            third = await exchanger.ensure_session(GITHUB_TOKEN)
            return first, again, third

        first, again, third = asyncio.run(scenario())

        self.assertEqual(("one", "one", "two"), (first.token, again.token, third.token))
        self.assertEqual(2, len(exchange.calls))

    def test_404_is_no_subscription_and_not_retried(self) -> None:
        exchange = _Exchange([httpx.Response(404, json={"message": "Not Found"})])

        with self.assertRaises(NoSubscriptionError):
            asyncio.run(self._exchanger(exchange).ensure_session(GITHUB_TOKEN))

        self.assertEqual(1, len(exchange.calls))

    def test_transient_failures_are_retried(self) -> None:
        exchange = _Exchange([
            httpx.ConnectError("boom"),
            httpx.Response(502, text="bad gateway"),
            httpx.Response(200, json={"token": "sess_ok", "refresh_in": 1800}),
        ])

        session = asyncio.run(self._exchanger(exchange).ensure_session(GITHUB_TOKEN))

        self.assertEqual("sess_ok", session.token)
        self.assertEqual(3, len(exchange.calls))

    def test_three_failures_raise_wrapped_error(self) -> None:
        exchange = _Exchange([httpx.Response(500, text="down")])

        with self.assertRaises(SessionExchangeError) as ctx:
            asyncio.run(self._exchanger(exchange).ensure_session(GITHUB_TOKEN))

        self.assertEqual(3, len(exchange.calls))
        self.assertTrue(str(ctx.exception).startswith("Session exchange failed"))
        self.assertIn("HTTP 500", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, SessionExchangeError)


class ComputeExpiryTests(unittest.TestCase):
    def test_refresh_in_wins(self) -> None:
        self.assertEqual(1000 + 1800, compute_expiry({"refresh_in": 1800, "expires_at": 5}, now=1000))

    def test_expires_at_seconds_and_milliseconds(self) -> None:
        self.assertEqual(1_900_000_000, compute_expiry({"expires_at": 1_900_000_000}, now=0))
        self.assertEqual(1_900_000_000, compute_expiry({"expires_at": 1_900_000_000_000}, now=0))

    def test_expires_at_iso(self) -> None:
        self.assertEqual(86400.0, compute_expiry({"expires_at": "1970-01-02T00:00:00Z"}, now=5))

    def test_default_thirty_minutes(self) -> None:
        self.assertEqual(100 + 30 * 60, compute_expiry({}, now=100))
