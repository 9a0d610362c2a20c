import json
from datetime import datetime, timezone
from typing import List
from unittest import IsolatedAsyncioTestCase

import httpx

from common.errors import ConfigurationError, RateLimitedError, StaleReferenceError, TransientError
from common.google_auth import get_access_token
from common.google_calendar import GoogleCalendarClient


class TokenEndpoint:
    def __init__(self, status: int = 200):
        self.status = status
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": f"token-{self.calls}", "expires_in": 3599})


def make_client(handler, token_endpoint: TokenEndpoint) -> GoogleCalendarClient:
    return GoogleCalendarClient(
        "client-id",
        "client-secret",
        "refresh-token",
        transport=httpx.MockTransport(handler),
        auth_transport=httpx.MockTransport(token_endpoint),
    )


class GoogleCalendarClientTests(IsolatedAsyncioTestCase):
    async def test_list_events_follows_pages(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.params.get("pageToken") == "page-2":
                return httpx.Response(200, json={"items": [{"id": "g2"}]})
            return httpx.Response(200, json={"items": [{"id": "g1"}], "nextPageToken": "page-2"})

        client = make_client(handler, TokenEndpoint())
        try:
            events = await client.list_events(
                "primary",
                time_min=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
                time_max=datetime(2026, 4, 2, 9, 0, tzinfo=timezone.utc),
            )
        finally:
            await client.aclose()

        self.assertEqual([e["id"] for e in events], ["g1", "g2"])
        self.assertEqual(len(requests), 2)
        params = requests[0].url.params
        self.assertEqual(params["timeMin"], "2026-03-02T09:00:00Z")
        self.assertEqual(params["timeMax"], "2026-04-02T09:00:00Z")
        self.assertEqual(params["orderBy"], "startTime")
        self.assertEqual(params["singleEvents"], "true")
        self.assertEqual(requests[0].headers["Authorization"], "Bearer token-1")

    async def test_find_by_property_filters_on_private_extended_property(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"items": [{"id": "g7"}]})

        client = make_client(handler, TokenEndpoint())
        try:
            events = await client.find_events_by_property("primary", "discordEventId", "d-5")
        finally:
            await client.aclose()

        self.assertEqual(events, [{"id": "g7"}])
        self.assertEqual(requests[0].url.path, "/calendar/v3/calendars/primary/events")
        self.assertEqual(requests[0].url.params["privateExtendedProperty"], "discordEventId=d-5")

    async def test_missing_event_raises_stale_reference(self) -> None:
        client = make_client(lambda request: httpx.Response(404, json={}), TokenEndpoint())
        try:
            with self.assertRaises(StaleReferenceError) as caught:
                await client.get_event("primary", "g-missing")
        finally:
            await client.aclose()

        self.assertEqual(caught.exception.entity_id, "g-missing")

    async def test_deleted_event_gone_raises_stale_reference(self) -> None:
        client = make_client(lambda request: httpx.Response(410, json={}), TokenEndpoint())
        try:
            with self.assertRaises(StaleReferenceError):
                await client.delete_event("primary", "g1")
        finally:
            await client.aclose()

    async def test_throttling_raises_rate_limited(self) -> None:
        client = make_client(
            lambda request: httpx.Response(429, headers={"Retry-After": "7"}, json={}),
            TokenEndpoint(),
        )
        try:
            with self.assertRaises(RateLimitedError) as caught:
                await client.list_events("primary")
        finally:
            await client.aclose()

        self.assertEqual(caught.exception.retry_after, 7.0)

    async def test_quota_403_raises_rate_limited(self) -> None:
        body = {"error": {"errors": [{"reason": "rateLimitExceeded"}]}}
        client = make_client(lambda request: httpx.Response(403, json=body), TokenEndpoint())
        try:
            with self.assertRaises(RateLimitedError):
                await client.insert_event("primary", {"summary": "x"})
        finally:
            await client.aclose()

    async def test_permission_403_is_a_plain_http_error(self) -> None:
        body = {"error": {"errors": [{"reason": "forbidden"}]}}
        client = make_client(lambda request: httpx.Response(403, json=body), TokenEndpoint())
        try:
            with self.assertRaises(httpx.HTTPStatusError):
                await client.insert_event("primary", {"summary": "x"})
        finally:
            await client.aclose()

    async def test_server_error_raises_transient(self) -> None:
        client = make_client(lambda request: httpx.Response(503, json={}), TokenEndpoint())
        try:
            with self.assertRaises(TransientError):
                await client.list_events("primary")
        finally:
            await client.aclose()

    async def test_expired_token_is_refreshed_once(self) -> None:
        tokens = TokenEndpoint()
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Authorization"])
            if len(seen) == 1:
                return httpx.Response(401, json={})
            return httpx.Response(200, json={"id": "g1"})

        client = make_client(handler, tokens)
        try:
            event = await client.get_event("primary", "g1")
        finally:
            await client.aclose()

        self.assertEqual(event, {"id": "g1"})
        self.assertEqual(seen, ["Bearer token-1", "Bearer token-2"])
        self.assertEqual(tokens.calls, 2)

    async def test_insert_and_update_send_json_bodies(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "g1"})

        client = make_client(handler, TokenEndpoint())
        try:
            await client.insert_event("team", {"summary": "Standup"})
            await client.update_event("team", "g1", {"summary": "Retro"})
        finally:
            await client.aclose()

        self.assertEqual(requests[0].method, "POST")
        self.assertEqual(requests[0].url.path, "/calendar/v3/calendars/team/events")
        self.assertEqual(json.loads(requests[0].content), {"summary": "Standup"})
        self.assertEqual(requests[1].method, "PATCH")
        self.assertEqual(requests[1].url.path, "/calendar/v3/calendars/team/events/g1")
        self.assertEqual(json.loads(requests[1].content), {"summary": "Retro"})


class GoogleAuthTests(IsolatedAsyncioTestCase):
    async def test_rejected_credentials_raise_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            await get_access_token("id", "secret", "bad-refresh", transport=httpx.MockTransport(TokenEndpoint(400)))

    async def test_missing_credentials_raise_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            await get_access_token("id", None, "refresh")

    async def test_authenticate_stores_token(self) -> None:
        client = make_client(lambda request: httpx.Response(200, json={}), TokenEndpoint())

        self.assertFalse(client.authenticated)
        await client.authenticate()
        self.assertTrue(client.authenticated)
        self.assertEqual(client.access_token, "token-1")
