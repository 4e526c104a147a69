"""Tests for AirtableClient paging, retries and error mapping (httpx.MockTransport)."""
from datetime import datetime, timezone

import httpx
import pytest

from hackportal.airtable.client import (
    AirtableClient,
    build_since_formula,
    parse_airtable_timestamp,
)
from hackportal.sync.errors import SourceUnavailable


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _page(ids, offset=None):
    body = {
        "records": [
            {"id": rid, "createdTime": "2025-01-02T03:04:05.000Z", "fields": {"event_name": rid}}
            for rid in ids
        ]
    }
    if offset:
        body["offset"] = offset
    return body


def _client(handler, sleep=None, max_retries=3, rng=lambda: 0.5):
    return AirtableClient(
        "key-123",
        "appBASE",
        api_url="https://airtable.test/v0",
        page_size=2,
        max_retries=max_retries,
        backoff_base_seconds=1.0,
        backoff_max_seconds=8.0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleep or RecordingSleep(),
        rng=rng,
    )


async def _collect(client, table="events", **kwargs):
    return [r async for r in client.fetch_all(table, **kwargs)]


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_follows_offset_until_absent(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            offset = request.url.params.get("offset")
            if offset is None:
                return httpx.Response(200, json=_page(["rec1", "rec2"], offset="o1"))
            if offset == "o1":
                return httpx.Response(200, json=_page(["rec3", "rec4"], offset="o2"))
            return httpx.Response(200, json=_page(["rec5"]))

        async with _client(handler) as client:
            records = await _collect(client)

        assert [r.external_id for r in records] == ["rec1", "rec2", "rec3", "rec4", "rec5"]
        assert len(seen) == 3
        assert seen[0].url.path == "/v0/appBASE/events"
        assert seen[0].url.params["pageSize"] == "2"
        assert seen[0].headers["Authorization"] == "Bearer key-123"
        assert records[0].created_time == datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_empty_table(self):
        async with _client(lambda request: httpx.Response(200, json={"records": []})) as client:
            assert await _collect(client) == []

    @pytest.mark.asyncio
    async def test_since_adds_formula_and_last_modified(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"records": [
                {"id": "rec1", "fields": {"last_modified": "2025-03-01T10:00:00.000Z"}},
            ]})

        since = datetime(2025, 3, 1, 9, 30)
        async with _client(handler) as client:
            records = await _collect(client, since=since, last_modified_field="last_modified")

        formula = seen[0].url.params["filterByFormula"]
        assert "IS_AFTER({last_modified}, DATETIME_PARSE('2025-03-01T09:30:00Z'))" in formula
        assert records[0].last_modified == datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_since_ignored_without_last_modified_field(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"records": []})

        async with _client(handler) as client:
            await _collect(client, since=datetime(2025, 3, 1))
        assert "filterByFormula" not in seen[0].url.params

    @pytest.mark.asyncio
    async def test_record_without_id_is_source_error(self):
        handler = lambda request: httpx.Response(200, json={"records": [{"fields": {}}]})
        async with _client(handler) as client:
            with pytest.raises(SourceUnavailable):
                await _collect(client)


class TestRetries:
    @pytest.mark.asyncio
    async def test_429_then_success(self):
        responses = iter([
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json=_page(["rec1"])),
        ])
        sleep = RecordingSleep()
        async with _client(lambda request: next(responses), sleep=sleep) as client:
            records = await _collect(client)
        assert [r.external_id for r in records] == ["rec1"]
        assert sleep.delays == [2.0]

    @pytest.mark.asyncio
    async def test_5xx_backoff_uses_full_jitter(self):
        responses = iter([
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json=_page(["rec1"])),
        ])
        sleep = RecordingSleep()
        async with _client(lambda request: next(responses), sleep=sleep, rng=lambda: 0.5) as client:
            await _collect(client)
        # base 1.0: attempt 0 ceiling 1.0, attempt 1 ceiling 2.0, scaled by 0.5
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_backoff_capped_at_max(self):
        async with _client(lambda request: httpx.Response(200), rng=lambda: 1.0) as client:
            assert client._backoff_delay(10) == 8.0
            assert client._backoff_delay(0, retry_after=60) == 8.0

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=_page(["rec1"]))

        async with _client(handler) as client:
            records = await _collect(client)
        assert len(records) == 1
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(1)
            return httpx.Response(429)

        sleep = RecordingSleep()
        async with _client(handler, sleep=sleep, max_retries=3) as client:
            with pytest.raises(SourceUnavailable, match="source unavailable: HTTP 429 after 3 retries"):
                await _collect(client)
        assert len(calls) == 4
        assert len(sleep.delays) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 404, 422])
    async def test_non_retryable_fails_fast(self, status):
        calls = []

        def handler(request: httpx.Request):
            calls.append(1)
            return httpx.Response(status, json={"error": "nope"})

        async with _client(handler) as client:
            with pytest.raises(SourceUnavailable, match=f"returned {status}"):
                await _collect(client)
        assert len(calls) == 1


class TestHelpers:
    def test_parse_timestamp(self):
        assert parse_airtable_timestamp("2025-03-01T10:15:00.000Z") == datetime(
            2025, 3, 1, 10, 15, tzinfo=timezone.utc
        )
        assert parse_airtable_timestamp("garbage") is None
        assert parse_airtable_timestamp(None) is None

    def test_since_formula_is_inclusive(self):
        formula = build_since_formula("Last Modified", datetime(2025, 1, 1, 0, 0, 0, 123456))
        assert formula == (
            "OR(IS_AFTER({Last Modified}, DATETIME_PARSE('2025-01-01T00:00:00Z')), "
            "IS_SAME({Last Modified}, DATETIME_PARSE('2025-01-01T00:00:00Z')))"
        )

    def test_page_size_capped_at_100(self):
        client = AirtableClient("k", "b", page_size=500, http_client=httpx.AsyncClient())
        assert client.page_size == 100
