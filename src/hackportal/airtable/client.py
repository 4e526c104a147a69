"""
Async client for the Airtable REST list endpoint.

Yields SourceRecord values page by page, following Airtable's `offset`
cursor. Every call starts from the first page; nothing is persisted between
calls. When a `since` marker and a last-modified field are given, the fetch
is narrowed with a filterByFormula.

Rate limits (429), upstream 5xx and transport errors are retried with
exponential backoff and full jitter, honoring Retry-After. Anything else,
or running out of retries, raises SourceUnavailable.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from hackportal.sync.errors import SourceUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class SourceRecord:
    """One Airtable row as returned by the list endpoint."""

    external_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    last_modified: Optional[datetime] = None
    created_time: Optional[datetime] = None


def parse_airtable_timestamp(value: Any) -> Optional[datetime]:
    """Parse "2025-03-01T10:15:00.000Z" into an aware UTC datetime, or None."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def build_since_formula(last_modified_field: str, since: datetime) -> str:
    """filterByFormula selecting rows modified at or after `since`.

    Inclusive so a cycle cut short mid-page re-reads the boundary; the
    writer's upserts make the overlap harmless.
    """
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    stamp = since.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    ref = "{" + last_modified_field + "}"
    return (
        f"OR(IS_AFTER({ref}, DATETIME_PARSE('{stamp}')), "
        f"IS_SAME({ref}, DATETIME_PARSE('{stamp}')))"
    )


class AirtableClient:
    """
    Thin async wrapper over the Airtable REST API.

    Usage:
        async with AirtableClient(api_key, base_id) as client:
            async for record in client.fetch_all("events"):
                ...
    """

    def __init__(
        self,
        api_key: str,
        base_id: str,
        *,
        api_url: str = "https://api.airtable.com/v0",
        page_size: int = 100,
        timeout_seconds: float = 30.0,
        max_retries: int = 5,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        """
        Args:
            api_key: Airtable personal access token.
            base_id: Airtable base id ("app...").
            http_client: Pre-built httpx.AsyncClient (tests pass one with a
                MockTransport). The client owns it either way.
            sleep: Awaitable sleep used between retries (tests pass a fake).
            rng: Returns a float in [0, 1) for backoff jitter.
        """
        self.base_id = base_id
        self.api_url = api_url.rstrip("/")
        self.page_size = max(1, min(page_size, 100))
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._sleep = sleep
        self._rng = rng
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._http.headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_settings(cls, settings) -> "AirtableClient":
        return cls(
            settings.airtable_api_key,
            settings.airtable_base_id,
            api_url=settings.airtable_api_url,
            page_size=settings.airtable_page_size,
            timeout_seconds=settings.airtable_timeout_seconds,
            max_retries=settings.airtable_max_retries,
            backoff_base_seconds=settings.airtable_backoff_base_seconds,
            backoff_max_seconds=settings.airtable_backoff_max_seconds,
        )

    async def __aenter__(self) -> "AirtableClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def fetch_all(
        self,
        table: str,
        since: Optional[datetime] = None,
        last_modified_field: Optional[str] = None,
    ) -> AsyncIterator[SourceRecord]:
        """Iterate every record of an Airtable table.

        Args:
            table: Airtable table name or id.
            since: Only fetch rows modified at/after this instant. Ignored
                unless last_modified_field is also given.
            last_modified_field: Airtable "Last modified time" field; its
                value becomes SourceRecord.last_modified.

        Raises:
            SourceUnavailable: on non-retryable errors, malformed payloads,
                or once retries are exhausted.
        """
        formula = None
        if since is not None and last_modified_field:
            formula = build_since_formula(last_modified_field, since)

        offset: Optional[str] = None
        page_number = 0
        while True:
            page_number += 1
            payload = await self.fetch_page(table, offset=offset, formula=formula)
            records = payload.get("records") or []
            logger.debug("Airtable %s page %d: %d records", table, page_number, len(records))
            for raw in records:
                yield self._to_source_record(raw, last_modified_field)

            offset = payload.get("offset")
            if not offset:
                break

    async def fetch_page(
        self,
        table: str,
        offset: Optional[str] = None,
        formula: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fetch one page of the list endpoint as raw JSON."""
        params: List[tuple] = [("pageSize", self.page_size)]
        if offset:
            params.append(("offset", offset))
        if formula:
            params.append(("filterByFormula", formula))
        url = f"{self.api_url}/{self.base_id}/{table}"
        return await self._request_json(url, params)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _to_source_record(self, raw: Dict[str, Any], last_modified_field: Optional[str]) -> SourceRecord:
        record_id = raw.get("id")
        if not record_id:
            raise SourceUnavailable("source unavailable: Airtable returned a record without 'id'")
        fields = raw.get("fields") or {}
        last_modified = None
        if last_modified_field:
            last_modified = parse_airtable_timestamp(fields.get(last_modified_field))
        return SourceRecord(
            external_id=record_id,
            fields=fields,
            last_modified=last_modified,
            created_time=parse_airtable_timestamp(raw.get("createdTime")),
        )

    async def _request_json(self, url: str, params: List[tuple]) -> Dict[str, Any]:
        """GET with retries for 429/5xx/transport errors."""
        last_problem = ""
        for attempt in range(self.max_retries + 1):
            retry_after: Optional[float] = None
            try:
                resp = await self._http.get(url, params=params)
            except httpx.TransportError as exc:
                last_problem = f"{type(exc).__name__}: {exc}"
            else:
                if 200 <= resp.status_code < 300:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise SourceUnavailable(f"source unavailable: invalid JSON from Airtable ({exc})")
                if resp.status_code not in RETRYABLE_STATUS:
                    raise SourceUnavailable(
                        f"source unavailable: Airtable returned {resp.status_code}: {resp.text[:200]}"
                    )
                last_problem = f"HTTP {resp.status_code}"
                retry_after = _parse_retry_after(resp.headers.get("Retry-After"))

            if attempt >= self.max_retries:
                break
            delay = self._backoff_delay(attempt, retry_after)
            logger.warning(
                "Airtable request failed (%s), retry %d/%d in %.2fs",
                last_problem, attempt + 1, self.max_retries, delay,
            )
            await self._sleep(delay)

        raise SourceUnavailable(
            f"source unavailable: {last_problem} after {self.max_retries} retries"
        )

    def _backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Exponential backoff with full jitter; Retry-After wins when present."""
        if retry_after is not None:
            return min(self.backoff_max_seconds, retry_after)
        ceiling = min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** attempt))
        return ceiling * self._rng()


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
