"""
HTTP clients for the remote record store.

Three endpoints are involved:

- the upload service, which signs records with the server wallet and
  submits them (``POST {upload_url}/tx``)
- the GraphQL index, which finds records by tags and owner
- the gateway, which serves payloads by record id and resolves mutable
  references (``GET {gateway_url}/{id}``, ``GET {gateway_url}/mutable/{root}``)

The index lags behind uploads by a few seconds.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Optional, Sequence
from urllib.parse import urlparse

import httpx

from .errors import StorageUnavailable, Unauthorized
from .protocol import TagFilter
from .types import Record, Tag, WriteReceipt

logger = logging.getLogger(__name__)

# Retry config for uploads and queries
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds
MAX_RETRY_AFTER = 60.0

# Timeouts
DEFAULT_TIMEOUT = 30.0

# Largest page the GraphQL service returns
MAX_PAGE_SIZE = 100

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")

RECORDS_QUERY = """
query Records(
  $tags: [TagFilter!]
  $owners: [String!]
  $order: SortOrder
  $first: Int
  $after: String
) {
  transactions(tags: $tags, owners: $owners, order: $order, first: $first, after: $after) {
    pageInfo { hasNextPage }
    edges {
      cursor
      node {
        id
        address
        timestamp
        tags { name value }
      }
    }
  }
}
"""


def _require_https(url: str, what: str) -> str:
    """Refuse non-HTTPS URLs except for local development hosts."""
    url = url.rstrip("/")
    if not url.startswith("https://"):
        host = urlparse(url).hostname or ""
        if host not in _LOCAL_HOSTS:
            raise ValueError(
                f"{what} URL must use HTTPS (got {url}). "
                "Use HTTPS to protect credentials, or use localhost for local development."
            )
    return url


async def _send_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    what: str,
    **kwargs,
) -> httpx.Response:
    """Send a request, retrying transient failures.

    Retries up to MAX_RETRIES times with exponential backoff on 5xx,
    timeouts and connection errors. Honors Retry-After on 429.
    4xx responses are not retried.
    """
    last_error: Exception | None = None
    for attempt in range(MAX_RETRIES):
        try:
            resp = await client.request(method, url, **kwargs)
            if resp.status_code == 429:
                # Rate limited, back off and retry
                retry_after = min(float(resp.headers.get("Retry-After", "5")), MAX_RETRY_AFTER)
                logger.info("%s rate limited, retrying after %.1fs", what, retry_after)
                last_error = StorageUnavailable(f"{what} rate limited")
                await asyncio.sleep(retry_after)
                continue
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise Unauthorized(f"{what} rejected credentials: {status}") from e
            if status < 500:
                raise StorageUnavailable(
                    f"{what} rejected: {status} {e.response.text}"
                ) from e
            last_error = e
        except (httpx.TimeoutException, httpx.TransportError) as e:
            last_error = e

        if attempt < MAX_RETRIES - 1:
            delay = RETRY_BACKOFF_BASE * (2 ** attempt)
            logger.info(
                "%s attempt %d failed, retrying in %.1fs: %s",
                what, attempt + 1, delay, last_error,
            )
            await asyncio.sleep(delay)

    raise StorageUnavailable(
        f"{what} failed after {MAX_RETRIES} attempts: {last_error}"
    ) from last_error


class GatewayRecordStore:
    """Record store backed by the upload service and the gateway."""

    def __init__(
        self,
        upload_url: str,
        gateway_url: str,
        api_key: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._upload_url = _require_https(upload_url, "Upload service")
        self._gateway_url = _require_https(gateway_url, "Gateway")
        self._api_key = api_key

        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    async def write(self, payload: bytes, tags: Sequence[Tag]) -> WriteReceipt:
        """POST {upload_url}/tx -> record id and timestamp."""
        if not self._api_key:
            raise Unauthorized("Upload service API key not configured")
        body = {
            "data": base64.b64encode(payload).decode("ascii"),
            "tags": [{"name": t.name, "value": t.value} for t in tags],
        }
        resp = await _send_with_retry(
            self._client, "POST", f"{self._upload_url}/tx",
            what="Upload",
            json=body,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        try:
            data = resp.json()
            record_id = data["id"]
        except (ValueError, KeyError) as e:
            raise StorageUnavailable(f"Malformed upload receipt: {resp.text[:200]}") from e
        timestamp = int(data.get("timestamp") or time.time() * 1000)
        logger.info("Uploaded record %s (%d bytes)", record_id, len(payload))
        return WriteReceipt(id=record_id, timestamp=timestamp)

    async def fetch(self, record_id: str) -> bytes:
        """GET {gateway_url}/{id} -> payload bytes."""
        try:
            resp = await self._client.get(f"{self._gateway_url}/{record_id}")
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StorageUnavailable(
                f"Fetch of {record_id} failed: {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise StorageUnavailable(f"Fetch of {record_id} failed: {e}") from e
        return resp.content

    async def fetch_latest_via_root(self, root_record_id: str) -> Optional[bytes]:
        """GET {gateway_url}/mutable/{root} -> latest payload, or None.

        Any HTTP error status is reported as None so the caller falls
        back to fetching by record id. Transport errors raise.
        """
        try:
            resp = await self._client.get(self.mutable_url(root_record_id))
        except httpx.HTTPError as e:
            raise StorageUnavailable(f"Mutable fetch of {root_record_id} failed: {e}") from e
        if resp.status_code != 200:
            logger.debug(
                "Mutable reference %s unavailable: %d", root_record_id, resp.status_code
            )
            return None
        return resp.content

    def mutable_url(self, root_record_id: str) -> str:
        return f"{self._gateway_url}/mutable/{root_record_id}"

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


class GraphQLIndex:
    """Tag-query index served over GraphQL."""

    def __init__(
        self,
        graphql_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._graphql_url = _require_https(graphql_url, "GraphQL index")
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def _page(self, variables: dict) -> dict:
        resp = await _send_with_retry(
            self._client, "POST", self._graphql_url,
            what="Index query",
            json={"query": RECORDS_QUERY, "variables": variables},
        )
        try:
            result = resp.json()
        except ValueError as e:
            raise StorageUnavailable("Index returned non-JSON response") from e
        if result.get("errors"):
            raise StorageUnavailable(f"Index query errors: {result['errors']}")
        return (result.get("data") or {}).get("transactions") or {}

    async def query(
        self,
        tags: Sequence[TagFilter],
        *,
        owners: Optional[Sequence[str]] = None,
        order: str = "DESC",
        limit: int = 100,
    ) -> list[Record]:
        """Find records by tag predicates, following cursors up to ``limit``."""
        records: list[Record] = []
        after: Optional[str] = None
        while len(records) < limit:
            variables = {
                "tags": [{"name": f.name, "values": list(f.values)} for f in tags],
                "order": "ASC" if order.upper() == "ASC" else "DESC",
                "first": min(limit - len(records), MAX_PAGE_SIZE),
            }
            if owners:
                variables["owners"] = list(owners)
            if after:
                variables["after"] = after

            page = await self._page(variables)
            edges = page.get("edges") or []
            for edge in edges:
                record = _edge_to_record(edge)
                if record is not None:
                    records.append(record)
            has_next = (page.get("pageInfo") or {}).get("hasNextPage", False)
            if not edges or not has_next:
                break
            after = edges[-1].get("cursor")
            if not after:
                break
        return records[:limit]

    async def close(self) -> None:
        await self._client.aclose()


def _edge_to_record(edge: dict) -> Optional[Record]:
    """Convert a GraphQL edge to a Record, or None if malformed."""
    node = edge.get("node") or {}
    try:
        return Record(
            id=node["id"],
            tags=tuple(Tag(t["name"], t["value"]) for t in node.get("tags") or []),
            timestamp=int(node.get("timestamp") or 0),
            owner=node.get("address") or "",
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Skipping malformed index entry: %s", e)
        return None
