from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from crmsync.core.errors import WrapperAuthError, WrapperNetworkError, WrapperResponseError
from crmsync.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

INTEGRATION_NAME = "wrapper_api"

WRAPPER_RESOURCES = (
    "organizations",
    "roles",
    "users",
    "employee-assignments",
    "role-assignments",
    "credit-configs",
    "entity-credits",
)


class WrapperClient:
    """Read-only client for the upstream tenant wrapper API.

    Every response is a `{success, data, pagination?}` envelope. Collections are
    paged with `page`/`limit` and fetched until `pagination.totalPages` is reached.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 30.0,
        page_size: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._page_size = max(1, page_size)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client for connection pooling across collections.
        self._client = httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-Request-Source": "crm-backend",
        }

    async def _get(self, path: str, token: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.get(url, headers=self._headers(token), params=params)
        except httpx.TimeoutException as exc:
            self._record(start, success=False)
            raise WrapperNetworkError(f"wrapper request timed out: {path}", original=exc) from exc
        except httpx.TransportError as exc:
            # Connect failures, DNS errors and dropped connections.
            self._record(start, success=False)
            raise WrapperNetworkError(f"wrapper unreachable: {path}", original=exc) from exc

        if response.status_code in {401, 403}:
            self._record(start, success=False)
            raise WrapperAuthError(
                f"wrapper authentication failed: {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code != 200:
            self._record(start, success=False)
            raise WrapperResponseError(
                f"wrapper returned status {response.status_code} for {path}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            self._record(start, success=False)
            raise WrapperResponseError(f"wrapper returned invalid JSON for {path}", original=exc) from exc
        if not isinstance(body, dict) or not body.get("success"):
            self._record(start, success=False)
            message = body.get("message") if isinstance(body, dict) else None
            raise WrapperResponseError(f"wrapper reported failure for {path}: {message or 'unknown'}")

        self._record(start, success=True)
        return body

    def _record(self, start: float, *, success: bool) -> None:
        record_external_call(
            integration=INTEGRATION_NAME,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )

    async def fetch_tenant(self, tenant_id: str, token: str) -> dict[str, Any]:
        body = await self._get(f"/api/wrapper/tenants/{tenant_id}", token)
        data = body.get("data")
        if not isinstance(data, dict):
            raise WrapperResponseError(f"wrapper returned no tenant data for {tenant_id}")
        return data

    async def fetch_collection(self, tenant_id: str, resource: str, token: str) -> list[dict[str, Any]]:
        # Follow pagination until the last page, an empty page, or an unpaged response.
        if resource not in WRAPPER_RESOURCES:
            raise ValueError(f"unknown wrapper resource: {resource}")
        path = f"/api/wrapper/tenants/{tenant_id}/{resource}"
        records: list[dict[str, Any]] = []
        page = 1
        while True:
            body = await self._get(path, token, params={"page": page, "limit": self._page_size})
            data = body.get("data") or []
            if not isinstance(data, list):
                raise WrapperResponseError(f"wrapper returned non-list data for {resource}")
            records.extend(item for item in data if isinstance(item, dict))
            pagination = body.get("pagination")
            if not data or not isinstance(pagination, dict):
                break
            total_pages = int(pagination.get("totalPages") or 0)
            if page >= total_pages:
                break
            page += 1
        logger.info(
            "wrapper_collection_fetched tenant_id=%s resource=%s records=%s pages=%s",
            tenant_id,
            resource,
            len(records),
            page,
        )
        return records
