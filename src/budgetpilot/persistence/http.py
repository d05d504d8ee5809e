"""
HTTP persistence — talks to the ledger service's JSON API.

Resources:
    /line-items           POST, GET|PATCH|DELETE /{id}, GET /{id}/aggregate
    /purchase-requests    POST, GET|PATCH|DELETE /{id}, PATCH /{id}/status,
                          GET /pending-approval
    /transactions         POST, GET|PATCH|DELETE /{id}

Error bodies look like ``{"error": "...", "details": "..."}`` and become the
message of the raised exception. Status mapping:

    404        → EntityNotFoundError
    409, 412   → ConflictError
    other 4xx/5xx, network failures, timeouts → TransientWriteError

Usage::

    persistence = HttpPersistence("https://ledger.example.org/api", api_token="...")
    aggregate = await persistence.fetch_aggregate(42)
    await persistence.close()
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
import pydantic

from budgetpilot.exceptions import ConflictError, EntityNotFoundError, TransientWriteError
from budgetpilot.models.ledger import (
    ENTITY_MODELS,
    ApprovalStatus,
    EntityKind,
    LedgerAggregate,
    LedgerEntity,
    PurchaseRequest,
    entity_key,
)
from budgetpilot.persistence.base import BasePersistence

logger = logging.getLogger("budgetpilot.persistence.http")

RESOURCES: dict[EntityKind, str] = {
    EntityKind.LINE_ITEM: "line-items",
    EntityKind.PURCHASE_REQUEST: "purchase-requests",
    EntityKind.TRANSACTION: "transactions",
}

_CONFLICT_STATUSES = frozenset({409, 412})


class HttpPersistence(BasePersistence):
    """Ledger backend reached over HTTP with ``httpx``."""

    name = "http"
    description = "Ledger service JSON API"

    def __init__(
        self,
        base_url: str,
        *,
        api_token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        **options: Any,
    ) -> None:
        super().__init__(**options)
        if not base_url:
            raise ValueError("HttpPersistence needs a base_url")
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http is None or self._http.is_closed:
            headers = {"Accept": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # API helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        key: str | None = None,
    ) -> Any:
        client = await self._get_client()
        try:
            resp = await client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise TransientWriteError(f"{method} {path} timed out", entity_key=key) from e
        except httpx.HTTPError as e:
            raise TransientWriteError(f"{method} {path} failed: {e}", entity_key=key) from e

        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.debug("%s %s -> %d: %s", method, path, resp.status_code, message)
            if resp.status_code == 404:
                raise EntityNotFoundError(message, entity_key=key)
            if resp.status_code in _CONFLICT_STATUSES:
                raise ConflictError(message, entity_key=key)
            raise TransientWriteError(message, entity_key=key)

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise TransientWriteError(f"{method} {path} returned invalid JSON", entity_key=key) from e

    @staticmethod
    def _parse(model: type[pydantic.BaseModel], data: Any, key: str | None = None) -> Any:
        try:
            return model.model_validate(data)
        except pydantic.ValidationError as e:
            raise TransientWriteError(f"Unexpected {model.__name__} payload: {e.errors()[0].get('msg')}", entity_key=key) from e

    # ------------------------------------------------------------------
    # BasePersistence
    # ------------------------------------------------------------------

    async def create(self, kind: EntityKind, payload: dict[str, Any]) -> LedgerEntity:
        data = await self._request("POST", f"/{RESOURCES[kind]}", json=payload)
        return self._parse(ENTITY_MODELS[kind], data)

    async def read(self, kind: EntityKind, entity_id: int) -> LedgerEntity:
        key = entity_key(kind, entity_id)
        data = await self._request("GET", f"/{RESOURCES[kind]}/{entity_id}", key=key)
        return self._parse(ENTITY_MODELS[kind], data, key)

    async def update(self, kind: EntityKind, entity_id: int, changes: dict[str, Any]) -> LedgerEntity:
        key = entity_key(kind, entity_id)
        data = await self._request("PATCH", f"/{RESOURCES[kind]}/{entity_id}", json=changes, key=key)
        return self._parse(ENTITY_MODELS[kind], data, key)

    async def delete(self, kind: EntityKind, entity_id: int) -> None:
        await self._request("DELETE", f"/{RESOURCES[kind]}/{entity_id}", key=entity_key(kind, entity_id))

    async def transition(
        self,
        request_id: int,
        status: ApprovalStatus,
        actor_id: int | None = None,
        rejection_reason: str | None = None,
    ) -> PurchaseRequest:
        key = entity_key(EntityKind.PURCHASE_REQUEST, request_id)
        body = {"status": status.value, "actor_id": actor_id, "rejection_reason": rejection_reason}
        data = await self._request("PATCH", f"/purchase-requests/{request_id}/status", json=body, key=key)
        return self._parse(PurchaseRequest, data, key)

    async def fetch_aggregate(self, line_item_id: int) -> LedgerAggregate:
        key = entity_key(EntityKind.LINE_ITEM, line_item_id)
        data = await self._request("GET", f"/line-items/{line_item_id}/aggregate", key=key)
        return self._parse(LedgerAggregate, data, key)

    async def list_pending_requests(
        self,
        project_id: int | None = None,
        requested_by: int | None = None,
    ) -> list[PurchaseRequest]:
        params = {}
        if project_id is not None:
            params["project_id"] = project_id
        if requested_by is not None:
            params["requested_by"] = requested_by
        data = await self._request("GET", "/purchase-requests/pending-approval", params=params)
        return [self._parse(PurchaseRequest, item) for item in data or []]

    async def ping(self) -> bool:
        await self._request("GET", "/health")
        return True


def _error_message(resp: httpx.Response) -> str:
    """Pull ``error``/``details`` out of an error body, falling back to the status line."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        details = body.get("details")
        return f"{body['error']}: {details}" if details else str(body["error"])
    return f"HTTP {resp.status_code} {resp.reason_phrase}".strip()
