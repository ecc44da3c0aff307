"""Remote history store (L3) interface and its HTTP implementation.

リモートストアは履歴の正本。エンジン側は `RemoteStore` プロトコルだけに依存し、
実体は認証付き HTTP クライアント（`HttpRemoteStore`）やテスト用のフェイクを差し替える。
アダプタは失敗時に必ず例外を送出し、握りつぶしや再試行は上位層（キャッシュ管理・
オフラインキュー）が担当する。
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from ..logging import logger
from ..models.api import AnalysisAddRequest, RecentAnalysesRequest
from ..models.common import AnalysisType
from ..models.history import AnalysisHistoryItem

TokenProvider = Callable[[], "str | None | Awaitable[str | None]"]


class RemoteStoreError(Exception):
    """Transient failure talking to the remote store (network, 5xx, bad payload)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationRequiredError(RemoteStoreError):
    """No valid bearer credential; retrying without re-authentication cannot succeed."""


class DuplicateItemError(RemoteStoreError):
    """The remote store already holds a record with the same id."""


class RemoteStore(Protocol):
    async def list(
        self,
        *,
        owner_id: str,
        type: AnalysisType | None = None,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> list[AnalysisHistoryItem]: ...

    async def insert(self, item: AnalysisHistoryItem, owner_id: str) -> None: ...

    async def update(self, item_id: str, item: AnalysisHistoryItem) -> None: ...

    async def delete(self, item_id: str, owner_id: str) -> None: ...

    async def delete_all(self, owner_id: str) -> None: ...


def _error_message(response: httpx.Response) -> str:
    """Extract a human readable error from an API error response."""

    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    detail: Any = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict):
        return str(detail.get("error") or detail)
    if detail:
        return str(detail)
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.reason_phrase or f"HTTP {response.status_code}"


class HttpRemoteStore:
    """`RemoteStore` backed by the `/api/analyses` HTTP API.

    リクエスト毎に `token_provider` からベアラートークンを取得する。トークンが
    得られない場合は通信せずに `AuthenticationRequiredError` を送出する
    （無認証でのサイレントな no-op にはしない）。タイムアウトはこのアダプタが担う。
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        *,
        timeout_ms: int = 15000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._timeout = max(1, timeout_ms) / 1000
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _resolve_token(self) -> str | None:
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        return token or None

    async def _request(
        self, method: str, path: str, *, json_body: Any | None = None
    ) -> dict[str, Any]:
        token = await self._resolve_token()
        if not token:
            raise AuthenticationRequiredError(
                "Authentication required: No valid session available"
            )
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = await self._get_client().request(
                method, path, json=json_body, headers=headers
            )
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"{method} {path} failed: {exc!r}") from exc

        if response.status_code == 401:
            raise AuthenticationRequiredError(_error_message(response), status_code=401)
        if response.status_code == 409:
            raise DuplicateItemError(_error_message(response), status_code=409)
        if response.status_code >= 400:
            raise RemoteStoreError(
                f"{method} {path} failed: {_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteStoreError(f"{method} {path} returned invalid JSON") from exc
        return payload if isinstance(payload, dict) else {}

    async def list(
        self,
        *,
        owner_id: str,
        type: AnalysisType | None = None,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> list[AnalysisHistoryItem]:
        # owner はトークンから決まるため owner_id はリクエストに含めない。
        body = RecentAnalysesRequest(
            limit=limit,
            offset=offset,
            type=type if type is not None else "all",
            search=search or None,
            sort_by=sort_by,  # type: ignore[arg-type]
            sort_order=sort_order,  # type: ignore[arg-type]
        )
        payload = await self._request(
            "POST", "/api/analyses/recent", json_body=body.model_dump(mode="json")
        )
        data = payload.get("data") or {}
        raw_items = data.get("analyses") or []
        try:
            return [AnalysisHistoryItem.model_validate(raw) for raw in raw_items]
        except ValueError as exc:
            raise RemoteStoreError(f"invalid history payload: {exc}") from exc

    async def insert(self, item: AnalysisHistoryItem, owner_id: str) -> None:
        body = AnalysisAddRequest.from_item(item).model_dump(mode="json", exclude_none=True)
        try:
            await self._request("POST", "/api/analyses/add", json_body=body)
        except DuplicateItemError:
            # 再送された add は既に反映済みとみなす（リトライを収束させる）。
            logger.info("remote_insert_duplicate", item_id=item.id, owner_id=owner_id)

    async def update(self, item_id: str, item: AnalysisHistoryItem) -> None:
        body = AnalysisAddRequest.from_item(item).model_dump(mode="json", exclude_none=True)
        await self._request(
            "PUT", f"/api/analyses/{quote(item_id, safe='')}", json_body=body
        )

    async def delete(self, item_id: str, owner_id: str) -> None:
        await self._request("DELETE", f"/api/analyses/{quote(item_id, safe='')}")

    async def delete_all(self, owner_id: str) -> None:
        await self._request("DELETE", "/api/analyses")
