from __future__ import annotations
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .errors import AuthRequired, RemoteStoreError, TransportError
from .http import HttpResponse, JsonHttpClient
from .models import MarkerRecord, RestoreScope

logger = logging.getLogger(__name__)

SecretProvider = Callable[[], Awaitable[str]]


class MarkerStore(Protocol):
    workspace: str
    map_id: str

    async def login(self, secret: str) -> None: ...

    async def list_markers(self, include_hidden: bool = False) -> List[MarkerRecord]: ...

    async def create_marker(self, payload: Dict[str, Any]) -> MarkerRecord: ...

    async def patch_marker(self, marker_id: str, fields: Dict[str, Any]) -> MarkerRecord: ...

    async def delete_marker(self, marker_id: str) -> None: ...

    async def restore(self, scope: RestoreScope) -> List[str]: ...


def record_from_dict(row: Dict[str, Any]) -> MarkerRecord:
    return MarkerRecord(
        id=str(row["id"]),
        stable_id=str(row.get("stable_id") or row["id"]),
        workspace=str(row.get("workspace") or ""),
        map_id=str(row.get("map_id") or ""),
        lat=float(row["lat"]),
        lon=float(row["lon"]),
        note=row.get("note") or "",
        address_text=row.get("address_text") or "",
        postal_code=(str(row["postal_code"]) if row.get("postal_code") not in (None, "") else None),
        hidden=bool(row.get("hidden")),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
        hidden_at=row.get("hidden_at"),
    )


class MarkerStoreClient:
    """远程标记存储的 REST 客户端；会话 cookie 由 aiohttp 的 cookie jar 保存。"""

    def __init__(self, http: JsonHttpClient, base_url: str, workspace: str, map_id: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.workspace = workspace
        self.map_id = map_id

    async def _call(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                    body: Optional[Any] = None) -> HttpResponse:
        try:
            resp = await self.http.request(method, f"{self.base_url}{path}", params=params, json_body=body)
        except TransportError as exc:
            raise RemoteStoreError(str(exc)) from exc
        if resp.status == 401:
            raise AuthRequired(f"{method} {path} rejected: session missing or expired")
        if not resp.ok:
            detail = resp.payload.get("detail") if isinstance(resp.payload, dict) else resp.payload
            raise RemoteStoreError(f"{method} {path} failed: HTTP {resp.status} {detail or ''}".strip(), resp.status)
        return resp

    def _scope(self) -> Dict[str, str]:
        return {"workspace": self.workspace, "map_id": self.map_id}

    async def login(self, secret: str) -> None:
        await self._call("POST", "/auth/login", body={"secret": secret})
        logger.info("Logged in to marker store %s", self.base_url)

    async def list_markers(self, include_hidden: bool = False) -> List[MarkerRecord]:
        params = self._scope()
        if include_hidden:
            params["include_hidden"] = "true"
        resp = await self._call("GET", "/markers", params=params)
        return [record_from_dict(row) for row in resp.payload or []]

    async def create_marker(self, payload: Dict[str, Any]) -> MarkerRecord:
        resp = await self._call("POST", "/markers", body={**payload, **self._scope()})
        return record_from_dict(resp.payload)

    async def patch_marker(self, marker_id: str, fields: Dict[str, Any]) -> MarkerRecord:
        resp = await self._call("PATCH", f"/markers/{marker_id}", params=self._scope(), body=fields)
        return record_from_dict(resp.payload)

    async def delete_marker(self, marker_id: str) -> None:
        await self._call("DELETE", f"/markers/{marker_id}", params=self._scope())

    async def restore(self, scope: RestoreScope) -> List[str]:
        resp = await self._call("POST", "/markers/restore", body={**self._scope(), "scope": scope.value})
        payload = resp.payload if isinstance(resp.payload, dict) else {}
        return [str(i) for i in payload.get("restored") or []]


def reauthenticator(store: MarkerStore, secret_provider: SecretProvider) -> Callable[[], Awaitable[None]]:
    """把“交互式取得口令 + 登录”包装成 RemoteMarkerSync 需要的无参协程"""
    async def _reauth() -> None:
        secret = await secret_provider()
        await store.login(secret)
    return _reauth
