"""
标记存储参考实现（FastAPI + Excel 工作簿）。
- /auth/login 用共享口令换取会话 cookie；其余接口没有有效会话一律 401；
- 所有数据按 (workspace, map_id) 隔离；删除是软删除，可按范围恢复。
"""
from __future__ import annotations
import hmac
import logging
import secrets as _secrets
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from pydantic import BaseModel

from .db import connect, get_marker, hide_marker, init_db, list_markers, patch_marker, restore_markers, upsert_marker
from .models import RestoreScope

logger = logging.getLogger(__name__)

SESSION_COOKIE = "pinpoint_session"


class LoginRequest(BaseModel):
    secret: str


class MarkerCreate(BaseModel):
    stable_id: str
    workspace: str
    map_id: str
    lat: float
    lon: float
    note: str = ""
    address_text: str = ""
    postal_code: Optional[str] = None


class MarkerPatch(BaseModel):
    note: Optional[str] = None
    address_text: Optional[str] = None
    postal_code: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


class RestoreRequest(BaseModel):
    workspace: str
    map_id: str
    scope: str = RestoreScope.LAST_ACTION.value


def create_app(db_path: str | Path, secret: str, session_hours: float = 12.0,
               clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> FastAPI:
    conn = connect(db_path)
    if not Path(db_path).exists():
        init_db(conn)
    lock = threading.Lock()
    sessions: Dict[str, datetime] = {}

    app = FastAPI(title="Pinpoint Marker Store")

    def require_session(request: Request) -> str:
        token = request.cookies.get(SESSION_COOKIE)
        expires = sessions.get(token) if token else None
        if expires is None or expires <= clock():
            if token:
                sessions.pop(token, None)
            raise HTTPException(status_code=401, detail="会话无效或已过期，请重新登录")
        return token

    def _scoped(marker_id: str, workspace: Optional[str], map_id: Optional[str]) -> dict:
        row = get_marker(conn, marker_id)
        if row is None:
            raise HTTPException(status_code=404, detail=f"标记不存在: {marker_id}")
        if (workspace and row["workspace"] != workspace) or (map_id and row["map_id"] != map_id):
            raise HTTPException(status_code=404, detail=f"标记不存在: {marker_id}")
        return row

    @app.post("/auth/login")
    def login(payload: LoginRequest, response: Response):
        if not secret or not hmac.compare_digest(payload.secret.encode("utf-8"), secret.encode("utf-8")):
            logger.warning("Rejected marker store login")
            raise HTTPException(status_code=401, detail="口令错误")
        token = _secrets.token_urlsafe(24)
        expires = clock() + timedelta(hours=session_hours)
        sessions[token] = expires
        response.set_cookie(SESSION_COOKIE, token, httponly=True, max_age=int(session_hours * 3600), samesite="lax")
        return {"ok": True, "expires_at": expires.isoformat(timespec="seconds")}

    @app.get("/markers")
    def get_markers(workspace: str, map_id: str, include_hidden: bool = False,
                    _session: str = Depends(require_session)):
        with lock:
            return list_markers(conn, workspace, map_id, include_hidden=include_hidden)

    @app.post("/markers")
    def create_marker(payload: MarkerCreate, _session: str = Depends(require_session)):
        with lock:
            return upsert_marker(conn, payload.model_dump(), now=clock())

    @app.patch("/markers/{marker_id}")
    def update_marker(marker_id: str, payload: MarkerPatch, workspace: Optional[str] = None,
                      map_id: Optional[str] = None, _session: str = Depends(require_session)):
        fields = payload.model_dump(exclude_unset=True)
        if not fields:
            raise HTTPException(status_code=400, detail="没有需要修改的字段")
        with lock:
            _scoped(marker_id, workspace, map_id)
            return patch_marker(conn, marker_id, fields, now=clock())

    @app.delete("/markers/{marker_id}")
    def delete_marker(marker_id: str, workspace: Optional[str] = None, map_id: Optional[str] = None,
                      _session: str = Depends(require_session)):
        with lock:
            _scoped(marker_id, workspace, map_id)
            row = hide_marker(conn, marker_id, now=clock())
        return {"id": row["id"], "hidden": True, "action_id": row["action_id"]}

    @app.post("/markers/restore")
    def restore(payload: RestoreRequest, _session: str = Depends(require_session)):
        try:
            scope = RestoreScope(payload.scope)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"未知的恢复范围: {payload.scope}")
        with lock:
            restored = restore_markers(conn, payload.workspace, payload.map_id, scope, now=clock())
        logger.info("Restore %s in %s/%s: %d markers", scope.value, payload.workspace, payload.map_id, len(restored))
        return {"restored": restored}

    return app
