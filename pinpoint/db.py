from __future__ import annotations
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .models import RestoreScope

TABLE_SCHEMAS: Dict[str, List[str]] = {
    "markers": [
        "id", "stable_id", "workspace", "map_id", "lat", "lon", "note", "address_text", "postal_code",
        "hidden", "action_id", "created_at", "updated_at", "hidden_at",
    ],
}

# 可由 PATCH 修改的字段
EDITABLE_FIELDS = ("note", "address_text", "postal_code", "lat", "lon")

_SCOPE_WINDOWS = {
    RestoreScope.LAST_HOUR: timedelta(hours=1),
    RestoreScope.LAST_DAY: timedelta(days=1),
}

def _now() -> datetime:
    return datetime.now(timezone.utc)

def _ts(dt: datetime) -> str:
    # 微秒精度：同一秒内的两次删除也能分出先后
    return dt.isoformat(timespec="microseconds")

def _parse_ts(val: Any) -> Optional[datetime]:
    if not val:
        return None
    dt = datetime.fromisoformat(str(val))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

def _empty_table(name: str) -> pd.DataFrame:
    return pd.DataFrame(columns=TABLE_SCHEMAS[name], dtype=object)

def _ensure_columns(df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    result = df.copy()
    for col in columns:
        if col not in result.columns:
            result[col] = None
    return result[columns].astype(object)

def _clean_value(val: Any) -> Any:
    if val is None:
        return None
    try:
        if pd.isna(val):
            return None
    except (TypeError, ValueError):
        pass
    return val

def _row_to_dict(row: pd.Series) -> Dict[str, Any]:
    d = {k: _clean_value(v) for k, v in row.to_dict().items()}
    # Excel 读回后的类型整理
    d["hidden"] = bool(int(d.get("hidden") or 0))
    for k in ("id", "stable_id", "workspace", "map_id", "postal_code", "action_id"):
        if d.get(k) is not None:
            d[k] = str(d[k])
    for k in ("lat", "lon"):
        if d.get(k) is not None:
            d[k] = float(d[k])
    for k in ("note", "address_text"):
        d[k] = "" if d.get(k) is None else str(d[k])
    return d

def _append_row(df: pd.DataFrame, row: Dict[str, Any]) -> pd.DataFrame:
    new = pd.DataFrame([row], columns=list(df.columns), dtype=object)
    if df.empty:
        return new
    return pd.concat([df, new], ignore_index=True)

def _hidden_mask(df: pd.DataFrame) -> pd.Series:
    return pd.to_numeric(df["hidden"], errors="coerce").fillna(0).astype(int) == 1

def _scope_mask(df: pd.DataFrame, workspace: str, map_id: str) -> pd.Series:
    return (df["workspace"].astype(str) == workspace) & (df["map_id"].astype(str) == map_id)

class ExcelConnection:
    """简单的 Excel “连接”对象，维护内存表缓存并提供保存方法。"""
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.tables: Dict[str, pd.DataFrame] = {
            name: _empty_table(name) for name in TABLE_SCHEMAS
        }
        if self.path.exists():
            xls = pd.read_excel(self.path, sheet_name=None, dtype=object)
            for name, cols in TABLE_SCHEMAS.items():
                if name in xls:
                    self.tables[name] = _ensure_columns(xls[name], cols)

    def save(self) -> None:
        with pd.ExcelWriter(self.path, engine="openpyxl") as writer:
            for name, df in self.tables.items():
                df.to_excel(writer, sheet_name=name, index=False)

def connect(db_path: str | Path) -> ExcelConnection:
    return ExcelConnection(db_path)

def init_db(conn: ExcelConnection) -> None:
    conn.save()

def clear_table(conn: ExcelConnection, table: str) -> None:
    if table not in TABLE_SCHEMAS:
        raise ValueError(f"Unknown table: {table}")
    conn.tables[table] = _empty_table(table)
    conn.save()

def upsert_marker(conn: ExcelConnection, payload: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    按 stable_id 写入标记；已存在（包括已隐藏）的行直接复用并取消隐藏，
    因此同一坐标重复创建永远只有一行。返回写入后的行。
    """
    ts = _ts(now or _now())
    df = conn.tables["markers"]
    stable_id = str(payload["stable_id"])
    mask = df["stable_id"].astype(str) == stable_id
    if mask.any():
        idx = df.index[mask][0]
        df.at[idx, "hidden"] = 0
        df.at[idx, "hidden_at"] = None
        df.at[idx, "action_id"] = None
        for col in ("address_text", "postal_code", "note"):
            if payload.get(col):
                df.at[idx, col] = str(payload[col])
        df.at[idx, "updated_at"] = ts
        conn.tables["markers"] = df
        conn.save()
        return _row_to_dict(df.loc[idx])

    row = {
        "id": stable_id,
        "stable_id": stable_id,
        "workspace": str(payload["workspace"]),
        "map_id": str(payload["map_id"]),
        "lat": float(payload["lat"]),
        "lon": float(payload["lon"]),
        "note": payload.get("note") or "",
        "address_text": payload.get("address_text") or "",
        "postal_code": str(payload["postal_code"]) if payload.get("postal_code") else None,
        "hidden": 0,
        "action_id": None,
        "created_at": ts,
        "updated_at": ts,
        "hidden_at": None,
    }
    conn.tables["markers"] = _append_row(df, row)
    conn.save()
    return _row_to_dict(pd.Series(row))

def list_markers(conn: ExcelConnection, workspace: str, map_id: str, include_hidden: bool = False) -> List[Dict[str, Any]]:
    df = conn.tables["markers"]
    if df.empty:
        return []
    df = df[_scope_mask(df, workspace, map_id)]
    if not include_hidden:
        df = df[~_hidden_mask(df)]
    df = df.sort_values(by="created_at", na_position="last")
    return [_row_to_dict(row) for _, row in df.iterrows()]

def get_marker(conn: ExcelConnection, marker_id: str) -> Optional[Dict[str, Any]]:
    df = conn.tables["markers"]
    match = df[df["id"].astype(str) == str(marker_id)]
    if match.empty:
        return None
    return _row_to_dict(match.iloc[0])

def patch_marker(conn: ExcelConnection, marker_id: str, fields: Dict[str, Any],
                 now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    df = conn.tables["markers"]
    mask = df["id"].astype(str) == str(marker_id)
    if not mask.any():
        return None
    idx = df.index[mask][0]
    for col, val in fields.items():
        if col not in EDITABLE_FIELDS:
            raise ValueError(f"Field not editable: {col}")
        df.at[idx, col] = val
    df.at[idx, "updated_at"] = _ts(now or _now())
    conn.tables["markers"] = df
    conn.save()
    return _row_to_dict(df.loc[idx])

def hide_marker(conn: ExcelConnection, marker_id: str, action_id: Optional[str] = None,
                now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """软删除：只设置 hidden 标记与操作 id，行保留以便恢复"""
    df = conn.tables["markers"]
    mask = df["id"].astype(str) == str(marker_id)
    if not mask.any():
        return None
    idx = df.index[mask][0]
    ts = _ts(now or _now())
    df.at[idx, "hidden"] = 1
    df.at[idx, "hidden_at"] = ts
    df.at[idx, "action_id"] = action_id or uuid.uuid4().hex[:12]
    df.at[idx, "updated_at"] = ts
    conn.tables["markers"] = df
    conn.save()
    return _row_to_dict(df.loc[idx])

def restore_markers(conn: ExcelConnection, workspace: str, map_id: str, scope: RestoreScope,
                    now: Optional[datetime] = None) -> List[str]:
    """
    按范围取消隐藏：
      last  最近一次删除操作（按 hidden_at 最新的 action_id）
      hour / day  hidden_at 落在时间窗口内的全部行
    没有可恢复的行时返回空列表。
    """
    df = conn.tables["markers"]
    if df.empty:
        return []
    hidden = df[_scope_mask(df, workspace, map_id) & _hidden_mask(df)]
    if hidden.empty:
        return []

    if scope == RestoreScope.LAST_ACTION:
        floor = datetime.min.replace(tzinfo=timezone.utc)
        # 时间相同则取表中靠后的行
        latest = max(enumerate(hidden.index),
                     key=lambda p: (_parse_ts(hidden.at[p[1], "hidden_at"]) or floor, p[0]))[1]
        action = hidden.at[latest, "action_id"]
        targets = [i for i in hidden.index if hidden.at[i, "action_id"] == action]
    else:
        cutoff = (now or _now()) - _SCOPE_WINDOWS[scope]
        targets = [i for i in hidden.index if (_parse_ts(hidden.at[i, "hidden_at"]) or cutoff) > cutoff]

    ts = _ts(now or _now())
    restored: List[str] = []
    for idx in targets:
        df.at[idx, "hidden"] = 0
        df.at[idx, "hidden_at"] = None
        df.at[idx, "action_id"] = None
        df.at[idx, "updated_at"] = ts
        restored.append(str(df.at[idx, "id"]))
    conn.tables["markers"] = df
    conn.save()
    return restored
