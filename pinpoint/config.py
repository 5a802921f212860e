from __future__ import annotations
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

@dataclass
class Config:
    db_path: str
    workspace: str
    map_id: str
    min_query_length: int
    search_debounce_ms: int
    note_debounce_ms: int
    per_source_limit: int
    foreign_limit: int
    stable_id_precision: int
    identity_index_max: int
    highlight_seconds: float
    local_points_max_age_hours: float
    session_hours: float
    endpoints: Dict[str, str]
    data_files: Dict[str, str]
    source_sets: Dict[str, List[str]]
    secrets: Dict[str, str] = field(default_factory=dict)

    @property
    def search_debounce(self) -> float:
        return self.search_debounce_ms / 1000.0

    @property
    def note_debounce(self) -> float:
        return self.note_debounce_ms / 1000.0

# 环境变量 -> endpoints / secrets 覆盖
_ENDPOINT_ENV = {
    "marker_store": "MARKER_STORE_URL",
}
_SECRET_ENV = {
    "ors_api_key": "ORS_API_KEY",
    "gsearch_token": "GSEARCH_TOKEN",
    "marker_store_secret": "MARKER_STORE_SECRET",
}

def load_config(path: str | Path) -> Config:
    p = Path(path)
    raw = json.loads(p.read_text(encoding="utf-8"))
    endpoints = dict(raw["endpoints"])
    for key, env in _ENDPOINT_ENV.items():
        if os.getenv(env):
            endpoints[key] = os.environ[env]
    secrets = {key: os.getenv(env, "") for key, env in _SECRET_ENV.items()}
    # data 文件按配置文件所在目录解析
    data_files = {k: str(_resolve(p.parent, v)) for k, v in dict(raw["data_files"]).items()}
    return Config(
        db_path=str(_resolve(p.parent, raw["db_path"])),
        workspace=str(raw["workspace"]),
        map_id=str(raw["map_id"]),
        min_query_length=int(raw["min_query_length"]),
        search_debounce_ms=int(raw["search_debounce_ms"]),
        note_debounce_ms=int(raw["note_debounce_ms"]),
        per_source_limit=int(raw["per_source_limit"]),
        foreign_limit=int(raw["foreign_limit"]),
        stable_id_precision=int(raw["stable_id_precision"]),
        identity_index_max=int(raw["identity_index_max"]),
        highlight_seconds=float(raw["highlight_seconds"]),
        local_points_max_age_hours=float(raw["local_points_max_age_hours"]),
        session_hours=float(raw["session_hours"]),
        endpoints=endpoints,
        data_files=data_files,
        source_sets={k: list(v) for k, v in dict(raw["source_sets"]).items()},
        secrets=secrets,
    )

def _resolve(base: Path, value: str) -> Path:
    q = Path(value)
    return q if q.is_absolute() else (base / q)
