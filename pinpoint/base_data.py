from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, List

def load_json(path: str | Path) -> Any:
    p = Path(path)
    return json.loads(p.read_text(encoding="utf-8"))

def load_curated_places(path: str | Path) -> List[Dict[str, Any]]:
    """人工维护的特殊地点：[{"name", "lat", "lon"}]"""
    p = Path(path)
    if not p.exists():
        return []
    places = []
    for item in load_json(p):
        if item.get("name") and item.get("lat") is not None and item.get("lon") is not None:
            places.append({"name": str(item["name"]), "lat": float(item["lat"]), "lon": float(item["lon"])})
    return places

def load_point_features(path: str | Path) -> List[Dict[str, Any]]:
    """本地点数据集（GeoJSON FeatureCollection）"""
    data = load_json(path)
    features = data.get("features") if isinstance(data, dict) else None
    return list(features or [])

def load_area_document(path: str | Path) -> Dict[str, Any]:
    """区域配置：区域名 -> "all" 或邮编值/区间列表"""
    data = load_json(path)
    if not isinstance(data, dict):
        raise ValueError(f"区域配置格式错误: {path}")
    return data
