from __future__ import annotations
import hashlib
import re
from dataclasses import asdict, is_dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Optional, Sequence, Tuple
import json

from pyproj import Transformer

from .models import Coordinate

# 国内范围的粗略 bbox，用于区分国内/国外反查
DOMESTIC_BBOX = (54.4, 57.9, 7.5, 15.5)

_COORD_LITERAL = re.compile(r"^(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)$")

def normalize_text(text: str) -> str:
    """清洗查询文本：去首尾空白、压缩空白、统一小写"""
    if text is None:
        return ""
    t = re.sub(r"\s+", " ", text.strip())
    return t.casefold()

def parse_coordinate_literal(text: str) -> Optional[Coordinate]:
    """识别 "lat, lon" 形式的坐标字面量"""
    m = _COORD_LITERAL.match((text or "").strip())
    if not m:
        return None
    return Coordinate(float(m.group(1)), float(m.group(2)))

def is_domestic(lat: float, lon: float) -> bool:
    lat_min, lat_max, lon_min, lon_max = DOMESTIC_BBOX
    return lat_min <= lat <= lat_max and lon_min <= lon <= lon_max

def make_stable_id(workspace: str, map_id: str, lat: float, lon: float, precision: int = 5) -> str:
    # 按精度取整后生成确定性 ID；+0.0 把 -0.0 归一
    rlat = round(float(lat), precision) + 0.0
    rlon = round(float(lon), precision) + 0.0
    key = f"{workspace}|{map_id}|{rlat:.{precision}f}|{rlon:.{precision}f}"
    return "m_" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:20]

@lru_cache(maxsize=1)
def _utm32_transformer() -> Transformer:
    return Transformer.from_crs("EPSG:25832", "EPSG:4326", always_xy=True)

def utm32_to_wgs84(x: float, y: float) -> Coordinate:
    lon, lat = _utm32_transformer().transform(x, y)
    return Coordinate(lat, lon)

def point_to_coordinate(x: float, y: float) -> Coordinate:
    """GeoJSON 顺序 (x, y)；数值超过 90 视为 EPSG:25832 投影坐标"""
    if abs(x) > 90 or abs(y) > 90:
        return utm32_to_wgs84(x, y)
    return Coordinate(float(y), float(x))

def representative_coordinate(geometry: Optional[Dict[str, Any]]) -> Optional[Coordinate]:
    """从 Point / MultiPoint / LineString / Polygon 等几何中取第一个顶点"""
    if not geometry or not isinstance(geometry.get("coordinates"), list):
        return None
    coords: Any = geometry["coordinates"]
    while isinstance(coords, list) and coords and isinstance(coords[0], list):
        coords = coords[0]
    if not isinstance(coords, list) or len(coords) < 2:
        return None
    try:
        return point_to_coordinate(float(coords[0]), float(coords[1]))
    except (TypeError, ValueError):
        return None

def bbox_center(bbox: Sequence[float]) -> Optional[Coordinate]:
    if not isinstance(bbox, (list, tuple)) or len(bbox) != 4:
        return None
    min_x, min_y, max_x, max_y = (float(v) for v in bbox)
    return point_to_coordinate((min_x + max_x) / 2, (min_y + max_y) / 2)

def format_foreign_label(props: Optional[Dict[str, Any]]) -> str:
    """国外地理编码结果的展示文本：优先 label，否则由结构化字段拼接"""
    if not props:
        return "Unknown address"
    if props.get("label"):
        return str(props["label"])

    parts = []
    if props.get("name"):
        parts.append(str(props["name"]))
    street = " ".join(str(props[k]) for k in ("street", "housenumber") if props.get(k))
    if street:
        parts.append(street)
    town = [str(props["postalcode"])] if props.get("postalcode") else []
    if props.get("locality"):
        town.append(str(props["locality"]))
    elif props.get("city"):
        town.append(str(props["city"]))
    if town:
        parts.append(" ".join(town))
    if props.get("region") and props["region"] not in parts:
        parts.append(str(props["region"]))
    if props.get("country"):
        parts.append(str(props["country"]))
    return ", ".join(parts) if parts else "Unknown address"

def address_text_from_registry(data: Optional[Dict[str, Any]]) -> Tuple[str, Optional[str]]:
    """国内地址反查结果（嵌套或扁平结构）-> (地址文本, 邮编)"""
    if not data:
        return ("", None)
    src = data.get("adgangsadresse") if isinstance(data.get("adgangsadresse"), dict) else data
    street = src.get("vejnavn") or ""
    number = src.get("husnr") or ""
    postcode = src.get("postnr")
    town = src.get("postnrnavn") or ""
    if not street and not postcode:
        return ("", None)
    street_part = f"{street} {number}".strip()
    town_part = " ".join(str(p) for p in (postcode, town) if p)
    text = ", ".join(p for p in (street_part, town_part) if p)
    return (text, str(postcode) if postcode else None)

def coordinate_label(coord: Coordinate) -> str:
    return f"Coordinates: {coord.lat:.5f}, {coord.lon:.5f}"

class EnhancedJSONEncoder(json.JSONEncoder):
    def default(self, obj: Any) -> Any:
        if is_dataclass(obj):
            return asdict(obj)
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, tuple):
            return list(obj)
        return super().default(obj)
