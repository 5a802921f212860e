"""
两条道路的交叉点：对道路中心线求交，只保留点状交集（重叠路段不算交叉），
投影坐标换算为 WGS84。
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List

from shapely.errors import GEOSException
from shapely.geometry import shape

from .models import Coordinate
from .utils import point_to_coordinate

logger = logging.getLogger(__name__)


def _points(geom) -> List[Any]:
    if geom.is_empty:
        return []
    if geom.geom_type == "Point":
        return [geom]
    if geom.geom_type in ("MultiPoint", "GeometryCollection"):
        found: List[Any] = []
        for part in geom.geoms:
            found.extend(_points(part))
        return found
    return []


def road_crossings(first: Dict[str, Any], second: Dict[str, Any], precision: int = 6) -> List[Coordinate]:
    """返回两条线几何的交叉点，按纬度、经度排序并去重"""
    try:
        hit = shape(first).intersection(shape(second))
    except (GEOSException, AttributeError, KeyError, TypeError, ValueError) as exc:
        logger.warning("Road geometries could not be intersected: %s", exc)
        return []
    seen = set()
    crossings: List[Coordinate] = []
    for p in _points(hit):
        coord = point_to_coordinate(p.x, p.y)
        key = (round(coord.lat, precision), round(coord.lon, precision))
        if key in seen:
            continue
        seen.add(key)
        crossings.append(Coordinate(*key))
    crossings.sort(key=lambda c: (c.lat, c.lon))
    return crossings
