"""
外部位置服务客户端：国内地址登记、地名库、道路登记、国外地理编码。
这里只负责请求与响应的结构化；候选归一化在 sources.py。
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import SourceUnavailable, TransportError
from .http import HttpResponse, JsonHttpClient
from .models import Coordinate, QuotaInfo
from .quota import QuotaTracker, parse_quota_headers
from .utils import bbox_center, format_foreign_label, point_to_coordinate, representative_coordinate

logger = logging.getLogger(__name__)

@dataclass
class RegistryHit:
    id: str
    display_text: str
    coordinate: Optional[Coordinate] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

@dataclass
class RegistryDetail:
    coordinate: Coordinate
    attributes: Dict[str, Any] = field(default_factory=dict)

async def _get(http: JsonHttpClient, source: str, url: str, params: Optional[Dict[str, Any]] = None,
               allow_404: bool = False) -> HttpResponse:
    try:
        resp = await http.request("GET", url, params=params)
    except TransportError as exc:
        raise SourceUnavailable(source, str(exc)) from exc
    if resp.status == 404 and allow_404:
        return resp
    if not resp.ok:
        raise SourceUnavailable(source, f"HTTP {resp.status}")
    return resp


class AddressRegistry:
    name = "address_registry"

    def __init__(self, http: JsonHttpClient, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    async def autocomplete(self, text: str, limit: int = 20) -> List[RegistryHit]:
        resp = await _get(self.http, self.name, f"{self.base_url}/adgangsadresser/autocomplete",
                          {"q": text, "per_side": int(limit)})
        hits: List[RegistryHit] = []
        for item in resp.payload or []:
            addr = item.get("adgangsadresse") or {}
            if not addr.get("id"):
                continue
            hits.append(RegistryHit(id=str(addr["id"]), display_text=item.get("tekst") or "", attributes=item))
        return hits

    async def detail(self, address_id: str) -> Optional[RegistryDetail]:
        resp = await _get(self.http, self.name, f"{self.base_url}/adgangsadresser/{address_id}", allow_404=True)
        if resp.status == 404 or not isinstance(resp.payload, dict):
            return None
        coords = (resp.payload.get("adgangspunkt") or {}).get("koordinater")
        if not isinstance(coords, list) or len(coords) < 2:
            return None
        # 坐标顺序为 [lon, lat]
        return RegistryDetail(coordinate=Coordinate(float(coords[1]), float(coords[0])), attributes=resp.payload)

    async def reverse(self, lat: float, lon: float) -> Optional[Dict[str, Any]]:
        resp = await _get(self.http, self.name, f"{self.base_url}/adgangsadresser/reverse",
                          {"x": lon, "y": lat, "struktur": "flad"}, allow_404=True)
        if resp.status == 404 or not isinstance(resp.payload, dict):
            return None
        return resp.payload


class PlaceNameRegistry:
    """地名库；命中结果自带几何，选中时无需再请求详情。"""
    name = "place_name_registry"

    def __init__(self, http: JsonHttpClient, base_url: str, token: str = "") -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.token = token

    async def autocomplete(self, text: str, limit: int = 20) -> List[RegistryHit]:
        params: Dict[str, Any] = {"q": text, "limit": int(limit)}
        if self.token:
            params["token"] = self.token
        resp = await _get(self.http, self.name, f"{self.base_url}/stednavn", params)
        data = resp.payload
        items = data.get("results") if isinstance(data, dict) else data
        hits: List[RegistryHit] = []
        for item in items or []:
            text_ = item.get("visningstekst") or item.get("navn") or item.get("skrivemaade_officiel") or ""
            geometry = item.get("geometry") or item.get("geometri")
            coord = representative_coordinate(geometry)
            if coord is None and isinstance(item.get("bbox"), dict):
                coord = representative_coordinate(item["bbox"])
            hits.append(RegistryHit(id=str(item.get("id") or text_), display_text=text_, coordinate=coord,
                                    attributes=item))
        return hits


class RoadRegistry:
    name = "road_registry"

    def __init__(self, http: JsonHttpClient, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    @staticmethod
    def wildcard(text: str) -> str:
        return " ".join(w + "*" for w in text.split())

    async def autocomplete(self, text: str, limit: int = 20) -> List[RegistryHit]:
        resp = await _get(self.http, self.name, f"{self.base_url}/navngivneveje",
                          {"q": self.wildcard(text), "per_side": int(limit)})
        hits: List[RegistryHit] = []
        for item in resp.payload or []:
            hits.append(RegistryHit(
                id=str(item.get("id") or ""),
                display_text=item.get("navn") or item.get("adresseringsnavn") or "",
                coordinate=self.road_coordinate(item),
                attributes=item,
            ))
        return hits

    async def detail(self, road_id: str) -> Optional[RegistryDetail]:
        resp = await _get(self.http, self.name, f"{self.base_url}/navngivneveje/{road_id}", allow_404=True)
        if resp.status == 404 or not isinstance(resp.payload, dict):
            return None
        coord = self.road_coordinate(resp.payload)
        if coord is None:
            return None
        return RegistryDetail(coordinate=coord, attributes=resp.payload)

    async def geometry(self, road_id: str) -> Optional[Dict[str, Any]]:
        """道路中心线（GeoJSON LineString / MultiLineString，EPSG:25832）；没有几何时返回 None"""
        resp = await _get(self.http, self.name, f"{self.base_url}/navngivneveje/{road_id}",
                          {"srid": 25832}, allow_404=True)
        if resp.status == 404 or not isinstance(resp.payload, dict):
            return None
        line = (resp.payload.get("beliggenhed") or {}).get("vejnavnelinje")
        if not isinstance(line, dict) or line.get("type") not in ("LineString", "MultiLineString"):
            return None
        return line

    @staticmethod
    def road_coordinate(item: Dict[str, Any]) -> Optional[Coordinate]:
        # 优先可视中心点，其次 bbox 中心
        center = item.get("visueltcenter")
        if isinstance(center, list) and len(center) == 2:
            return point_to_coordinate(float(center[0]), float(center[1]))
        return bbox_center(item.get("bbox"))


class ForeignGeocoder:
    """全球地理编码服务；每次响应都附带限流头，转交 QuotaTracker。"""
    name = "foreign_geocoder"

    def __init__(self, http: JsonHttpClient, base_url: str, api_key: str = "",
                 quota: Optional[QuotaTracker] = None) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.quota = quota

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _track(self, resp: HttpResponse) -> Optional[QuotaInfo]:
        if self.quota is not None:
            return self.quota.update(self.name, resp.headers)
        return parse_quota_headers(resp.headers)

    async def search_text(self, text: str, size: int = 10) -> Tuple[List[RegistryHit], Optional[QuotaInfo]]:
        if not self.enabled:
            return ([], None)
        resp = await _get(self.http, self.name, f"{self.base_url}/geocode/search",
                          {"api_key": self.api_key, "text": text, "size": int(size)})
        quota = self._track(resp)
        features = (resp.payload or {}).get("features") if isinstance(resp.payload, dict) else None
        hits: List[RegistryHit] = []
        for f in features or []:
            hit = self._feature_hit(f)
            if hit is not None:
                hits.append(hit)
        return (hits, quota)

    async def reverse(self, lat: float, lon: float) -> Tuple[Optional[RegistryHit], Optional[QuotaInfo]]:
        if not self.enabled:
            return (None, None)
        resp = await _get(self.http, self.name, f"{self.base_url}/geocode/reverse",
                          {"api_key": self.api_key, "point.lat": lat, "point.lon": lon, "size": 1})
        quota = self._track(resp)
        features = (resp.payload or {}).get("features") if isinstance(resp.payload, dict) else None
        if not features:
            return (None, quota)
        return (self._feature_hit(features[0]), quota)

    @staticmethod
    def _feature_hit(feature: Dict[str, Any]) -> Optional[RegistryHit]:
        coords = (feature.get("geometry") or {}).get("coordinates")
        if not isinstance(coords, list) or len(coords) < 2 or coords[0] is None or coords[1] is None:
            return None
        props = feature.get("properties") or {}
        return RegistryHit(
            id=str(props.get("gid") or props.get("id") or ""),
            display_text=format_foreign_label(props),
            coordinate=Coordinate(float(coords[1]), float(coords[0])),
            attributes=props,
        )
