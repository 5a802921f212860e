from __future__ import annotations
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from .base_data import load_point_features
from .errors import SourceUnavailable
from .models import (
    AddressCandidate,
    Candidate,
    Coordinate,
    ForeignAddressCandidate,
    LocalPointCandidate,
    NamedRoadCandidate,
    PlaceNameCandidate,
)
from .providers import AddressRegistry, ForeignGeocoder, PlaceNameRegistry, RoadRegistry
from .utils import normalize_text, representative_coordinate

logger = logging.getLogger(__name__)


class CandidateSource(Protocol):
    name: str

    async def search(self, text: str, limit: int) -> List[Candidate]: ...

    async def resolve(self, candidate: Candidate) -> Optional[Coordinate]: ...


class AddressSource:
    """国内地址：检索阶段不带坐标，选中时再请求 detail。"""
    name = "address"

    def __init__(self, registry: AddressRegistry) -> None:
        self.registry = registry

    async def search(self, text: str, limit: int) -> List[Candidate]:
        hits = await self.registry.autocomplete(text, limit)
        return [
            AddressCandidate(display_text=h.display_text, source_tag=self.name, raw=h.attributes, address_id=h.id)
            for h in hits
        ]

    async def resolve(self, candidate: Candidate) -> Optional[Coordinate]:
        if candidate.coordinate is not None:
            return candidate.coordinate
        address_id = getattr(candidate, "address_id", None)
        if not address_id:
            return None
        detail = await self.registry.detail(address_id)
        if detail is None:
            return None
        candidate.coordinate = detail.coordinate
        candidate.raw = {**candidate.raw, "detail": detail.attributes}
        return detail.coordinate


class PlaceNameSource:
    name = "place_name"

    def __init__(self, registry: PlaceNameRegistry) -> None:
        self.registry = registry

    async def search(self, text: str, limit: int) -> List[Candidate]:
        hits = await self.registry.autocomplete(text, limit)
        return [
            PlaceNameCandidate(display_text=h.display_text, coordinate=h.coordinate, source_tag=self.name, raw=h.attributes)
            for h in hits
        ]

    async def resolve(self, candidate: Candidate) -> Optional[Coordinate]:
        return candidate.coordinate


class NamedRoadSource:
    name = "named_road"

    def __init__(self, registry: RoadRegistry) -> None:
        self.registry = registry

    async def search(self, text: str, limit: int) -> List[Candidate]:
        hits = await self.registry.autocomplete(text, limit)
        return [
            NamedRoadCandidate(display_text=h.display_text, coordinate=h.coordinate, source_tag=self.name,
                               raw=h.attributes, road_id=h.id or None)
            for h in hits
        ]

    async def resolve(self, candidate: Candidate) -> Optional[Coordinate]:
        if candidate.coordinate is not None:
            return candidate.coordinate
        road_id = getattr(candidate, "road_id", None)
        if not road_id:
            return None
        detail = await self.registry.detail(road_id)
        if detail is None:
            return None
        candidate.coordinate = detail.coordinate
        return detail.coordinate


class LocalPointSource:
    """
    本地点数据集（如救援点编号）+ 人工维护的特殊地点，客户端内存过滤。
    数据集超过 max_age_hours 后在下一次检索时重新加载。
    """
    name = "local_point"

    def __init__(self, points_path: Optional[str], curated_places: Optional[List[Dict[str, Any]]] = None,
                 max_age_hours: float = 24.0, label_field: str = "StrandNr",
                 label_prefix: str = "Rescue point", clock: Callable[[], float] = time.time) -> None:
        self.points_path = points_path
        self.curated_places = list(curated_places or [])
        self.max_age_s = max_age_hours * 3600.0
        self.label_field = label_field
        self.label_prefix = label_prefix
        self.clock = clock
        self._features: List[Dict[str, Any]] = []
        self._loaded_at: Optional[float] = None

    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return self.clock() - self._loaded_at > self.max_age_s

    def _ensure_loaded(self) -> None:
        if not self.points_path or not self.is_stale():
            return
        try:
            self._features = load_point_features(self.points_path)
        except (OSError, ValueError) as exc:
            if self._loaded_at is None:
                raise SourceUnavailable(self.name, str(exc)) from exc
            # 已有旧数据时继续使用旧数据
            logger.warning("Reloading local points failed, keeping cached copy: %s", exc)
            return
        self._loaded_at = self.clock()
        logger.info("Loaded %d local points from %s", len(self._features), self.points_path)

    async def search(self, text: str, limit: int) -> List[Candidate]:
        self._ensure_loaded()
        q = normalize_text(text)
        out: List[Candidate] = []
        for feature in self._features:
            label = str((feature.get("properties") or {}).get(self.label_field) or "")
            if not label or q not in label.casefold():
                continue
            out.append(LocalPointCandidate(
                display_text=f"{self.label_prefix} {label}",
                coordinate=representative_coordinate(feature.get("geometry")),
                source_tag=self.name,
                raw=feature,
            ))
        for place in self.curated_places:
            if q in place["name"].casefold():
                out.append(LocalPointCandidate(
                    display_text=place["name"],
                    coordinate=Coordinate(place["lat"], place["lon"]),
                    source_tag=self.name,
                    raw=place,
                    curated=True,
                ))
        return out[:limit]

    async def resolve(self, candidate: Candidate) -> Optional[Coordinate]:
        return candidate.coordinate


class ForeignAddressSource:
    name = "foreign_address"

    def __init__(self, geocoder: ForeignGeocoder) -> None:
        self.geocoder = geocoder

    async def search(self, text: str, limit: int) -> List[Candidate]:
        hits, _quota = await self.geocoder.search_text(text, limit)
        return [
            ForeignAddressCandidate(display_text=h.display_text, coordinate=h.coordinate, source_tag=self.name,
                                    raw=h.attributes, country=h.attributes.get("country"))
            for h in hits
        ]

    async def resolve(self, candidate: Candidate) -> Optional[Coordinate]:
        return candidate.coordinate
