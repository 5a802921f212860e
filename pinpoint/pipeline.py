from __future__ import annotations
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from .aggregator import DOMESTIC, FOREIGN, LiveSearch, SearchAggregator, SearchOptions
from .area_filter import AreaCatalog
from .base_data import load_curated_places
from .config import Config
from .crossings import road_crossings
from .errors import PinpointError
from .http import JsonHttpClient
from .markers import MarkerStateManager
from .models import (
    Candidate,
    Coordinate,
    Marker,
    MarkerMeta,
    NamedRoadCandidate,
    QuotaInfo,
    RankedList,
    ReverseGeocodeResult,
)
from .providers import AddressRegistry, ForeignGeocoder, PlaceNameRegistry, RoadRegistry
from .quota import QuotaTracker
from .resolver import CoordinateResolver
from .sources import AddressSource, ForeignAddressSource, LocalPointSource, NamedRoadSource, PlaceNameSource
from .store_client import MarkerStoreClient, reauthenticator
from .sync import RemoteMarkerSync
from .utils import address_text_from_registry, coordinate_label, is_domestic

logger = logging.getLogger(__name__)


class LocatorPipeline:
    """把搜索、坐标解析、地图点击反查与标记同步串起来；UI 层只调用这里的方法。"""

    def __init__(self, cfg: Config, http: JsonHttpClient, aggregator: SearchAggregator,
                 resolver: CoordinateResolver, address_registry: AddressRegistry,
                 foreign_geocoder: ForeignGeocoder, quota: QuotaTracker, store: MarkerStoreClient,
                 sync: RemoteMarkerSync, manager: MarkerStateManager, areas: AreaCatalog,
                 road_registry: Optional[RoadRegistry] = None) -> None:
        self.cfg = cfg
        self.http = http
        self.aggregator = aggregator
        self.resolver = resolver
        self.address_registry = address_registry
        self.foreign_geocoder = foreign_geocoder
        self.quota = quota
        self.store = store
        self.sync = sync
        self.manager = manager
        self.areas = areas
        self.road_registry = road_registry or RoadRegistry(http, cfg.endpoints["road_registry"])

    @classmethod
    def from_config(cls, cfg: Config, http: Optional[JsonHttpClient] = None,
                    secret_provider: Optional[Callable[[], Awaitable[str]]] = None) -> "LocatorPipeline":
        http = http or JsonHttpClient()
        ep = cfg.endpoints
        quota = QuotaTracker()

        address_registry = AddressRegistry(http, ep["address_registry"])
        place_registry = PlaceNameRegistry(http, ep["place_name_registry"], cfg.secrets.get("gsearch_token", ""))
        road_registry = RoadRegistry(http, ep["road_registry"])
        foreign = ForeignGeocoder(http, ep["foreign_geocoder"], cfg.secrets.get("ors_api_key", ""), quota)

        curated_path = cfg.data_files.get("curated_places")
        curated = load_curated_places(curated_path) if curated_path and Path(curated_path).exists() else []
        sources = [
            AddressSource(address_registry),
            PlaceNameSource(place_registry),
            NamedRoadSource(road_registry),
            LocalPointSource(cfg.data_files.get("local_points"), curated, cfg.local_points_max_age_hours),
            ForeignAddressSource(foreign),
        ]
        aggregator = SearchAggregator(sources, cfg.source_sets, cfg.min_query_length, cfg.per_source_limit,
                                      {ForeignAddressSource.name: cfg.foreign_limit})
        resolver = CoordinateResolver(address_registry, foreign)

        store = MarkerStoreClient(http, ep["marker_store"], cfg.workspace, cfg.map_id)
        if secret_provider is None:
            async def secret_provider() -> str:
                return cfg.secrets.get("marker_store_secret", "")
        sync = RemoteMarkerSync(store, note_delay=cfg.note_debounce, precision=cfg.stable_id_precision,
                                index_max=cfg.identity_index_max,
                                reauthenticate=reauthenticator(store, secret_provider))

        areas_path = cfg.data_files.get("areas")
        areas = AreaCatalog.load(areas_path) if areas_path and Path(areas_path).exists() else AreaCatalog()

        pipeline = cls(cfg, http, aggregator, resolver, address_registry, foreign, quota, store, sync,
                       MarkerStateManager(sync=sync, highlight_seconds=cfg.highlight_seconds), areas,
                       road_registry)
        pipeline.manager.reverse_geocoder = pipeline.reverse_lookup
        return pipeline

    # ---------------- 搜索 ----------------

    async def search(self, query: str, foreign_only: bool = False) -> RankedList:
        return await self.aggregator.aggregate(query, SearchOptions(source_set=FOREIGN if foreign_only else DOMESTIC))

    def live_search(self, on_results: Callable[[RankedList], None]) -> LiveSearch:
        return LiveSearch(self.aggregator, on_results, delay=self.cfg.search_debounce)

    async def locate(self, text: str, cached: Optional[Coordinate] = None) -> Optional[Coordinate]:
        return await self.resolver.resolve(text, cached)

    async def choose(self, candidate: Candidate) -> Optional[Marker]:
        """用户点选候选：取坐标（必要时查详情），放置标记"""
        coord = candidate.coordinate
        source = self.aggregator.sources.get(candidate.source_tag)
        if coord is None and source is not None:
            try:
                coord = await source.resolve(candidate)
            except PinpointError as exc:
                logger.warning("Resolving %r via %s failed: %s", candidate.display_text, candidate.source_tag, exc)
        if coord is None:
            coord = await self.resolver.resolve(candidate.display_text)
        if coord is None:
            logger.info("No coordinate for candidate %r", candidate.display_text)
            return None

        meta = MarkerMeta(address_text=candidate.display_text)
        found = await self.reverse_lookup(coord)
        if found is not None:
            meta.postal_code = found.postal_code
            meta.reverse_geocode = {"provider": found.provider, **found.raw}
        return await self.manager.create(coord, meta)

    # ---------------- 地图点击 ----------------

    async def click(self, lat: float, lon: float) -> Marker:
        coord = Coordinate(float(lat), float(lon))
        found = await self.reverse_lookup(coord)
        if found is None:
            found = ReverseGeocodeResult(address_text=coordinate_label(coord), provider="coordinates")
        meta = MarkerMeta(address_text=found.address_text, postal_code=found.postal_code,
                          reverse_geocode={"provider": found.provider, **found.raw})
        return await self.manager.create(coord, meta)

    async def reverse_lookup(self, coord: Coordinate) -> Optional[ReverseGeocodeResult]:
        """境内用国内地址登记反查，境外用国外地理编码；查不到或服务故障返回 None"""
        try:
            if is_domestic(coord.lat, coord.lon):
                data = await self.address_registry.reverse(coord.lat, coord.lon)
                text, postal = address_text_from_registry(data)
                if not text:
                    return None
                return ReverseGeocodeResult(text, postal, self.address_registry.name, data or {})
            hit, _quota = await self.foreign_geocoder.reverse(coord.lat, coord.lon)
        except PinpointError as exc:
            logger.warning("Reverse geocoding %.5f, %.5f failed: %s", coord.lat, coord.lon, exc)
            return None
        if hit is None:
            return None
        postal = hit.attributes.get("postalcode")
        return ReverseGeocodeResult(hit.display_text, str(postal) if postal else None,
                                    self.foreign_geocoder.name, hit.attributes)

    # ---------------- 道路交叉点 ----------------

    async def find_crossing(self, first: NamedRoadCandidate, second: NamedRoadCandidate) -> List[Marker]:
        """两条已选道路的交叉点：每个交点放一个标记并反查地址；没有几何或不相交时返回空列表"""
        if not first.road_id or not second.road_id:
            raise ValueError("Both roads must be selected from the road registry")
        try:
            line_a = await self.road_registry.geometry(first.road_id)
            line_b = await self.road_registry.geometry(second.road_id)
        except PinpointError as exc:
            logger.warning("Fetching road geometry failed: %s", exc)
            return []
        if line_a is None or line_b is None:
            logger.info("No geometry for %r or %r", first.display_text, second.display_text)
            return []
        points = road_crossings(line_a, line_b)
        if not points:
            logger.info("%r and %r do not cross", first.display_text, second.display_text)
            return []
        markers: List[Marker] = []
        for coord in points:
            markers.append(await self.click(coord.lat, coord.lon))
        return markers

    # ---------------- 远程存储 ----------------

    async def login(self, secret: Optional[str] = None) -> None:
        await self.store.login(secret if secret is not None else self.cfg.secrets.get("marker_store_secret", ""))

    async def load_area(self, name: Optional[str] = None):
        return await self.manager.load_remote(self.areas.get(name))

    def quota_snapshot(self) -> Dict[str, QuotaInfo]:
        return self.quota.snapshot()

    async def close(self) -> None:
        await self.sync.flush()
        self.manager.clear()
        await self.http.close()
