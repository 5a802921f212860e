from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .area_filter import ALL_AREAS, AreaFilterRule
from .debounce import DebouncedTask
from .errors import PinpointError
from .models import (
    Coordinate,
    Marker,
    MarkerMeta,
    MarkerRecord,
    PlacementMode,
    RestoreResult,
    RestoreScope,
    ReverseGeocodeResult,
)
from .sync import RemoteMarkerSync

logger = logging.getLogger(__name__)

ReverseGeocoder = Callable[[Coordinate], Awaitable[Optional[ReverseGeocodeResult]]]


@dataclass
class DetailView:
    marker: Marker
    address_text: str
    note: str
    reverse_geocode: Optional[Dict[str, Any]] = None
    from_cache: bool = False


def apply_reverse_result(meta: MarkerMeta, result: ReverseGeocodeResult) -> None:
    meta.address_text = result.address_text
    if result.postal_code:
        meta.postal_code = result.postal_code
    meta.reverse_geocode = {"provider": result.provider, **result.raw}


class MarkerStateManager:
    """
    标记状态机：Transient / Retained / RemotePersisted。
    - Transient：新建标记会替换旧标记，始终最多一个；
    - Retained：进入时迁移当前临时标记，之后每次新建都追加，单个删除需用户确认；
    - RemotePersisted：进入时把当前标记写入远程，之后每次新建都写入远程同步服务。
    离开 Retained 清空保留集合与当前选择；离开 RemotePersisted 只清空本地渲染，不删除远程数据。
    current 是唯一的“当前选择”引用，每条修改路径结束时都处于确定状态。
    """

    def __init__(self, sync: Optional[RemoteMarkerSync] = None, reverse_geocoder: Optional[ReverseGeocoder] = None,
                 highlight_seconds: float = 4.0, debouncer: Optional[DebouncedTask] = None) -> None:
        self.sync = sync
        self.reverse_geocoder = reverse_geocoder
        self.highlight_seconds = highlight_seconds
        self.debouncer = debouncer or DebouncedTask()
        self.mode = PlacementMode.TRANSIENT
        self.current: Optional[Marker] = None
        self.retained: List[Marker] = []
        self.remote: Dict[str, Marker] = {}
        self.area_rule: AreaFilterRule = ALL_AREAS

    # ---------------- 模式切换 ----------------

    async def set_mode(self, mode: PlacementMode) -> None:
        if mode == self.mode:
            return
        if mode == PlacementMode.REMOTE_PERSISTED and self.sync is None:
            raise ValueError("Remote mode needs a RemoteMarkerSync")
        previous = self.mode
        carried = self.current

        if previous == PlacementMode.RETAINED:
            self.retained.clear()
            self.current = None
            carried = None
        elif previous == PlacementMode.REMOTE_PERSISTED:
            self._detach_remote()
            carried = None

        self.mode = mode
        logger.info("Placement mode %s -> %s", previous.value, mode.value)

        if carried is None:
            return
        if mode == PlacementMode.RETAINED:
            carried.mode = PlacementMode.RETAINED
            self.retained.append(carried)
        elif mode == PlacementMode.REMOTE_PERSISTED:
            persisted = await self._persist(carried)
            if self.current is carried:
                self.current = persisted

    async def on_overlay_toggled(self, mode: PlacementMode, active: bool) -> None:
        """外部图层开关：打开即进入对应模式，关闭当前模式的图层则回到 Transient"""
        if active:
            await self.set_mode(mode)
        elif self.mode == mode:
            await self.set_mode(PlacementMode.TRANSIENT)

    def _detach_remote(self) -> None:
        for key in list(self.remote):
            self.debouncer.cancel(("highlight", key))
        self.remote.clear()
        if self.current is not None and self.current.mode == PlacementMode.REMOTE_PERSISTED:
            self.current = None

    # ---------------- 标记操作 ----------------

    async def create(self, coordinate: Coordinate, meta: Optional[MarkerMeta] = None) -> Marker:
        marker = Marker(coordinate=coordinate, mode=self.mode, meta=meta or MarkerMeta())
        if self.mode == PlacementMode.TRANSIENT:
            self.current = marker
        elif self.mode == PlacementMode.RETAINED:
            self.retained.append(marker)
            self.current = marker
        else:
            self.current = marker
            persisted = await self._persist(marker)
            if self.current is marker:
                self.current = persisted
            return persisted
        return marker

    async def _persist(self, marker: Marker) -> Marker:
        marker.mode = PlacementMode.REMOTE_PERSISTED
        try:
            await self.sync.create(marker)
        except PinpointError as exc:
            # 本地状态不回滚
            logger.warning("Persisting marker %s failed: %s", marker.handle, exc)
        if self.mode != PlacementMode.REMOTE_PERSISTED:
            # 等待期间已离开远程模式，不再渲染
            return marker
        if marker.stable_id and self.sync.is_deleted(marker.stable_id):
            logger.debug("Marker %s was deleted while being persisted, not rendering it", marker.stable_id)
            return marker
        key = marker.stable_id or marker.handle
        existing = self.remote.get(key)
        if existing is not None and existing is not marker:
            logger.debug("Marker %s already rendered, reusing it", key)
            return existing
        self.remote[key] = marker
        return marker

    async def select(self, marker: Marker) -> DetailView:
        self.current = marker
        meta = marker.meta
        if meta.address_text or meta.reverse_geocode:
            return DetailView(marker, meta.address_text, meta.note, meta.reverse_geocode, from_cache=True)
        if self.reverse_geocoder is not None:
            try:
                result = await self.reverse_geocoder(marker.coordinate)
            except PinpointError as exc:
                logger.warning("Reverse geocoding for marker %s failed: %s", marker.handle, exc)
                result = None
            if result is not None:
                apply_reverse_result(meta, result)
        return DetailView(marker, meta.address_text, meta.note, meta.reverse_geocode, from_cache=False)

    async def delete(self, marker: Marker, confirmed: bool = False) -> bool:
        if marker.mode == PlacementMode.RETAINED:
            if not confirmed:
                return False
            self.retained = [m for m in self.retained if m is not marker]
        elif marker.mode == PlacementMode.REMOTE_PERSISTED:
            try:
                if self.sync is not None and marker.stable_id:
                    await self.sync.soft_delete(marker.stable_id)
            except PinpointError as exc:
                logger.warning("Remote soft delete of %s failed, removing locally anyway: %s", marker.stable_id, exc)
            finally:
                self._drop_remote(marker)
        if self.current is marker:
            self.current = None
        return True

    def _drop_remote(self, marker: Marker) -> None:
        for key, m in list(self.remote.items()):
            if m is marker:
                self.debouncer.cancel(("highlight", key))
                del self.remote[key]

    def edit_note(self, marker: Marker, text: str) -> None:
        marker.meta.note = text
        if marker.mode == PlacementMode.REMOTE_PERSISTED and marker.stable_id and self.sync is not None:
            self.sync.queue_note(marker.stable_id, text)

    # ---------------- 远程集合 ----------------

    async def load_remote(self, area_rule: Optional[AreaFilterRule] = None) -> List[Marker]:
        if self.sync is None:
            return []
        if area_rule is not None:
            self.area_rule = area_rule
        try:
            records = await self.sync.list(self.area_rule)
        except PinpointError as exc:
            logger.warning("Loading remote markers failed: %s", exc)
            return list(self.remote.values())

        fresh: Dict[str, Marker] = {}
        for r in records:
            fresh[r.stable_id] = self._marker_from_record(r, self.remote.get(r.stable_id))
        for key in self.remote:
            if key not in fresh:
                self.debouncer.cancel(("highlight", key))
        self.remote = fresh
        if self.current is not None and self.current.mode == PlacementMode.REMOTE_PERSISTED \
                and self.current not in fresh.values():
            self.current = None
        logger.info("Rendered %d remote markers for area %s", len(fresh), self.area_rule.name)
        return list(fresh.values())

    @staticmethod
    def _marker_from_record(record: MarkerRecord, existing: Optional[Marker]) -> Marker:
        marker = existing or Marker(coordinate=record.coordinate, mode=PlacementMode.REMOTE_PERSISTED)
        marker.stable_id = record.stable_id
        marker.remote_id = record.id
        marker.meta.note = record.note or ""
        if record.address_text:
            marker.meta.address_text = record.address_text
        if record.postal_code:
            marker.meta.postal_code = record.postal_code
        return marker

    async def restore(self, scope: RestoreScope) -> RestoreResult:
        """恢复后重新拉取列表，只高亮本次返回的 id；传输故障向上抛出，空结果为 noop"""
        if self.sync is None:
            return RestoreResult(scope=scope, restored_ids=[])
        result = await self.sync.restore(scope)
        if result.noop:
            return result
        await self.load_remote()
        self._highlight(result.restored_ids)
        return result

    def _highlight(self, ids: List[str]) -> None:
        wanted = set(ids)
        for key, marker in self.remote.items():
            if key in wanted or marker.remote_id in wanted:
                marker.meta.highlighted = True
                self.debouncer.schedule(("highlight", key), self.highlight_seconds,
                                        lambda m=marker: self._unhighlight(m))

    @staticmethod
    def _unhighlight(marker: Marker) -> None:
        marker.meta.highlighted = False

    def highlighted(self) -> List[Marker]:
        return [m for m in self.remote.values() if m.meta.highlighted]

    # ---------------- 视图 ----------------

    def visible_markers(self) -> List[Marker]:
        if self.mode == PlacementMode.TRANSIENT:
            return [self.current] if self.current is not None else []
        if self.mode == PlacementMode.RETAINED:
            return list(self.retained)
        return list(self.remote.values())

    def clear(self) -> None:
        self.debouncer.cancel_all()
        self.retained.clear()
        self.remote.clear()
        self.current = None
