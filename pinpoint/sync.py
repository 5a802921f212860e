"""
远程标记同步服务
1. 创建去重：按坐标计算稳定 id，会话内的身份索引命中则跳过网络写入；同一 id 并发创建共用一次调用。
2. 备注防抖：每个标记一个计时器，只发送计时器触发时的最新值；与上次已发送的值相同则不发送。
3. 软删除：先标记本地已删除（挂起的备注回调与未完成的创建据此放弃渲染），等待该 id 未完成的创建落地后再调用远程删除；身份索引同时移除。
4. 恢复：返回被恢复的 id 列表；空列表是正常结果（noop），传输故障才抛异常。
5. 列表：按当前区域的邮编规则过滤，远程数据不受影响。
6. 认证：with_auth_retry 在 AuthRequired 时执行一次重新认证并重试一次。
"""
from __future__ import annotations
import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .area_filter import ALL_AREAS, AreaFilterRule
from .debounce import DebouncedTask
from .errors import AuthRequired, PinpointError
from .models import Marker, MarkerRecord, RestoreResult, RestoreScope
from .store_client import MarkerStore
from .utils import make_stable_id

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IdentityIndex:
    """stable_id -> remote_id 的有界 LRU 映射，生命周期为当前会话；淘汰时通知 on_evict。"""

    def __init__(self, max_entries: int = 1000, on_evict: Optional[Callable[[str], None]] = None) -> None:
        self.max_entries = max(1, int(max_entries))
        self.on_evict = on_evict
        self._items: "OrderedDict[str, str]" = OrderedDict()

    def get(self, stable_id: str) -> Optional[str]:
        remote_id = self._items.get(stable_id)
        if remote_id is not None:
            self._items.move_to_end(stable_id)
        return remote_id

    def put(self, stable_id: str, remote_id: str) -> None:
        self._items[stable_id] = remote_id
        self._items.move_to_end(stable_id)
        while len(self._items) > self.max_entries:
            evicted, _ = self._items.popitem(last=False)
            logger.debug("Identity index full, evicted %s", evicted)
            if self.on_evict is not None:
                self.on_evict(evicted)

    def drop(self, stable_id: str) -> None:
        self._items.pop(stable_id, None)

    def __contains__(self, stable_id: object) -> bool:
        return stable_id in self._items

    def __len__(self) -> int:
        return len(self._items)


class RemoteMarkerSync:
    def __init__(self, store: MarkerStore, debouncer: Optional[DebouncedTask] = None,
                 note_delay: float = 0.6, precision: int = 5, index_max: int = 1000,
                 reauthenticate: Optional[Callable[[], Awaitable[None]]] = None) -> None:
        self.store = store
        self.debouncer = debouncer or DebouncedTask()
        self.note_delay = note_delay
        self.precision = precision
        self.index = IdentityIndex(index_max, on_evict=self._forget_identity)
        self.reauthenticate = reauthenticate
        self._inflight: Dict[str, asyncio.Task] = {}
        # 已软删除的 id，与身份索引同样有界
        self._deleted: "OrderedDict[str, None]" = OrderedDict()
        self._pending_notes: Dict[str, str] = {}
        self._last_sent_note: Dict[str, str] = {}
        self._reauth_task: Optional[asyncio.Task] = None

    @property
    def workspace(self) -> str:
        return self.store.workspace

    @property
    def map_id(self) -> str:
        return self.store.map_id

    def stable_id_for(self, marker: Marker) -> str:
        return make_stable_id(self.workspace, self.map_id, marker.coordinate.lat, marker.coordinate.lon,
                              self.precision)

    def remote_id_for(self, stable_id: str) -> str:
        # 参考存储中 remote id 与 stable id 相同；索引未命中时按此回退
        return self.index.get(stable_id) or stable_id

    def is_deleted(self, stable_id: str) -> bool:
        return stable_id in self._deleted

    def _mark_deleted(self, stable_id: str) -> None:
        self._deleted[stable_id] = None
        self._deleted.move_to_end(stable_id)
        while len(self._deleted) > self.index.max_entries:
            self._deleted.popitem(last=False)

    def _forget_identity(self, stable_id: str) -> None:
        self._last_sent_note.pop(stable_id, None)

    # ---------------- 认证 ----------------

    async def with_auth_retry(self, op: Callable[[], Awaitable[T]]) -> T:
        try:
            return await op()
        except AuthRequired:
            if self.reauthenticate is None:
                raise
            logger.info("Marker store session rejected, re-authenticating")
        await self._reauth_once()
        # 第二次被拒直接向上抛出
        return await op()

    async def _reauth_once(self) -> None:
        # 并发请求同时被拒时共用同一次重新认证
        if self._reauth_task is None or self._reauth_task.done():
            self._reauth_task = asyncio.ensure_future(self.reauthenticate())
        await self._reauth_task

    # ---------------- 创建 / 修改 / 删除 ----------------

    async def create(self, marker: Marker) -> str:
        stable_id = marker.stable_id or self.stable_id_for(marker)
        marker.stable_id = stable_id

        cached = self.index.get(stable_id)
        if cached is not None:
            logger.debug("Create for %s skipped, already linked to %s", stable_id, cached)
            marker.remote_id = cached
            return cached

        task = self._inflight.get(stable_id)
        if task is None:
            # 显式重新创建即复活该 id
            self._deleted.pop(stable_id, None)
            task = asyncio.ensure_future(self._create_remote(stable_id, self._payload(marker)))
            self._inflight[stable_id] = task
            task.add_done_callback(lambda t, sid=stable_id: self._forget_inflight(sid, t))
        else:
            logger.debug("Create for %s joins in-flight request", stable_id)
        remote_id = await task
        marker.remote_id = remote_id
        return remote_id

    def _forget_inflight(self, stable_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(stable_id) is task:
            del self._inflight[stable_id]

    def _payload(self, marker: Marker) -> Dict[str, Any]:
        return {
            "stable_id": marker.stable_id,
            "lat": round(marker.coordinate.lat, self.precision),
            "lon": round(marker.coordinate.lon, self.precision),
            "note": marker.meta.note,
            "address_text": marker.meta.address_text,
            "postal_code": marker.meta.postal_code,
        }

    async def _create_remote(self, stable_id: str, payload: Dict[str, Any]) -> str:
        record = await self.with_auth_retry(lambda: self.store.create_marker(payload))
        self.index.put(stable_id, record.id)
        self._last_sent_note[stable_id] = record.note or ""
        logger.info("Created remote marker %s (stable id %s)", record.id, stable_id)
        return record.id

    async def patch(self, stable_id: str, fields: Dict[str, Any]) -> MarkerRecord:
        remote_id = self.remote_id_for(stable_id)
        return await self.with_auth_retry(lambda: self.store.patch_marker(remote_id, fields))

    async def soft_delete(self, stable_id: str) -> None:
        self._mark_deleted(stable_id)
        self.cancel_note(stable_id)
        task = self._inflight.get(stable_id)
        if task is not None:
            # 行尚未写入时删除会落空，先等创建结束
            try:
                await task
            except PinpointError as exc:
                logger.debug("Create for %s failed before delete: %s", stable_id, exc)
        remote_id = self.remote_id_for(stable_id)
        self._last_sent_note.pop(stable_id, None)
        # 去掉身份索引，之后同一坐标再次创建会重新写入（存储端复活隐藏行）
        self.index.drop(stable_id)
        await self.with_auth_retry(lambda: self.store.delete_marker(remote_id))
        logger.info("Soft-deleted remote marker %s", remote_id)

    async def restore(self, scope: RestoreScope) -> RestoreResult:
        ids = await self.with_auth_retry(lambda: self.store.restore(scope))
        for rid in ids:
            self._deleted.pop(rid, None)
        if not ids:
            logger.info("Restore (%s) affected no markers", scope.value)
        else:
            logger.info("Restore (%s) revived %d markers", scope.value, len(ids))
        return RestoreResult(scope=scope, restored_ids=list(ids))

    async def list(self, area_rule: AreaFilterRule = ALL_AREAS) -> List[MarkerRecord]:
        records = await self.with_auth_retry(lambda: self.store.list_markers())
        visible: List[MarkerRecord] = []
        for r in records:
            self.index.put(r.stable_id, r.id)
            self._deleted.pop(r.stable_id, None)
            self._last_sent_note[r.stable_id] = r.note or ""
            if area_rule.matches(r.postal_code):
                visible.append(r)
        if len(visible) != len(records):
            logger.debug("Area %s hides %d of %d markers", area_rule.name, len(records) - len(visible), len(records))
        return visible

    # ---------------- 备注防抖 ----------------

    def queue_note(self, stable_id: str, text: str) -> None:
        if stable_id in self._deleted:
            logger.debug("Note edit for deleted marker %s ignored", stable_id)
            return
        self._pending_notes[stable_id] = text
        self.debouncer.schedule(("note", stable_id), self.note_delay, lambda: self._flush_note(stable_id))

    def cancel_note(self, stable_id: str) -> None:
        self._pending_notes.pop(stable_id, None)
        self.debouncer.cancel(("note", stable_id))

    def note_pending(self, stable_id: str) -> bool:
        return self.debouncer.pending(("note", stable_id))

    async def _flush_note(self, stable_id: str) -> None:
        text = self._pending_notes.pop(stable_id, None)
        if text is None:
            return
        task = self._inflight.get(stable_id)
        if task is not None:
            try:
                await task
            except PinpointError as exc:
                logger.debug("Create for %s failed before note flush: %s", stable_id, exc)
        if stable_id in self._deleted:
            logger.debug("Dropping note for %s, marker was deleted", stable_id)
            return
        if self._last_sent_note.get(stable_id) == text:
            logger.debug("Note for %s unchanged, not sent", stable_id)
            return
        try:
            await self.patch(stable_id, {"note": text})
        except PinpointError as exc:
            logger.warning("Saving note for %s failed: %s", stable_id, exc)
            return
        self._last_sent_note[stable_id] = text

    async def flush(self) -> None:
        await self.debouncer.wait_idle()
