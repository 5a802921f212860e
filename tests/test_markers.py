import asyncio

from conftest import FakeStore, run
from pinpoint.area_filter import AreaFilterRule
from pinpoint.errors import RemoteStoreError, SourceUnavailable
from pinpoint.markers import MarkerStateManager
from pinpoint.models import Coordinate, MarkerMeta, PlacementMode, RestoreScope, ReverseGeocodeResult
from pinpoint.sync import RemoteMarkerSync

A = Coordinate(55.64150, 12.08030)
B = Coordinate(55.71750, 11.71280)
C = Coordinate(56.15670, 10.21080)


class CountingReverse:
    def __init__(self, result=None, fail=None):
        self.result = result
        self.fail = fail
        self.calls = 0

    async def __call__(self, coord):
        self.calls += 1
        if self.fail:
            raise self.fail
        return self.result


class StrictStore(FakeStore):
    """删除不存在的行时与真实存储一样返回 404"""

    async def delete_marker(self, marker_id):
        if marker_id not in self.rows:
            self.calls.append(("delete", marker_id))
            raise RemoteStoreError(f"DELETE /markers/{marker_id} failed: HTTP 404", 404)
        await super().delete_marker(marker_id)


def make_manager(store=None, **kwargs):
    store = store or FakeStore()
    sync = RemoteMarkerSync(store, note_delay=0.02)
    return MarkerStateManager(sync=sync, highlight_seconds=0.05, **kwargs), store


class TestTransient:
    def test_new_marker_replaces_old(self):
        m, _ = make_manager()

        async def scenario():
            await m.create(A)
            return await m.create(B)

        second = run(scenario())
        assert m.visible_markers() == [second]
        assert m.current is second


class TestRetained:
    def test_entering_retained_migrates_current(self):
        m, _ = make_manager()

        async def scenario():
            first = await m.create(A)
            await m.set_mode(PlacementMode.RETAINED)
            second = await m.create(B)
            return first, second

        first, second = run(scenario())
        assert m.visible_markers() == [first, second]
        assert first.mode == PlacementMode.RETAINED

    def test_delete_needs_confirmation_and_removes_only_one(self):
        m, _ = make_manager()

        async def scenario():
            await m.set_mode(PlacementMode.RETAINED)
            first = await m.create(A)
            second = await m.create(B)
            refused = await m.delete(first)
            done = await m.delete(first, confirmed=True)
            return first, second, refused, done

        first, second, refused, done = run(scenario())
        assert refused is False and done is True
        assert m.visible_markers() == [second]

    def test_leaving_retained_clears_everything(self):
        m, _ = make_manager()

        async def scenario():
            await m.set_mode(PlacementMode.RETAINED)
            await m.create(A)
            await m.create(B)
            await m.set_mode(PlacementMode.TRANSIENT)
            assert m.visible_markers() == []
            assert m.current is None
            await m.create(C)

        run(scenario())
        assert m.retained == []
        assert len(m.visible_markers()) == 1

    def test_overlay_toggle_drives_mode(self):
        m, _ = make_manager()

        async def scenario():
            await m.on_overlay_toggled(PlacementMode.RETAINED, True)
            assert m.mode == PlacementMode.RETAINED
            await m.on_overlay_toggled(PlacementMode.REMOTE_PERSISTED, False)
            assert m.mode == PlacementMode.RETAINED
            await m.on_overlay_toggled(PlacementMode.RETAINED, False)

        run(scenario())
        assert m.mode == PlacementMode.TRANSIENT


class TestRemote:
    def test_entering_remote_persists_current_marker(self):
        m, store = make_manager()

        async def scenario():
            marker = await m.create(A)
            await m.set_mode(PlacementMode.REMOTE_PERSISTED)
            return marker

        marker = run(scenario())
        assert marker.mode == PlacementMode.REMOTE_PERSISTED
        assert marker.remote_id in store.rows
        assert m.visible_markers() == [marker]

    def test_every_selection_is_written_through(self):
        m, store = make_manager()

        async def scenario():
            await m.set_mode(PlacementMode.REMOTE_PERSISTED)
            await m.create(A)
            await m.create(B)
            await m.create(A)

        run(scenario())
        assert store.count("create") == 2
        assert len(m.visible_markers()) == 2

    def test_soft_delete_failure_still_removes_locally(self, caplog):
        m, store = make_manager()

        async def scenario():
            await m.set_mode(PlacementMode.REMOTE_PERSISTED)
            marker = await m.create(A)
            store.fail_with = RemoteStoreError("HTTP 502", 502)
            return await m.delete(marker)

        assert run(scenario()) is True
        assert m.visible_markers() == []
        assert m.current is None
        assert "removing locally anyway" in caplog.text

    def test_delete_during_inflight_create_stays_deleted(self):
        store = StrictStore()
        store.create_delay = 0.05
        m, _ = make_manager(store)

        async def scenario():
            await m.set_mode(PlacementMode.REMOTE_PERSISTED)
            creating = asyncio.ensure_future(m.create(A))
            await asyncio.sleep(0.01)
            marker = m.current
            await m.delete(marker)
            await creating
            return marker

        marker = run(scenario())
        assert m.visible_markers() == []
        assert m.current is None
        assert m.sync.is_deleted(marker.stable_id)
        assert [op for op, _ in store.calls] == ["create", "delete"]
        assert store.rows[marker.stable_id].hidden

    def test_leaving_remote_detaches_without_deleting(self):
        m, store = make_manager()

        async def scenario():
            await m.set_mode(PlacementMode.REMOTE_PERSISTED)
            await m.create(A)
            await m.set_mode(PlacementMode.TRANSIENT)

        run(scenario())
        assert m.remote == {} and m.current is None
        assert store.count("delete") == 0
        assert all(not r.hidden for r in store.rows.values())

    def test_create_failure_keeps_local_marker(self):
        store = FakeStore()
        store.fail_with = RemoteStoreError("connection refused")
        m, _ = make_manager(store)

        async def scenario():
            await m.set_mode(PlacementMode.REMOTE_PERSISTED)
            return await m.create(A)

        marker = run(scenario())
        assert m.current is marker
        assert m.visible_markers() == [marker]
        assert marker.remote_id is None

    def test_note_edits_are_debounced_through_sync(self):
        m, store = make_manager()

        async def scenario():
            await m.set_mode(PlacementMode.REMOTE_PERSISTED)
            marker = await m.create(A)
            m.edit_note(marker, "a")
            m.edit_note(marker, "ab")
            await m.sync.flush()
            return marker

        marker = run(scenario())
        assert marker.meta.note == "ab"
        assert [arg for op, arg in store.calls if op == "patch"] == [(marker.stable_id, {"note": "ab"})]

    def test_load_remote_applies_area(self):
        store = FakeStore()
        store.add("m_rk", 55.64, 12.08, postal_code="4000")
        store.add("m_aa", 56.15, 10.21, postal_code="8000")
        m, _ = make_manager(store)

        async def scenario():
            await m.set_mode(PlacementMode.REMOTE_PERSISTED)
            zealand = await m.load_remote(AreaFilterRule.parse("Sjaelland", ["4000-4999"]))
            everything = await m.load_remote(AreaFilterRule.parse("all", "all"))
            return zealand, everything

        zealand, everything = run(scenario())
        assert [mk.stable_id for mk in zealand] == ["m_rk"]
        assert sorted(mk.stable_id for mk in everything) == ["m_aa", "m_rk"]

    def test_restore_highlights_exactly_restored_ids(self):
        m, store = make_manager()

        async def scenario():
            await m.set_mode(PlacementMode.REMOTE_PERSISTED)
            keep = await m.create(A)
            gone = await m.create(B)
            await m.delete(gone)
            result = await m.restore(RestoreScope.LAST_ACTION)
            lit = [mk.stable_id for mk in m.highlighted()]
            await asyncio.sleep(0.1)
            return keep, gone, result, lit

        keep, gone, result, lit = run(scenario())
        assert result.restored_ids == [gone.stable_id]
        assert lit == [gone.stable_id]
        assert sorted(mk.stable_id for mk in m.visible_markers()) == sorted([keep.stable_id, gone.stable_id])
        assert m.highlighted() == []

    def test_restore_noop_does_not_refetch(self):
        m, store = make_manager()

        async def scenario():
            await m.set_mode(PlacementMode.REMOTE_PERSISTED)
            return await m.restore(RestoreScope.LAST_HOUR)

        result = run(scenario())
        assert result.noop
        assert store.count("list") == 0

    def test_restore_without_sync_is_noop(self):
        m = MarkerStateManager()
        result = run(m.restore(RestoreScope.LAST_ACTION))
        assert result.noop


class TestSelect:
    def test_select_fetches_once_then_uses_cache(self):
        reverse = CountingReverse(ReverseGeocodeResult("Algade 3, 4000 Roskilde", "4000", "address_registry", {"x": 1}))
        m, _ = make_manager(reverse_geocoder=reverse)

        async def scenario():
            marker = await m.create(A)
            first = await m.select(marker)
            second = await m.select(marker)
            return marker, first, second

        marker, first, second = run(scenario())
        assert reverse.calls == 1
        assert not first.from_cache and second.from_cache
        assert second.address_text == "Algade 3, 4000 Roskilde"
        assert marker.meta.postal_code == "4000"
        assert m.current is marker

    def test_select_with_cached_meta_makes_no_call(self):
        reverse = CountingReverse()
        m, _ = make_manager(reverse_geocoder=reverse)

        async def scenario():
            marker = await m.create(A, MarkerMeta(address_text="Cached", note="n"))
            return await m.select(marker)

        view = run(scenario())
        assert view.from_cache and view.note == "n"
        assert reverse.calls == 0

    def test_select_survives_reverse_failure(self):
        reverse = CountingReverse(fail=SourceUnavailable("address_registry"))
        m, _ = make_manager(reverse_geocoder=reverse)

        async def scenario():
            marker = await m.create(A)
            return marker, await m.select(marker)

        marker, view = run(scenario())
        assert view.address_text == ""
        assert m.current is marker
