import asyncio

import pytest

from conftest import FakeStore, run
from pinpoint.area_filter import ALL_AREAS, AreaFilterRule
from pinpoint.errors import AuthRequired, RemoteStoreError
from pinpoint.models import Coordinate, Marker, RestoreScope
from pinpoint.sync import IdentityIndex, RemoteMarkerSync


def make_sync(store, **kwargs):
    kwargs.setdefault("note_delay", 0.05)
    return RemoteMarkerSync(store, **kwargs)


class TestIdentityIndex:
    def test_evicts_least_recently_used(self):
        index = IdentityIndex(max_entries=2)
        index.put("a", "1")
        index.put("b", "2")
        assert index.get("a") == "1"
        index.put("c", "3")
        assert "b" not in index
        assert "a" in index and "c" in index
        assert len(index) == 2

    def test_eviction_is_reported(self):
        evicted = []
        index = IdentityIndex(max_entries=1, on_evict=evicted.append)
        index.put("a", "1")
        index.put("b", "2")
        assert evicted == ["a"]

    def test_drop(self):
        index = IdentityIndex()
        index.put("a", "1")
        index.drop("a")
        index.drop("missing")
        assert index.get("a") is None


class TestCreate:
    def test_same_rounded_point_writes_once(self, fake_store):
        sync = make_sync(fake_store)

        async def scenario():
            first = await sync.create(Marker(Coordinate(55.67683, 11.74079)))
            second = await sync.create(Marker(Coordinate(55.676834, 11.740791)))
            return first, second

        first, second = run(scenario())
        assert first == second
        assert fake_store.count("create") == 1

    def test_concurrent_creates_share_one_call(self, fake_store):
        fake_store.create_delay = 0.05
        sync = make_sync(fake_store)
        a, b = Marker(Coordinate(55.67683, 11.74079)), Marker(Coordinate(55.67683, 11.74079))

        async def scenario():
            return await asyncio.gather(sync.create(a), sync.create(b))

        ids = run(scenario())
        assert ids[0] == ids[1]
        assert a.remote_id == b.remote_id == ids[0]
        assert fake_store.count("create") == 1

    def test_create_after_soft_delete_writes_again(self, fake_store):
        sync = make_sync(fake_store)
        marker = Marker(Coordinate(55.0, 11.0))

        async def scenario():
            sid = await sync.create(marker)
            await sync.soft_delete(marker.stable_id)
            await sync.create(Marker(Coordinate(55.0, 11.0)))
            return sid

        sid = run(scenario())
        assert fake_store.count("create") == 2
        assert not fake_store.rows[sid].hidden
        assert not sync.is_deleted(sid)

    def test_session_bookkeeping_is_bounded(self, fake_store):
        sync = make_sync(fake_store, index_max=2)
        markers = [Marker(Coordinate(55.0 + i / 100, 11.0)) for i in range(4)]

        async def scenario():
            for mk in markers:
                await sync.create(mk)
            for mk in markers:
                await sync.soft_delete(mk.stable_id)

        run(scenario())
        assert len(sync.index) == 0
        assert len(sync._last_sent_note) <= 2
        assert len(sync._deleted) == 2
        assert sync.is_deleted(markers[-1].stable_id)
        assert not sync.is_deleted(markers[0].stable_id)

    def test_delete_waits_for_inflight_create(self, fake_store):
        fake_store.create_delay = 0.05
        sync = make_sync(fake_store)
        marker = Marker(Coordinate(55.0, 11.0))

        async def scenario():
            creating = asyncio.ensure_future(sync.create(marker))
            await asyncio.sleep(0.01)
            await sync.soft_delete(marker.stable_id)
            await creating

        run(scenario())
        assert [op for op, _ in fake_store.calls] == ["create", "delete"]
        assert fake_store.rows[marker.stable_id].hidden
        assert sync.is_deleted(marker.stable_id)
        assert marker.stable_id not in sync.index

    def test_payload_carries_rounded_point_and_meta(self, fake_store):
        sync = make_sync(fake_store)
        marker = Marker(Coordinate(55.6768349, 11.7407912))
        marker.meta.address_text = "Algade 3, 4300 Holbæk"
        marker.meta.postal_code = "4300"
        run(sync.create(marker))
        payload = fake_store.calls[0][1]
        assert payload["lat"] == 55.67683 and payload["lon"] == 11.74079
        assert payload["postal_code"] == "4300"
        assert payload["stable_id"] == marker.stable_id


class TestNotes:
    def test_rapid_edits_send_one_patch_with_final_value(self, fake_store):
        sync = make_sync(fake_store)
        marker = Marker(Coordinate(55.0, 11.0))

        async def scenario():
            await sync.create(marker)
            for text in ("M", "Mø", "Mødested"):
                sync.queue_note(marker.stable_id, text)
                await asyncio.sleep(0.01)
            await sync.flush()

        run(scenario())
        patches = [arg for op, arg in fake_store.calls if op == "patch"]
        assert patches == [(marker.stable_id, {"note": "Mødested"})]

    def test_value_equal_to_last_sent_is_suppressed(self, fake_store):
        sync = make_sync(fake_store)
        marker = Marker(Coordinate(55.0, 11.0))

        async def scenario():
            await sync.create(marker)
            sync.queue_note(marker.stable_id, "hello")
            await sync.flush()
            sync.queue_note(marker.stable_id, "hello!")
            sync.queue_note(marker.stable_id, "hello")
            await sync.flush()

        run(scenario())
        assert fake_store.count("patch") == 1

    def test_pending_note_dropped_after_delete(self, fake_store):
        sync = make_sync(fake_store)
        marker = Marker(Coordinate(55.0, 11.0))

        async def scenario():
            await sync.create(marker)
            sync.queue_note(marker.stable_id, "late edit")
            await sync.soft_delete(marker.stable_id)
            sync.queue_note(marker.stable_id, "even later")
            await sync.flush()

        run(scenario())
        assert fake_store.count("patch") == 0
        assert not sync.note_pending(marker.stable_id)

    def test_patch_failure_is_logged_not_raised(self, fake_store, caplog):
        sync = make_sync(fake_store)
        marker = Marker(Coordinate(55.0, 11.0))

        async def scenario():
            await sync.create(marker)
            fake_store.fail_with = RemoteStoreError("HTTP 500", 500)
            sync.queue_note(marker.stable_id, "text")
            await sync.flush()

        run(scenario())
        assert "Saving note" in caplog.text


class TestAuth:
    def test_rejected_once_reauths_and_retries(self, fake_store):
        reauths = []

        async def reauth():
            reauths.append(True)

        fake_store.reject_next = 1
        sync = make_sync(fake_store, reauthenticate=reauth)
        records = run(sync.list())
        assert records == []
        assert reauths == [True]
        assert fake_store.count("list") == 2

    def test_second_rejection_is_terminal(self, fake_store):
        reauths = []

        async def reauth():
            reauths.append(True)

        fake_store.reject_next = 2
        sync = make_sync(fake_store, reauthenticate=reauth)
        with pytest.raises(AuthRequired):
            run(sync.list())
        assert reauths == [True]
        assert fake_store.count("list") == 2

    def test_without_reauth_hook_rejection_propagates(self, fake_store):
        fake_store.reject_next = 1
        with pytest.raises(AuthRequired):
            run(make_sync(fake_store).list())
        assert fake_store.count("list") == 1


class TestRestoreAndList:
    def test_restore_twice_second_is_noop(self, fake_store):
        sync = make_sync(fake_store)
        marker = Marker(Coordinate(55.0, 11.0))

        async def scenario():
            await sync.create(marker)
            await sync.soft_delete(marker.stable_id)
            return await sync.restore(RestoreScope.LAST_ACTION), await sync.restore(RestoreScope.LAST_ACTION)

        first, second = run(scenario())
        assert first.restored_ids == [marker.stable_id] and not first.noop
        assert second.noop and second.restored_ids == []

    def test_restore_transport_failure_raises(self, fake_store):
        fake_store.fail_with = RemoteStoreError("connection refused")
        with pytest.raises(RemoteStoreError):
            run(make_sync(fake_store).restore(RestoreScope.LAST_DAY))

    def test_list_applies_area_filter(self, fake_store):
        fake_store.add("m_inside", 55.64, 12.08, postal_code="4000")
        fake_store.add("m_outside", 56.15, 10.21, postal_code="8000")
        fake_store.add("m_nopostal", 55.0, 11.0)
        sync = make_sync(fake_store)
        zealand = AreaFilterRule.parse("Sjaelland", ["4000-4999"])

        inside = run(sync.list(zealand))
        everything = run(sync.list(ALL_AREAS))
        assert [r.id for r in inside] == ["m_inside"]
        assert sorted(r.id for r in everything) == ["m_inside", "m_nopostal", "m_outside"]
        assert "m_outside" in fake_store.rows

    def test_list_hydrates_identity_index(self, fake_store):
        fake_store.add("m_known", 55.0, 11.0, note="existing")
        sync = make_sync(fake_store)

        async def scenario():
            await sync.list()
            marker = Marker(Coordinate(55.0, 11.0), stable_id="m_known")
            await sync.create(marker)
            sync.queue_note("m_known", "existing")
            await sync.flush()

        run(scenario())
        assert fake_store.count("create") == 0
        assert fake_store.count("patch") == 0
