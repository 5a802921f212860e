import asyncio
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

# Make the flat-layout package importable without installing
ROOT = Path(__file__).resolve().parent.parent
if ROOT.as_posix() not in sys.path:
    sys.path.insert(0, ROOT.as_posix())

from pinpoint.config import load_config
from pinpoint.errors import AuthRequired, TransportError
from pinpoint.http import HttpResponse
from pinpoint.models import Candidate, Coordinate, MarkerRecord, RestoreScope

DATA_DIR = ROOT / "data"

Handler = Union[HttpResponse, Exception, Callable[[Optional[Dict[str, Any]], Any], HttpResponse]]


class FakeHttp:
    """Stands in for JsonHttpClient; routes are matched on method + URL suffix."""

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Handler]] = None):
        self.routes: Dict[Tuple[str, str], Handler] = dict(routes or {})
        self.calls: List[Tuple[str, str, Optional[Dict[str, Any]], Any]] = []
        self.closed = False

    async def request(self, method, url, params=None, json_body=None):
        self.calls.append((method, url, params, json_body))
        for (m, suffix), handler in self.routes.items():
            if m == method and url.endswith(suffix):
                if isinstance(handler, Exception):
                    raise handler
                if isinstance(handler, HttpResponse):
                    return handler
                return handler(params, json_body)
        raise TransportError(f"no route for {method} {url}")

    async def close(self):
        self.closed = True

    def urls(self) -> List[str]:
        return [c[1] for c in self.calls]


class StaticSource:
    """A candidate source returning a fixed list, optionally slow or failing."""

    def __init__(self, name: str, items: List[Candidate], fail: Optional[Exception] = None,
                 delay: float = 0.0, delays: Optional[Dict[str, float]] = None):
        self.name = name
        self.items = items
        self.fail = fail
        self.delay = delay
        self.delays = delays or {}
        self.queries: List[Tuple[str, int]] = []

    async def search(self, text, limit):
        self.queries.append((text, limit))
        wait = self.delays.get(text, self.delay)
        if wait:
            await asyncio.sleep(wait)
        if self.fail is not None:
            raise self.fail
        return list(self.items)

    async def resolve(self, candidate):
        return candidate.coordinate


class FakeStore:
    """In-memory MarkerStore; remote ids equal stable ids, every delete is its own action."""

    def __init__(self, workspace: str = "default", map_id: str = "main"):
        self.workspace = workspace
        self.map_id = map_id
        self.rows: Dict[str, MarkerRecord] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.logins: List[str] = []
        self.reject_next = 0
        self.fail_with: Optional[Exception] = None
        self.create_delay = 0.0
        self._last_action: List[str] = []

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)

    async def _enter(self, op: str, arg: Any) -> None:
        self.calls.append((op, arg))
        if self.reject_next > 0:
            self.reject_next -= 1
            raise AuthRequired("session expired")
        if self.fail_with is not None:
            raise self.fail_with

    async def login(self, secret):
        self.logins.append(secret)

    async def list_markers(self, include_hidden=False):
        await self._enter("list", include_hidden)
        return [replace(r) for r in self.rows.values() if include_hidden or not r.hidden]

    async def create_marker(self, payload):
        await self._enter("create", payload)
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        sid = payload["stable_id"]
        row = self.rows.get(sid)
        if row is None:
            row = MarkerRecord(id=sid, stable_id=sid, workspace=self.workspace, map_id=self.map_id,
                               lat=payload["lat"], lon=payload["lon"], note=payload.get("note") or "",
                               address_text=payload.get("address_text") or "",
                               postal_code=payload.get("postal_code"))
            self.rows[sid] = row
        row.hidden = False
        return replace(row)

    async def patch_marker(self, marker_id, fields):
        await self._enter("patch", (marker_id, dict(fields)))
        row = self.rows[marker_id]
        for k, v in fields.items():
            setattr(row, k, v)
        return replace(row)

    async def delete_marker(self, marker_id):
        await self._enter("delete", marker_id)
        self.rows[marker_id].hidden = True
        self._last_action = [marker_id]

    async def restore(self, scope):
        await self._enter("restore", scope)
        ids = [i for i in self._last_action if self.rows[i].hidden]
        for i in ids:
            self.rows[i].hidden = False
        self._last_action = []
        return ids

    def add(self, stable_id: str, lat: float, lon: float, postal_code: Optional[str] = None,
            note: str = "", hidden: bool = False) -> MarkerRecord:
        row = MarkerRecord(id=stable_id, stable_id=stable_id, workspace=self.workspace, map_id=self.map_id,
                           lat=lat, lon=lon, note=note, postal_code=postal_code, hidden=hidden)
        self.rows[stable_id] = row
        return row


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def cfg(tmp_path, monkeypatch):
    for env in ("ORS_API_KEY", "GSEARCH_TOKEN", "MARKER_STORE_URL", "MARKER_STORE_SECRET"):
        monkeypatch.delenv(env, raising=False)
    c = load_config(DATA_DIR / "config.default.json")
    c.db_path = str(tmp_path / "markers.xlsx")
    return c


@pytest.fixture
def here():
    return Coordinate(55.67683, 11.74079)
