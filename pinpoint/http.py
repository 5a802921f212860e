from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import aiohttp

from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    status: int
    payload: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class JsonHttpClient:
    """aiohttp 的薄封装：统一 JSON 解码与超时；cookie 会话由 ClientSession 维护。"""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, timeout_s: float = 15.0,
                 user_agent: str = "pinpoint/0.1") -> None:
        self._session = session
        self._owns_session = session is None
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.user_agent = user_agent

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def request(self, method: str, url: str, params: Optional[Dict[str, Any]] = None,
                      json_body: Optional[Any] = None) -> HttpResponse:
        session = self._get_session()
        try:
            async with session.request(method, url, params=params, json=json_body) as resp:
                payload = None
                if "json" in (resp.content_type or ""):
                    payload = await resp.json(content_type=None)
                else:
                    text = await resp.text()
                    payload = text or None
                return HttpResponse(status=resp.status, payload=payload, headers=dict(resp.headers))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.debug("%s %s failed: %s", method, url, exc)
            raise TransportError(f"{method} {url}: {exc}") from exc

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
