from __future__ import annotations
import logging
from typing import Optional

from .errors import PinpointError
from .models import Coordinate
from .providers import AddressRegistry, ForeignGeocoder
from .utils import parse_coordinate_literal

logger = logging.getLogger(__name__)


class CoordinateResolver:
    """
    文本 -> 单个坐标的回退链：
    1) 调用方缓存的坐标  2) "lat, lon" 字面量  3) 国内地址登记最佳匹配  4) 国外地理编码最佳匹配
    全部失败返回 None；传输故障记日志后按未找到处理，不向上抛出。
    """

    def __init__(self, address_registry: Optional[AddressRegistry], foreign_geocoder: Optional[ForeignGeocoder]) -> None:
        self.address_registry = address_registry
        self.foreign_geocoder = foreign_geocoder

    async def resolve(self, text: Optional[str], cached: Optional[Coordinate] = None) -> Optional[Coordinate]:
        if cached is not None:
            return cached
        trimmed = (text or "").strip()
        if not trimmed:
            return None

        literal = parse_coordinate_literal(trimmed)
        if literal is not None:
            return literal

        coord = await self._from_address_registry(trimmed)
        if coord is not None:
            return coord
        coord = await self._from_foreign_geocoder(trimmed)
        if coord is not None:
            return coord
        logger.info("No coordinate found for %r", trimmed)
        return None

    async def _from_address_registry(self, text: str) -> Optional[Coordinate]:
        if self.address_registry is None:
            return None
        try:
            hits = await self.address_registry.autocomplete(text, 1)
            if not hits:
                return None
            detail = await self.address_registry.detail(hits[0].id)
        except PinpointError as exc:
            logger.warning("Address registry lookup failed for %r: %s", text, exc)
            return None
        except Exception:
            logger.exception("Unexpected address registry failure for %r", text)
            return None
        return detail.coordinate if detail is not None else None

    async def _from_foreign_geocoder(self, text: str) -> Optional[Coordinate]:
        if self.foreign_geocoder is None:
            return None
        try:
            hits, _quota = await self.foreign_geocoder.search_text(text, 1)
        except PinpointError as exc:
            logger.warning("Foreign geocoder lookup failed for %r: %s", text, exc)
            return None
        except Exception:
            logger.exception("Unexpected foreign geocoder failure for %r", text)
            return None
        if hits and hits[0].coordinate is not None:
            return hits[0].coordinate
        return None
