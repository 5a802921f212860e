from __future__ import annotations
import logging
from typing import Dict, Mapping, Optional

from .models import QuotaInfo

logger = logging.getLogger(__name__)

_HEADER_FIELDS = {
    "x-ratelimit-remaining": "remaining",
    "x-ratelimit-limit": "limit",
    "x-ratelimit-reset": "reset",
}

def parse_quota_headers(headers: Optional[Mapping[str, str]]) -> Optional[QuotaInfo]:
    if not headers:
        return None
    values: Dict[str, int] = {}
    for key, raw in headers.items():
        name = _HEADER_FIELDS.get(str(key).lower())
        if not name:
            continue
        try:
            values[name] = int(float(str(raw).strip()))
        except (ValueError, OverflowError):
            continue
    if not values:
        return None
    return QuotaInfo(**values)

class QuotaTracker:
    """记录每个服务最近一次返回的限流信息，供界面展示剩余额度。"""

    def __init__(self) -> None:
        self._latest: Dict[str, QuotaInfo] = {}

    def update(self, provider: str, headers: Optional[Mapping[str, str]]) -> Optional[QuotaInfo]:
        info = parse_quota_headers(headers)
        if info is not None:
            self._latest[provider] = info
            logger.debug("Quota for %s: %s/%s (reset %s)", provider, info.remaining, info.limit, info.reset)
        return info

    def get(self, provider: str) -> Optional[QuotaInfo]:
        return self._latest.get(provider)

    def snapshot(self) -> Dict[str, QuotaInfo]:
        return dict(self._latest)
