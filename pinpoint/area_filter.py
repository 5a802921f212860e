from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .base_data import load_area_document

logger = logging.getLogger(__name__)

ALL = "all"

_RANGE_RE = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")

@dataclass(frozen=True)
class PostalRange:
    low: int
    high: int

    def contains(self, code: int) -> bool:
        return self.low <= code <= self.high

def _parse_postal(value: Any) -> Optional[int]:
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    return int(digits) if digits else None

def parse_range(entry: Any) -> PostalRange:
    if isinstance(entry, dict):
        low, high = _parse_postal(entry.get("from")), _parse_postal(entry.get("to"))
    elif isinstance(entry, (list, tuple)) and len(entry) == 2:
        low, high = _parse_postal(entry[0]), _parse_postal(entry[1])
    elif isinstance(entry, str) and _RANGE_RE.match(entry):
        m = _RANGE_RE.match(entry)
        low, high = int(m.group(1)), int(m.group(2))
    else:
        low = high = _parse_postal(entry)
    if low is None or high is None:
        raise ValueError(f"无法解析邮编区间: {entry!r}")
    if low > high:
        low, high = high, low
    return PostalRange(low, high)

@dataclass
class AreaFilterRule:
    """按邮编判断远程标记在当前区域下是否可见"""
    name: str
    ranges: List[PostalRange] = field(default_factory=list)
    match_all: bool = False

    @classmethod
    def parse(cls, name: str, entries: Any) -> "AreaFilterRule":
        if isinstance(entries, str) and entries.strip().lower() == ALL:
            return cls(name=name, match_all=True)
        if not isinstance(entries, list):
            entries = [entries]
        return cls(name=name, ranges=[parse_range(e) for e in entries])

    def matches(self, postal_code: Any) -> bool:
        if self.match_all:
            return True
        code = _parse_postal(postal_code)
        if code is None:
            return False
        return any(r.contains(code) for r in self.ranges)

ALL_AREAS = AreaFilterRule(name=ALL, match_all=True)

class AreaCatalog:
    """区域配置只加载一次并缓存；始终包含 "all"。"""

    def __init__(self, rules: Optional[Dict[str, AreaFilterRule]] = None) -> None:
        self.rules: Dict[str, AreaFilterRule] = {ALL: ALL_AREAS}
        self.rules.update(rules or {})

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "AreaCatalog":
        rules = {}
        for name, entries in doc.items():
            try:
                rules[name] = AreaFilterRule.parse(name, entries)
            except ValueError as exc:
                logger.warning("Skipping area %s: %s", name, exc)
        return cls(rules)

    @classmethod
    def load(cls, path: str | Path) -> "AreaCatalog":
        return cls.from_document(load_area_document(path))

    def get(self, name: Optional[str]) -> AreaFilterRule:
        if not name:
            return ALL_AREAS
        rule = self.rules.get(name)
        if rule is None:
            raise KeyError(f"Unknown area: {name}")
        return rule

    def names(self) -> List[str]:
        return list(self.rules)
