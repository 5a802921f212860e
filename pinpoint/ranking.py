from __future__ import annotations
from typing import List, Tuple

from .models import Candidate

MATCH_EXACT = 0
MATCH_PREFIX = 1
MATCH_SUBSTRING = 2
MATCH_NONE = 3

def type_tier(candidate: Candidate) -> int:
    # 名称类（地名、道路、特殊地点）排在地址类之前
    return 0 if candidate.is_name_like() else 1

def match_class(text: str, query: str) -> int:
    t = (text or "").casefold()
    q = (query or "").casefold()
    if t == q:
        return MATCH_EXACT
    if t.startswith(q):
        return MATCH_PREFIX
    if q in t:
        return MATCH_SUBSTRING
    return MATCH_NONE

def rank_key(candidate: Candidate, query: str) -> Tuple[int, int]:
    return (type_tier(candidate), match_class(candidate.display_text, query))

def rank_candidates(candidates: List[Candidate], query: str) -> List[Candidate]:
    """按 (类型层级, 匹配等级) 升序排序；sorted 稳定，同级保持数据源拼接顺序"""
    visible = [c for c in candidates if (c.display_text or "").strip()]
    return sorted(visible, key=lambda c: rank_key(c, query))
