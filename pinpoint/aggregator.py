from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .debounce import DebouncedTask
from .models import Candidate, RankedList
from .ranking import rank_candidates
from .sources import CandidateSource

logger = logging.getLogger(__name__)

DOMESTIC = "domestic"
FOREIGN = "foreign"

DEFAULT_SOURCE_SETS: Dict[str, List[str]] = {
    DOMESTIC: ["address", "place_name", "named_road", "local_point", "foreign_address"],
    FOREIGN: ["foreign_address"],
}

@dataclass
class SearchOptions:
    source_set: str = DOMESTIC
    per_source_limit: Optional[int] = None


class SearchAggregator:
    """并发查询多个候选数据源，合并后统一排序；单个数据源失败只记日志，不影响其它结果。"""

    def __init__(self, sources: Sequence[CandidateSource], source_sets: Optional[Dict[str, List[str]]] = None,
                 min_query_length: int = 2, per_source_limit: int = 20,
                 source_limits: Optional[Dict[str, int]] = None) -> None:
        self.sources: Dict[str, CandidateSource] = {s.name: s for s in sources}
        self.source_sets = source_sets or DEFAULT_SOURCE_SETS
        self.min_query_length = min_query_length
        self.per_source_limit = per_source_limit
        self.source_limits = dict(source_limits or {})

    def is_dispatchable(self, query: str) -> bool:
        return len((query or "").strip()) >= self.min_query_length

    def selected_sources(self, source_set: str) -> List[CandidateSource]:
        names = self.source_sets.get(source_set)
        if names is None:
            raise ValueError(f"Unknown source set: {source_set}")
        return [self.sources[n] for n in names if n in self.sources]

    async def aggregate(self, query: str, options: Optional[SearchOptions] = None) -> RankedList:
        opts = options or SearchOptions()
        q = (query or "").strip()
        if not self.is_dispatchable(q):
            return RankedList(query=q)

        selected = self.selected_sources(opts.source_set)
        batches = await asyncio.gather(*(self._run_source(src, q, opts) for src in selected))

        combined: List[Candidate] = []
        failed: List[str] = []
        for src, (items, ok) in zip(selected, batches):
            combined.extend(items)
            if not ok:
                failed.append(src.name)
        # 不做跨数据源去重
        ranked = rank_candidates(combined, q)
        logger.debug("Query %r: %d candidates from %d sources (%d failed)", q, len(ranked), len(selected), len(failed))
        return RankedList(query=q, candidates=ranked, failed_sources=failed)

    async def _run_source(self, src: CandidateSource, query: str, opts: SearchOptions) -> Tuple[List[Candidate], bool]:
        limit = opts.per_source_limit or self.source_limits.get(src.name) or self.per_source_limit
        try:
            items = await src.search(query, limit)
        except Exception:
            logger.exception("Source %s failed for query %r", src.name, query)
            return ([], False)
        return (list(items)[:limit], True)


class LiveSearch:
    """
    搜索框输入：防抖合并连续输入，只派发最后一次文本；
    旧查询在新查询之后才返回时直接丢弃（按代数判定，不中断请求）。
    """

    KEY = "search"

    def __init__(self, aggregator: SearchAggregator, on_results: Callable[[RankedList], None],
                 delay: float = 0.3, debouncer: Optional[DebouncedTask] = None) -> None:
        self.aggregator = aggregator
        self.on_results = on_results
        self.delay = delay
        self.debouncer = debouncer or DebouncedTask()
        self._generation = 0
        self.latest_query = ""

    def submit(self, query: str, options: Optional[SearchOptions] = None) -> None:
        self._generation += 1
        generation = self._generation
        self.latest_query = query
        if not self.aggregator.is_dispatchable(query):
            self.debouncer.cancel(self.KEY)
            self.on_results(RankedList(query=(query or "").strip()))
            return
        self.debouncer.schedule(self.KEY, self.delay, lambda: self._dispatch(generation, query, options))

    async def _dispatch(self, generation: int, query: str, options: Optional[SearchOptions]) -> None:
        result = await self.aggregator.aggregate(query, options)
        if generation != self._generation:
            logger.debug("Dropping stale results for %r (latest is %r)", query, self.latest_query)
            return
        self.on_results(result)

    async def wait_idle(self) -> None:
        await self.debouncer.wait_idle()
