from __future__ import annotations
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Set, Union

logger = logging.getLogger(__name__)

Action = Callable[[], Union[Awaitable[Any], Any]]


class DebouncedTask:
    """
    按实体 key 防抖：同一 key 再次 schedule 会重置计时器（而不是叠加）。
    计时到期后先从表中移除自身再执行 action，所以 action 内部可以安全地重新 schedule。
    action 抛出的异常只记录日志，没有调用方可以接收。
    """

    def __init__(self) -> None:
        self._timers: Dict[Hashable, asyncio.Task] = {}
        self._running: Set[asyncio.Task] = set()

    def schedule(self, key: Hashable, delay: float, action: Action) -> None:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._fire(key, delay, action))
        self._timers[key] = task

    def cancel(self, key: Hashable) -> bool:
        task = self._timers.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._timers):
            self.cancel(key)

    def pending(self, key: Hashable) -> bool:
        return key in self._timers

    async def _fire(self, key: Hashable, delay: float, action: Action) -> None:
        await asyncio.sleep(delay)
        current = asyncio.current_task()
        if self._timers.get(key) is current:
            del self._timers[key]
        if current is not None:
            self._running.add(current)
        try:
            result = action()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Debounced action for %r failed", key)
        finally:
            if current is not None:
                self._running.discard(current)

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """等待所有计时器与正在执行的 action 完成（测试与关闭时使用）"""
        while self._timers or self._running:
            tasks = list(self._timers.values()) + list(self._running)
            await asyncio.wait(tasks, timeout=timeout)
            if timeout is not None:
                break
