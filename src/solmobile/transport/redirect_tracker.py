"""RedirectTracker -- 按投递尝试记录重定向链

只用于诊断，不影响重试或投递决策。
"""

import threading

from pydantic import BaseModel

# 每个尝试最多保留的重定向跳数
MAX_REDIRECT_HOPS = 3


class RedirectHop(BaseModel):
    """单次重定向"""

    from_url: str
    to_url: str
    status_code: int
    method: str | None = None


class RedirectTracker:
    """按 task key 累积重定向跳，超过上限时丢弃最旧的

    httpx 的事件钩子可能在不同线程的 client 上触发，内部用锁保护。
    """

    def __init__(self, max_hops: int = MAX_REDIRECT_HOPS) -> None:
        self._max_hops = max_hops
        self._chains: dict[str, list[RedirectHop]] = {}
        self._lock = threading.Lock()

    def record(
        self,
        task_id: str,
        from_url: str,
        to_url: str,
        status_code: int,
        method: str | None = None,
    ) -> None:
        """记录一次重定向"""
        hop = RedirectHop(
            from_url=from_url,
            to_url=to_url,
            status_code=status_code,
            method=method,
        )
        with self._lock:
            chain = self._chains.setdefault(task_id, [])
            chain.append(hop)
            if len(chain) > self._max_hops:
                del chain[: len(chain) - self._max_hops]

    def consume_chain(self, task_id: str) -> list[RedirectHop]:
        """返回并清除 task 的重定向链（一次性读取）"""
        with self._lock:
            return self._chains.pop(task_id, [])

    def pending_tasks(self) -> int:
        """尚未被消费的 task 数量"""
        with self._lock:
            return len(self._chains)
