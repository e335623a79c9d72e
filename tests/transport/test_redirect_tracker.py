"""RedirectTracker 单元测试"""

import threading

from solmobile.transport.redirect_tracker import MAX_REDIRECT_HOPS, RedirectTracker


def _record_hops(tracker: RedirectTracker, task_id: str, count: int) -> None:
    for i in range(count):
        tracker.record(
            task_id,
            from_url=f"http://h/{i}",
            to_url=f"http://h/{i + 1}",
            status_code=302,
            method="POST",
        )


class TestRedirectTracker:
    def test_keeps_most_recent_three(self):
        """记录 4 跳后只保留最近 3 跳，最旧的被丢弃"""
        tracker = RedirectTracker()
        _record_hops(tracker, "task-1", 4)

        chain = tracker.consume_chain("task-1")

        assert len(chain) == MAX_REDIRECT_HOPS == 3
        assert chain[0].from_url == "http://h/1"
        assert chain[-1].to_url == "http://h/4"

    def test_consume_is_one_shot(self):
        tracker = RedirectTracker()
        _record_hops(tracker, "task-1", 2)

        assert len(tracker.consume_chain("task-1")) == 2
        assert tracker.consume_chain("task-1") == []
        assert tracker.pending_tasks() == 0

    def test_tasks_isolated(self):
        tracker = RedirectTracker()
        _record_hops(tracker, "a", 1)
        _record_hops(tracker, "b", 2)

        assert len(tracker.consume_chain("a")) == 1
        assert len(tracker.consume_chain("b")) == 2

    def test_unknown_task_empty(self):
        assert RedirectTracker().consume_chain("missing") == []

    def test_concurrent_records(self):
        """多线程写入同一 task 不丢失上限约束"""
        tracker = RedirectTracker()
        threads = [
            threading.Thread(target=_record_hops, args=(tracker, "task", 10)) for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(tracker.consume_chain("task")) == 3
