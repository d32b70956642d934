"""
Tests for the in-process side-effect queue.
"""
import pytest

from marketplace.infrastructure.task_queue import TaskQueue, get_task_queue, reset_task_queue


def _flaky(failures, calls):
    """Task factory that raises `failures` times before succeeding."""
    async def run():
        calls.append(len(calls) + 1)
        if len(calls) <= failures:
            raise RuntimeError(f"processor unavailable (call {len(calls)})")
    return run


class TestTaskQueue:

    @pytest.mark.asyncio
    async def test_runs_enqueued_tasks(self):
        queue = TaskQueue(max_size=10, backoff_seconds=0)
        done = []

        async def task():
            done.append("refund:item_1")

        await queue.start()
        assert queue.running
        assert queue.enqueue("refund:item_1", task) is True
        await queue.join()
        await queue.stop()

        assert done == ["refund:item_1"]
        stats = queue.get_stats()
        assert stats["enqueued"] == 1
        assert stats["succeeded"] == 1
        assert stats["failed"] == 0
        assert stats["running"] is False

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        queue = TaskQueue(max_size=10, max_attempts=3, backoff_seconds=0)
        calls = []

        await queue.start()
        queue.enqueue("transfer:pay_1", _flaky(2, calls))
        await queue.join()
        await queue.stop()

        assert calls == [1, 2, 3]
        stats = queue.get_stats()
        assert stats["retried"] == 2
        assert stats["succeeded"] == 1
        assert stats["enqueued"] == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        queue = TaskQueue(max_size=10, max_attempts=2, backoff_seconds=0)
        calls = []

        await queue.start()
        queue.enqueue("deliver:sms:ntf_1", _flaky(5, calls))
        await queue.join()
        await queue.stop()

        assert calls == [1, 2]
        stats = queue.get_stats()
        assert stats["failed"] == 1
        assert stats["succeeded"] == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_instead_of_blocking(self):
        queue = TaskQueue(max_size=1)

        async def task():
            pass

        assert queue.enqueue("first", task) is True
        assert queue.enqueue("second", task) is False
        assert queue.size == 1
        assert queue.get_stats()["dropped"] == 1

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            TaskQueue(max_attempts=0)

    def test_global_queue_is_shared_until_reset(self):
        first = get_task_queue()
        assert get_task_queue() is first

        reset_task_queue()
        assert get_task_queue() is not first
