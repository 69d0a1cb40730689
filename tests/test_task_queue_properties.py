"""
Property-based tests for task queue ordering, de-duplication, admission
and state transitions.
"""

import threading
import time

import pytest
from hypothesis import given, strategies as st, settings

from audit_scheduler.concurrent import (
    EventBus,
    EventKind,
    QueueConfig,
    TaskQueue,
    TaskStatus,
)
from audit_scheduler.utils.errors import MisuseError


def make_queue(event_bus=None, **overrides):
    """Build a queue with short delays; overrides go to QueueConfig."""
    params = dict(max_concurrent=3, max_retries=1, retry_delay=0.0, idle_wait=0.01)
    params.update(overrides)
    return TaskQueue(config=QueueConfig(**params), event_bus=event_bus or EventBus())


def drain_dispatch_order(queue):
    """Dequeue and complete tasks one by one, returning the dispatch order."""
    order = []
    while True:
        task = queue.dequeue_next()
        if task is None:
            break
        order.append(task.url)
        queue.mark_completed(task.url, "ok")
    return order


@st.composite
def prioritized_urls(draw):
    """URLs tagged with a priority marker, plus the pattern rules for them."""
    priorities = draw(st.lists(st.integers(min_value=0, max_value=5), min_size=1, max_size=20))
    urls = [f"https://example.com/p{prio}/item{i}" for i, prio in enumerate(priorities)]
    patterns = [{"pattern": f"/p{prio}/", "priority": prio} for prio in range(6)]
    return urls, priorities, patterns


class TestPriorityOrdering:
    """Dispatch follows descending priority, then submission order."""

    def test_pattern_match_moves_url_to_front(self):
        queue = make_queue(priority_patterns=[("/home", 10)])
        queue.submit(["/a", "/home", "/b"])

        assert drain_dispatch_order(queue) == ["/home", "/a", "/b"]

    def test_first_matching_pattern_wins(self):
        queue = make_queue(
            priority_patterns=[{"pattern": "/docs", "priority": 5}, {"/docs/api": 9}],
            default_priority=2,
        )

        assert queue.compute_priority("https://site/docs/api/v1") == 5
        assert queue.compute_priority("https://site/blog") == 2

    @given(data=prioritized_urls())
    @settings(max_examples=25, deadline=None)
    def test_dispatch_order_is_stable_priority_sort(self, data):
        urls, priorities, patterns = data
        queue = make_queue(max_concurrent=1, priority_patterns=patterns, default_priority=-1)
        tasks = queue.submit(urls)

        assert [t.priority for t in tasks] == priorities

        expected = [url for url, _ in sorted(zip(urls, priorities), key=lambda pair: -pair[1])]
        assert drain_dispatch_order(queue) == expected

    def test_pending_urls_reports_dispatch_order(self):
        queue = make_queue(priority_patterns=[{"/x": 3}])
        queue.submit(["/a", "/x1", "/b", "/x2"])

        assert queue.pending_urls() == ["/x1", "/x2", "/a", "/b"]


class TestDeduplication:
    """A URL is held by at most one task per run."""

    @given(urls=st.lists(st.sampled_from([f"https://example.com/{i}" for i in range(8)]), max_size=30))
    @settings(max_examples=25, deadline=None)
    def test_submit_is_idempotent(self, urls):
        queue = make_queue()
        first = queue.submit(urls)
        second = queue.submit(urls)

        assert [t.url for t in first] == list(dict.fromkeys(urls))
        assert second == []
        assert queue.stats().total == len(set(urls))

    def test_in_flight_url_is_not_requeued(self):
        queue = make_queue()
        queue.submit(["/a"])
        queue.dequeue_next()

        assert queue.submit(["/a"]) == []
        assert queue.stats().total == 1

    def test_archived_url_is_not_requeued_in_same_run(self):
        queue = make_queue()
        queue.begin_run()
        queue.submit(["/a"])
        queue.mark_completed(queue.dequeue_next().url, 1)

        assert queue.submit(["/a"]) == []

    def test_new_run_accepts_previously_archived_url(self):
        queue = make_queue()
        queue.begin_run()
        queue.submit(["/a"])
        queue.mark_completed(queue.dequeue_next().url, 1)

        queue.begin_run()
        added = queue.submit(["/a"])

        assert [t.url for t in added] == ["/a"]
        assert queue.get_completed_results() == []

    @pytest.mark.parametrize("bad", ["", "   ", None, 42])
    def test_invalid_url_rejected_without_side_effects(self, bad):
        queue = make_queue()

        with pytest.raises(MisuseError):
            queue.submit(["/ok", bad])

        assert len(queue) == 0


class TestAdmission:
    """The active set never exceeds max_concurrent."""

    def test_saturated_queue_returns_none(self, task_queue):
        task_queue.submit(["/a", "/b", "/c"])

        first = task_queue.dequeue_next()
        second = task_queue.dequeue_next()

        assert first is not None and second is not None
        assert task_queue.dequeue_next() is None
        assert task_queue.stats().active_workers == 2

        task_queue.mark_completed(first.url, "ok")
        third = task_queue.dequeue_next()
        assert third.url == "/c"
        assert third.status is TaskStatus.IN_PROGRESS
        assert third.attempts == 1

    @given(
        max_concurrent=st.integers(min_value=1, max_value=5),
        count=st.integers(min_value=0, max_value=12),
    )
    @settings(max_examples=25, deadline=None)
    def test_active_never_exceeds_limit(self, max_concurrent, count):
        queue = make_queue(max_concurrent=max_concurrent)
        queue.submit([f"/u{i}" for i in range(count)])

        dispatched = []
        while True:
            task = queue.dequeue_next()
            if task is None:
                break
            dispatched.append(task)

        assert len(dispatched) == min(max_concurrent, count)
        assert len(queue.active_urls()) <= max_concurrent

    def test_dequeued_task_is_a_snapshot(self, task_queue):
        task_queue.submit(["/a"])
        task = task_queue.dequeue_next()
        task.status = TaskStatus.COMPLETED

        assert task_queue.get_task("/a").status is TaskStatus.IN_PROGRESS

    def test_waiter_woken_when_slot_frees(self):
        queue = make_queue(max_concurrent=1)
        queue.submit(["/a", "/b"])
        first = queue.dequeue_next()
        received = []

        waiter = threading.Thread(target=lambda: received.append(queue.wait_for_task(5.0)))
        waiter.start()
        time.sleep(0.05)
        assert received == []

        queue.mark_completed(first.url, "ok")
        waiter.join(timeout=5.0)

        assert [t.url for t in received] == ["/b"]

    def test_wait_returns_none_on_timeout(self):
        queue = make_queue(max_concurrent=1)
        queue.submit(["/a", "/b"])
        queue.dequeue_next()

        started = time.monotonic()
        assert queue.wait_for_task(0.05) is None
        assert time.monotonic() - started >= 0.04

    def test_pause_blocks_dispatch_until_resume(self, task_queue):
        task_queue.submit(["/a"])
        task_queue.pause()

        assert task_queue.is_paused()
        assert task_queue.dequeue_next() is None

        task_queue.resume()
        assert task_queue.dequeue_next().url == "/a"


class TestTransitions:
    """Completion, retry and failure bookkeeping."""

    def test_completion_archives_result(self, task_queue, event_bus):
        completed = []
        event_bus.subscribe(EventKind.TASK_COMPLETED, completed.append)
        task_queue.submit(["/a"])
        task_queue.dequeue_next()

        task = task_queue.mark_completed("/a", {"status": 200})

        assert task.status is TaskStatus.COMPLETED
        assert task_queue.active_urls() == []
        results = task_queue.get_completed_results()
        assert [(r.url, r.result, r.attempts) for r in results] == [("/a", {"status": 200}, 1)]
        assert completed[0].url == "/a"
        assert completed[0].attempts == 1

    def test_marking_task_not_in_progress_is_misuse(self, task_queue):
        task_queue.submit(["/a"])

        with pytest.raises(MisuseError):
            task_queue.mark_completed("/a")
        with pytest.raises(MisuseError):
            task_queue.mark_failed("/unknown", "boom")

    def test_failure_schedules_retry_then_fails(self):
        bus = EventBus()
        retrying, failed = [], []
        bus.subscribe(EventKind.TASK_RETRYING, retrying.append)
        bus.subscribe(EventKind.TASK_FAILED, failed.append)
        queue = make_queue(event_bus=bus, max_retries=1, retry_delay=0.01)
        queue.submit(["/a"])

        queue.dequeue_next()
        task = queue.mark_failed("/a", "connection reset")
        assert task.status is TaskStatus.RETRYING
        assert task.last_error == "connection reset"
        assert queue.active_urls() == []
        assert retrying[0].attempts == 1
        assert retrying[0].delay == pytest.approx(0.01)

        second = queue.wait_for_task(2.0)
        assert second.url == "/a"
        assert second.attempts == 2

        task = queue.mark_failed("/a", "connection reset")
        assert task.status is TaskStatus.FAILED
        assert [(f.url, f.error, f.attempts) for f in queue.get_failed_results()] == [
            ("/a", "connection reset", 2)
        ]
        assert failed[0].attempts == 2

    def test_zero_retries_fails_on_first_error(self):
        queue = make_queue(max_retries=0)
        queue.submit(["/a"])
        queue.dequeue_next()

        assert queue.mark_failed("/a", "boom").status is TaskStatus.FAILED

    def test_retry_can_be_declined(self, task_queue):
        task_queue.submit(["/a"])
        task_queue.dequeue_next()

        task = task_queue.mark_failed("/a", "bad input", retry=False)

        assert task.status is TaskStatus.FAILED
        assert task.attempts == 1

    def test_retrying_task_waits_for_delay(self):
        queue = make_queue(max_retries=2, retry_delay=0.3)
        queue.submit(["/a"])
        queue.dequeue_next()
        queue.mark_failed("/a", "boom")

        assert queue.dequeue_next() is None
        assert queue.stats().retrying == 1
        assert queue.wait_for_task(3.0).attempts == 2

    @given(outcomes=st.lists(st.booleans(), min_size=1, max_size=15))
    @settings(max_examples=25, deadline=None)
    def test_stats_partition_total(self, outcomes):
        queue = make_queue(max_concurrent=2, max_retries=0)
        urls = [f"/u{i}" for i in range(len(outcomes))]
        queue.begin_run()
        queue.submit(urls)
        succeed = dict(zip(urls, outcomes))

        previous_finished = 0
        while True:
            task = queue.dequeue_next()
            if task is None:
                break
            if succeed[task.url]:
                queue.mark_completed(task.url, True)
            else:
                queue.mark_failed(task.url, "failed")

            stats = queue.stats()
            assert stats.total == len(urls)
            assert stats.pending + stats.in_progress + stats.retrying + stats.completed + stats.failed == stats.total
            assert stats.finished >= previous_finished
            assert 0.0 <= stats.progress <= 100.0
            previous_finished = stats.finished

        final = queue.stats()
        assert final.completed == sum(outcomes)
        assert final.failed == len(outcomes) - sum(outcomes)
        assert final.progress == 100.0
        assert queue.is_drained()

    def test_empty_queue_stats(self, task_queue):
        stats = task_queue.stats()

        assert stats.total == 0
        assert stats.progress == 0.0
        assert stats.estimated_time_remaining == 0.0
        assert stats.max_concurrent == 2


class TestDrain:
    """queue-empty fires once per run."""

    def test_queue_empty_published_once(self, task_queue, event_bus):
        drained = []
        event_bus.subscribe(EventKind.QUEUE_EMPTY, drained.append)
        task_queue.begin_run()
        task_queue.submit(["/a"])
        task_queue.mark_completed(task_queue.dequeue_next().url)

        task_queue.check_drain()
        task_queue.check_drain()

        assert len(drained) == 1
        assert (drained[0].completed, drained[0].failed) == (1, 0)

    def test_empty_run_still_drains(self, task_queue, event_bus):
        drained = []
        event_bus.subscribe(EventKind.QUEUE_EMPTY, drained.append)
        task_queue.begin_run()

        assert task_queue.check_drain() is True
        assert len(drained) == 1

    def test_retrying_task_keeps_queue_live(self):
        queue = make_queue(max_retries=1, retry_delay=5.0)
        queue.begin_run()
        queue.submit(["/a"])
        queue.dequeue_next()
        queue.mark_failed("/a", "boom")

        assert not queue.is_drained()
        queue.cancel()


class TestCancelAndClear:
    """Cancellation drops queued work; clear resets the queue."""

    def test_cancel_drops_pending_and_retrying(self):
        queue = make_queue(max_concurrent=2, max_retries=3, retry_delay=5.0)
        queue.begin_run()
        queue.submit(["/a", "/b", "/c"])
        queue.dequeue_next()
        queue.dequeue_next()
        queue.mark_failed("/a", "boom")

        dropped = queue.cancel()

        assert sorted(dropped) == ["/a", "/c"]
        assert queue.active_urls() == ["/b"]
        assert queue.dequeue_next() is None

        queue.mark_failed("/b", "aborted")
        assert queue.get_failed_results() == []
        assert sorted(queue.get_cancelled_urls()) == ["/a", "/b", "/c"]
        assert queue.is_drained()

    def test_in_flight_success_after_cancel_is_kept(self, task_queue):
        task_queue.begin_run()
        task_queue.submit(["/a", "/b"])
        task_queue.dequeue_next()
        task_queue.cancel()

        task_queue.mark_completed("/a", "ok")

        assert [r.url for r in task_queue.get_completed_results()] == ["/a"]
        assert task_queue.get_cancelled_urls() == ["/b"]

    def test_submit_after_cancel_never_becomes_live(self, task_queue):
        task_queue.begin_run()
        task_queue.submit(["/a"])
        task_queue.dequeue_next()
        task_queue.cancel()

        assert task_queue.submit(["/late", "/late"]) == []
        assert task_queue.pending_urls() == []
        assert task_queue.get_cancelled_urls() == ["/late"]

        task_queue.mark_completed("/a", "ok")
        assert task_queue.is_drained()

    def test_end_run_lifts_cancellation(self, task_queue):
        task_queue.begin_run()
        task_queue.cancel()

        task_queue.end_run()

        assert not task_queue.is_cancelled()
        assert [t.url for t in task_queue.submit(["/next"])] == ["/next"]

    def test_clear_refuses_while_in_progress(self, task_queue):
        task_queue.submit(["/a"])
        task_queue.dequeue_next()

        with pytest.raises(MisuseError):
            task_queue.clear()

    def test_begin_run_refuses_while_in_progress(self, task_queue):
        task_queue.submit(["/a"])
        task_queue.dequeue_next()

        with pytest.raises(MisuseError):
            task_queue.begin_run()

    def test_clear_resets_everything(self, task_queue):
        task_queue.submit(["/a", "/b"])
        task_queue.mark_completed(task_queue.dequeue_next().url)

        task_queue.clear()

        assert len(task_queue) == 0
        assert task_queue.get_completed_results() == []
        assert task_queue.get_task("/a") is None
        assert [t.url for t in task_queue.submit(["/a"])] == ["/a"]
