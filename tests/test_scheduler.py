from openvbus.clock import Clock
from openvbus.scheduler import Scheduler


class FakeClock(Clock):
    def __init__(self, t=0):
        self.t = t

    def now(self):
        return self.t


def test_run_until_runs_only_due_items_in_time_order():
    sched = Scheduler(FakeClock())
    calls = []
    sched.post(30, lambda: calls.append(30))
    sched.post(10, lambda: calls.append(10))
    sched.post(20, lambda: calls.append(20))

    assert sched.run_until(20) == 2
    assert calls == [10, 20]
    assert len(sched) == 1

    sched.run()
    assert calls == [10, 20, 30]
    assert len(sched) == 0


def test_equal_times_keep_posting_order():
    sched = Scheduler(FakeClock())
    calls = []
    for name in "abc":
        sched.post(5, lambda n=name: calls.append(n))
    sched.run_until(5)
    assert calls == ["a", "b", "c"]


def test_now_reads_the_clock():
    clock = FakeClock(123)
    sched = Scheduler(clock)
    assert sched.now() == 123
    clock.t = 456
    assert sched.now() == 456


def test_items_posted_by_callbacks_wait_for_next_pass():
    sched = Scheduler(FakeClock())
    calls = []

    def first():
        calls.append("first")
        sched.post(0, lambda: calls.append("second"))

    sched.post(0, first)
    sched.run()
    assert calls == ["first"]
    assert len(sched) == 1
    sched.run()
    assert calls == ["first", "second"]


def test_run_until_before_any_due_time_runs_nothing():
    sched = Scheduler(FakeClock())
    calls = []
    sched.post(100, lambda: calls.append(1))
    assert sched.run_until(99) == 0
    assert calls == []