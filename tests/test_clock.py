import time

import pytest

from openvbus.clock import Clock, RealtimeClock
from openvbus.scheduler import Scheduler


def test_readings_never_go_backwards():
    clock = RealtimeClock()
    readings = [clock.now() for _ in range(200)]
    assert readings == sorted(readings)
    assert readings[0] >= 0


def test_instances_share_one_origin():
    first = RealtimeClock().now()
    second = RealtimeClock().now()
    assert second >= first


def test_clock_advances_with_real_time():
    clock = RealtimeClock()
    start = clock.now()
    time.sleep(0.01)
    assert clock.now() - start >= 10_000_000


def test_clock_base_is_abstract():
    with pytest.raises(TypeError):
        Clock()


def test_custom_clock_subclass_is_usable():
    class Fixed(Clock):
        def now(self):
            return 42

    assert Scheduler(Fixed()).now() == 42