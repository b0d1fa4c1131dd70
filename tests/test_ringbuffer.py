import pytest

from openvbus.ringbuffer import RingBuffer


def test_partial_fill_keeps_insertion_order():
    ring = RingBuffer(3)
    ring.push(1)
    ring.push(2)
    assert list(ring) == [1, 2]
    assert len(ring) == 2
    assert ring.full is False


def test_wraps_and_keeps_most_recent():
    ring = RingBuffer(3)
    for value in range(1, 6):
        ring.push(value)
    assert list(ring) == [3, 4, 5]
    assert len(ring) == 3
    assert ring.full is True


def test_exactly_full():
    ring = RingBuffer(2)
    ring.push("a")
    ring.push("b")
    assert list(ring) == ["a", "b"]
    assert ring.capacity == 2


def test_empty_iterates_nothing():
    ring = RingBuffer(4)
    assert list(ring) == []
    assert len(ring) == 0


@pytest.mark.parametrize("capacity", [0, -1])
def test_invalid_capacity_rejected(capacity):
    with pytest.raises(ValueError):
        RingBuffer(capacity)


def test_length_never_exceeds_capacity():
    ring = RingBuffer(5)
    for value in range(100):
        ring.push(value)
        assert len(ring) <= 5
    assert list(ring) == list(range(95, 100))