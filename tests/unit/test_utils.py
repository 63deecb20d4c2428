"""
Tests for the shared counters.
"""

import threading

import pytest

from fetchcore.utils import AtomicCounter


@pytest.mark.unit
class TestAtomicCounter:
    def test_increment_and_get(self):
        counter = AtomicCounter()
        assert counter.increment() == 1
        assert counter.increment(5) == 6
        assert counter.get_and_increment() == 6
        assert counter.value == 7
        assert int(counter) == 7

    def test_reset(self):
        counter = AtomicCounter(3)
        counter.reset()
        assert counter.value == 0

    def test_concurrent_increments_are_not_lost(self):
        counter = AtomicCounter()

        def bump():
            for _ in range(10_000):
                counter.increment()

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert counter.value == 80_000
