from catalog_backend.rate_limiter import TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_refuses_beyond_capacity_then_refills():
    clock = FakeClock()
    bucket = TokenBucket(rate_per_minute=60, capacity=2, clock=clock)
    assert bucket.acquire()
    assert bucket.acquire()
    assert not bucket.acquire()
    clock.now += 1.0
    assert bucket.acquire()
    assert not bucket.acquire()


def test_capacity_defaults_to_rate():
    bucket = TokenBucket(rate_per_minute=8, clock=FakeClock())
    assert sum(bucket.acquire() for _ in range(10)) == 8
