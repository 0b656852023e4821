from stats_cache import StatsCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_hit_within_ttl():
    clock = FakeClock()
    cache = StatsCache(ttl_seconds=60, clock=clock)
    cache.set(1, {"total_referred": 3})

    clock.now += 59
    assert cache.get(1) == {"total_referred": 3}


def test_expires_after_ttl():
    clock = FakeClock()
    cache = StatsCache(ttl_seconds=60, clock=clock)
    cache.set(1, {"total_referred": 3})

    clock.now += 60
    assert cache.get(1) is None


def test_invalidate_is_per_member():
    cache = StatsCache(ttl_seconds=60)
    cache.set(1, "a")
    cache.set(2, "b")

    cache.invalidate(1, None)

    assert cache.get(1) is None
    assert cache.get(2) == "b"


def test_miss_for_unknown_member():
    assert StatsCache().get(42) is None
