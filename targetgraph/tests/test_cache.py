from targetgraph.services.cache import TTLCache


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_lazily_after_ttl():
    clock = _Clock()
    cache = TTLCache(ttl_seconds=10, max_entries=5, clock=clock)
    cache.set("brca1", ["hit"])

    clock.now = 9.9
    assert cache.get("brca1") == ["hit"]

    clock.now = 10.0
    assert cache.get("brca1") is None
    assert len(cache) == 0


def test_oldest_inserted_entry_is_evicted_first():
    cache = TTLCache(ttl_seconds=60, max_entries=2, clock=_Clock())
    cache.set("a", 1)
    cache.set("b", 2)
    # Reads do not refresh the eviction order.
    assert cache.get("a") == 1
    cache.set("c", 3)

    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_reset_key_moves_to_newest_and_refreshes_expiry():
    clock = _Clock()
    cache = TTLCache(ttl_seconds=10, max_entries=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    clock.now = 5
    cache.set("a", 11)
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 11

    clock.now = 14
    assert cache.get("a") == 11
    clock.now = 15
    assert "a" not in cache


def test_clear_empties_cache():
    cache = TTLCache(ttl_seconds=10, max_entries=3, clock=_Clock())
    cache.set("x", 1)
    cache.clear()
    assert cache.get("x") is None
