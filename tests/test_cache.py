import threading

from nextbus_proxy import CacheEntry, ResponseCache


def test_freshness_boundary():
    entry = CacheEntry(value="x", fetched_at_ms=1_000)
    assert ResponseCache.is_fresh(entry, 1_000, 500)
    assert ResponseCache.is_fresh(entry, 1_499, 500)
    assert not ResponseCache.is_fresh(entry, 1_500, 500)


def test_lookup_returns_fresh_entry_only():
    now = [0]
    cache = ResponseCache(1_000, clock=lambda: now[0])
    cache.put("SF", ["a"])

    assert cache.lookup("SF").value == ["a"]
    now[0] = 1_000
    assert cache.lookup("SF") is None
    # Stale entries stay until overwritten.
    assert cache.get("SF").value == ["a"]


def test_put_replaces_whole_entry():
    cache = ResponseCache(1_000)
    cache.put("k", {"a": 1}, now=5)
    cache.put("k", {"b": 2}, now=10)

    entry = cache.get("k")
    assert entry.value == {"b": 2}
    assert entry.fetched_at_ms == 10


def test_lookup_miss():
    cache = ResponseCache(1_000)
    assert cache.lookup("missing") is None
    assert cache.get("missing") is None


def test_remaining_seconds():
    cache = ResponseCache(15 * 60 * 1000)
    entry = cache.put("37.77,-122.42", {}, now=0)
    assert cache.remaining_sec(entry, now=0) == 900
    assert cache.remaining_sec(entry, now=60_000) == 840
    assert cache.remaining_sec(entry, now=10 * 60 * 60 * 1000) == 0


def test_concurrent_writers_leave_one_complete_entry():
    cache = ResponseCache(60_000)
    barrier = threading.Barrier(8)

    def writer(n):
        barrier.wait()
        cache.put("k", {"writer": n, "items": list(range(n))})

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    value = cache.get("k").value
    assert value["items"] == list(range(value["writer"]))
