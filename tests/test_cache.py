import gc
import threading
import time
import weakref

from utils.cache import NO_EXPIRATION, ExpiringCache, ReadWriteLock


def make(**kw):
    kw.setdefault('default_ttl', 60)
    kw.setdefault('sweep_interval', 0)
    return ExpiringCache(**kw)


def test_set_then_get_hits():
    c = make()
    c.set('k', 'v', ttl=5)
    assert c.get('k') == ('v', True)


def test_missing_key():
    assert make().get('nope') == (None, False)


def test_entry_expires_after_ttl():
    c = make()
    c.set('a', '/tmp/a.png', ttl=0.005)
    assert c.get('a') == ('/tmp/a.png', True)
    time.sleep(0.01)
    assert c.get('a') == (None, False)


def test_expired_entry_removed_on_read():
    c = make()
    c.set('a', 'x', ttl=0.001)
    time.sleep(0.005)
    assert len(c) == 1
    c.get('a')
    assert len(c) == 0


def test_last_write_wins_and_resets_ttl():
    c = make()
    c.set('k', 'v1', ttl=0.2)
    time.sleep(0.12)
    c.set('k', 'v2', ttl=0.2)
    time.sleep(0.12)
    assert c.get('k') == ('v2', True)


def test_delete():
    c = make()
    c.set('k', 'v', ttl=NO_EXPIRATION)
    c.delete('k')
    assert c.get('k') == (None, False)
    c.delete('k')  # absent: no-op


def test_default_ttl_used_when_omitted():
    c = make(default_ttl=0.005)
    c.set('k', 'v')
    time.sleep(0.01)
    assert c.get('k') == (None, False)


def test_zero_ttl_never_expires():
    c = make(default_ttl=0.001)
    c.set('forever', 'v', ttl=0)
    c.set('also', 'v', ttl=NO_EXPIRATION)
    time.sleep(0.01)
    assert c.get('forever') == ('v', True)
    assert c.get('also') == ('v', True)
    assert c.delete_expired() == 0


def test_sweep_removes_expired_without_reads():
    with ExpiringCache(default_ttl=60, sweep_interval=0.01) as c:
        c.set('b', 'x', ttl=0.001)
        time.sleep(0.05)
        assert 'b' not in c.items()
        assert len(c) == 0


def test_sweep_keeps_live_entries():
    with ExpiringCache(default_ttl=60, sweep_interval=0.01) as c:
        c.set('live', 'x')
        c.set('dead', 'y', ttl=0.001)
        time.sleep(0.05)
        assert len(c) == 1
        assert c.get('live') == ('x', True)


def test_stop_is_idempotent_and_joins_sweeper():
    c = ExpiringCache(default_ttl=60, sweep_interval=0.01)
    c.stop()
    c.stop()
    assert not c._sweeper.is_alive()


def test_no_sweeper_when_interval_disabled():
    c = make()
    assert c._sweeper is None
    c.stop()


def test_add_only_when_absent_or_expired():
    c = make()
    assert c.add('k', 'first')
    assert not c.add('k', 'second')
    assert c.get('k') == ('first', True)

    c.set('old', 'stale', ttl=0.001)
    time.sleep(0.005)
    assert c.add('old', 'fresh')
    assert c.get('old') == ('fresh', True)


def test_items_skips_expired_and_flush_clears():
    c = make()
    c.set('a', 1)
    c.set('b', 2, ttl=0.001)
    time.sleep(0.005)
    assert c.items() == {'a': 1}
    c.flush()
    assert len(c) == 0


def test_on_evicted_called_for_delete_expiry_and_sweep():
    seen = []
    c = make(on_evicted=lambda k, v: seen.append((k, v)))
    c.set('deleted', 1)
    c.delete('deleted')
    c.set('read', 2, ttl=0.001)
    c.set('swept', 3, ttl=0.001)
    c.set('overwritten', 4)
    c.set('overwritten', 5)
    time.sleep(0.005)
    c.get('read')
    assert c.delete_expired() == 1
    assert seen == [('deleted', 1), ('read', 2), ('swept', 3)]


def test_concurrent_set_get_on_distinct_keys():
    c = make()
    errors = []

    def worker(i):
        for n in range(200):
            key = f'{i}-{n}'
            c.set(key, (i, n))
            value, found = c.get(key)
            if not found or value != (i, n):
                errors.append(key)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert len(c) == 16 * 200


def test_concurrent_access_with_running_sweeper():
    with ExpiringCache(default_ttl=0.002, sweep_interval=0.001) as c:
        errors = []

        def worker(i):
            for n in range(200):
                key = f'{i}-{n}'
                c.set(key, n, ttl=NO_EXPIRATION)
                value, found = c.get(key)
                if not found or value != n:
                    errors.append(key)
                c.set(f'tmp-{key}', n)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []


def test_rwlock_readers_share_writer_excludes():
    lock = ReadWriteLock()
    lock.acquire_read()
    lock.acquire_read()  # second reader does not block

    wrote = threading.Event()

    def writer():
        lock.acquire_write()
        wrote.set()
        lock.release_write()

    t = threading.Thread(target=writer)
    t.start()
    assert not wrote.wait(0.05)
    lock.release_read()
    assert not wrote.wait(0.05)
    lock.release_read()
    assert wrote.wait(1)
    t.join()


def test_dropped_cache_stops_sweeper():
    c = ExpiringCache(default_ttl=60, sweep_interval=0.01)
    sweeper = c._sweeper
    ref = weakref.ref(c)
    del c
    for _ in range(100):
        gc.collect()
        if ref() is None:
            break
        time.sleep(0.01)
    assert ref() is None
    sweeper.join(1)
    assert not sweeper.is_alive()
