import threading
import time

import numpy as np
import pytest

from photomosaic.cache import ResultCache, array_identity, make_fingerprint


class _Counter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.calls


def test_identical_fingerprint_computes_once() -> None:
    cache = ResultCache(4)
    compute = _Counter()
    assert cache.get_or_compute("a", compute) == 1
    assert cache.get_or_compute("a", compute) == 1
    assert compute.calls == 1
    assert cache.hits == 1
    assert cache.misses == 1


def test_lru_eviction_recomputes_evicted_key() -> None:
    cache = ResultCache(3)
    compute = _Counter()
    for key in ("a", "b", "c", "d"):
        cache.get_or_compute(key, compute)
    assert "a" not in cache
    assert len(cache) == 3

    cache.get_or_compute("a", compute)
    assert compute.calls == 5


def test_recent_use_protects_from_eviction() -> None:
    cache = ResultCache(2)
    compute = _Counter()
    cache.get_or_compute("a", compute)
    cache.get_or_compute("b", compute)
    cache.get_or_compute("a", compute)
    cache.get_or_compute("c", compute)
    assert "a" in cache
    assert "b" not in cache


def test_invalidate() -> None:
    cache = ResultCache(4)
    compute = _Counter()
    cache.get_or_compute("a", compute)
    cache.get_or_compute("b", compute)
    cache.invalidate("a")
    assert "a" not in cache and "b" in cache
    cache.invalidate()
    assert len(cache) == 0


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ResultCache(0)


def test_fingerprint_is_stable_and_complete() -> None:
    a = make_fingerprint("fit", sigma=3.0, grid=20, channel=0)
    b = make_fingerprint("fit", channel=0, grid=20, sigma=3.0 + 1e-15)
    assert a == b
    assert a != make_fingerprint("fit", sigma=3.0, grid=20, channel=1)
    assert a != make_fingerprint("samples", sigma=3.0, grid=20, channel=0)
    assert a != make_fingerprint("fit", sigma=2.5, grid=20, channel=0)


def test_array_identity_tracks_content() -> None:
    x = np.zeros((4, 4))
    y = x.copy()
    y[1, 1] = 1.0
    assert array_identity(x) == array_identity(x.copy())
    assert array_identity(x) != array_identity(y)
    assert array_identity(x) != array_identity(x.astype(np.float32))
    assert make_fingerprint("t", tile=x) != make_fingerprint("t", tile=y)


def test_unhashable_parameter_types_are_rejected() -> None:
    with pytest.raises(TypeError):
        make_fingerprint("x", bad=object())


def test_concurrent_callers_compute_once() -> None:
    cache = ResultCache(4)
    calls = []

    def slow():
        calls.append(1)
        time.sleep(0.05)
        return "value"

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(cache.get_or_compute("k", slow)))
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(calls) == 1
    assert results == ["value"] * 8


def test_array_identity_digest_matches_contiguous_bytes() -> None:
    import hashlib

    x = np.arange(24, dtype=np.float64).reshape(4, 6)
    for arr in (x, x.T, x[:, ::2], x > 10):
        expected = hashlib.sha256(np.ascontiguousarray(arr).tobytes()).hexdigest()[:32]
        assert array_identity(arr)["sha256"] == expected
    assert array_identity(x.T) != array_identity(x)
