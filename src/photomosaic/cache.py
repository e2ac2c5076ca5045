"""Bounded LRU memo for the expensive pipeline stages.

Keys are fingerprints: a hash over *every* parameter that changes the cached
value. A missing parameter in a fingerprint is a correctness bug (stale
results), so the pipeline builds them with :func:`make_fingerprint` from the
full stage config.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Hashable, TypeVar

import numpy as np


log = logging.getLogger(__name__)

T = TypeVar("T")


def array_identity(arr: np.ndarray | None) -> dict[str, Any] | None:
    """Shape, dtype and content digest of an array."""
    if arr is None:
        return None
    a = np.ascontiguousarray(arr)
    h = hashlib.sha256(memoryview(a)).hexdigest()[:32]
    return {"shape": list(a.shape), "dtype": str(a.dtype), "sha256": h}


def _normalize(obj: Any) -> Any:
    """JSON-stable form: floats to 12 significant digits, sorted mappings."""
    if obj is None or isinstance(obj, (bool, str)):
        return obj
    if isinstance(obj, np.ndarray):
        return array_identity(obj)
    if isinstance(obj, np.generic):
        return _normalize(obj.item())
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        return float(f"{obj:.12g}")
    if isinstance(obj, dict):
        return {str(k): _normalize(obj[k]) for k in sorted(obj, key=str)}
    if isinstance(obj, (list, tuple)):
        return [_normalize(v) for v in obj]
    if hasattr(obj, "model_dump"):
        return _normalize(obj.model_dump())
    if hasattr(obj, "__dataclass_fields__"):
        return _normalize({k: getattr(obj, k) for k in obj.__dataclass_fields__})
    if hasattr(obj, "value"):
        return _normalize(obj.value)
    raise TypeError(f"cannot fingerprint value of type {type(obj).__name__}")


def make_fingerprint(stage: str, **params: Any) -> str:
    """Stable sha256 hex digest of ``stage`` plus keyword parameters."""
    payload = {"stage": stage, "params": _normalize(params)}
    s = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(s).hexdigest()


class ResultCache:
    """Thread-safe LRU map of fingerprint -> value.

    Lookup-and-insert happens under one lock, so concurrent callers with the
    same fingerprint compute the value once. There is no time-based expiry;
    callers invalidate explicitly.
    """

    def __init__(self, capacity: int = 16):
        if int(capacity) < 1:
            raise ValueError("cache capacity must be >= 1")
        self.capacity = int(capacity)
        self._data: OrderedDict[Hashable, Any] = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, fingerprint: Hashable) -> bool:
        with self._lock:
            return fingerprint in self._data

    def get_or_compute(self, fingerprint: Hashable, compute: Callable[[], T]) -> T:
        with self._lock:
            if fingerprint in self._data:
                self._data.move_to_end(fingerprint)
                self.hits += 1
                return self._data[fingerprint]
            self.misses += 1
            value = compute()
            self._data[fingerprint] = value
            while len(self._data) > self.capacity:
                old, _ = self._data.popitem(last=False)
                log.debug("cache evicted %s", str(old)[:12])
            return value

    def invalidate(self, fingerprint: Hashable | None = None) -> None:
        """Drop one entry, or everything when ``fingerprint`` is None."""
        with self._lock:
            if fingerprint is None:
                self._data.clear()
            else:
                self._data.pop(fingerprint, None)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._data),
                "capacity": self.capacity,
                "hits": self.hits,
                "misses": self.misses,
            }
