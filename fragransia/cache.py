"""In-process TTL cache for catalog reads."""
import threading
import time
from typing import Any, Dict, Tuple

cache_data: Dict[str, Tuple[Any, float]] = {}
cache_lock = threading.Lock()
CACHE_TTL = {
    "products": 600,     # 10 minutes
    "categories": 1800,  # 30 minutes
    "reviews": 300,
    "stats": 60,
    "default": 300,
}


def get_cache(key: str, cache_type: str = "default"):
    with cache_lock:
        if key in cache_data:
            data, timestamp = cache_data[key]
            ttl = CACHE_TTL.get(cache_type, CACHE_TTL["default"])
            if time.time() - timestamp < ttl:
                return data
            del cache_data[key]
        return None


def set_cache(key: str, data: Any) -> None:
    with cache_lock:
        cache_data[key] = (data, time.time())


def clear_cache_pattern(pattern: str) -> None:
    with cache_lock:
        keys_to_delete = [k for k in cache_data.keys() if pattern in k]
        for k in keys_to_delete:
            del cache_data[k]


def clear_cache() -> None:
    with cache_lock:
        cache_data.clear()
