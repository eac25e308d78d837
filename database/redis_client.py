"""
Redis client for the submission monitor.
Keeps a bounded list of recent submission timings shared across workers.
Nothing here is authoritative: the list may be lost on restart.
"""

import os
import json
from typing import List, Optional

import redis

# ─── Config ────────────────────────────────────────────────────────────────────

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "0.5"))
REDIS_CONNECT_TIMEOUT = float(os.getenv("REDIS_CONNECT_TIMEOUT", "0.5"))

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=REDIS_CONNECT_TIMEOUT,
        )
    return _redis_client


# ─── Key helpers ───────────────────────────────────────────────────────────────

def _window_key(name: str) -> str:
    return f"submission_metrics:{name}"


# ─── Rolling window operations ─────────────────────────────────────────────────

def push_window_entry(name: str, entry: dict, max_size: int, client: Optional[redis.Redis] = None):
    """Prepend an entry and trim the list to max_size (newest first)."""
    r = client or get_redis()
    key = _window_key(name)
    pipe = r.pipeline()
    pipe.lpush(key, json.dumps(entry, default=str))
    pipe.ltrim(key, 0, max_size - 1)
    pipe.execute()


def read_window(name: str, client: Optional[redis.Redis] = None) -> List[dict]:
    """All entries, oldest first."""
    r = client or get_redis()
    raw = r.lrange(_window_key(name), 0, -1)
    return [json.loads(item) for item in reversed(raw)]


def clear_window(name: str, client: Optional[redis.Redis] = None):
    r = client or get_redis()
    r.delete(_window_key(name))
