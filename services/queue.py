"""
Huey task queue backed by Redis.
HUEY_IMMEDIATE=true runs tasks in-process (tests, local development without a worker).
"""

import os

from huey import RedisHuey

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
HUEY_IMMEDIATE = os.getenv("HUEY_IMMEDIATE", "false").lower() in ("1", "true", "yes")

# The consumer blocks on BRPOP for up to 1s, so the read timeout must stay above that
HUEY_SOCKET_TIMEOUT = float(os.getenv("HUEY_SOCKET_TIMEOUT", "5"))
HUEY_CONNECT_TIMEOUT = float(os.getenv("HUEY_CONNECT_TIMEOUT", "0.5"))

huey_queue = RedisHuey(
    "submission-events",
    url=REDIS_URL,
    immediate=HUEY_IMMEDIATE,
    socket_timeout=HUEY_SOCKET_TIMEOUT,
    socket_connect_timeout=HUEY_CONNECT_TIMEOUT,
)
