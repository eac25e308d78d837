"""
Step 1 — Stabilizer

Every later stage works on a private copy of the payload, so neither the caller
nor a concurrently running validation layer can change what another stage sees.
"""

import copy
import logging
from typing import Any, Tuple

log = logging.getLogger("submission.pipeline")


def stabilize(payload: Any) -> Any:
    """Deep copy `payload`. On a clone failure the original is returned and a warning logged."""
    if payload is None:
        return None
    try:
        return copy.deepcopy(payload)
    except Exception as e:
        log.warning(f"[STABILIZE] Degraded stabilization, using original payload: {e}")
        return payload


def stabilize_many(*objs: Any) -> Tuple[Any, ...]:
    return tuple(stabilize(obj) for obj in objs)
