"""Short-lived pending-usage markers.

Usage is only recorded after a model has been rendered, so two requests for
the same preset could otherwise both be handed the same model while the first
one's jobs are still in flight. A reservation is a member of a per-preset
ZSET scored by its expiry time; it is released when the job finishes and
expires on its own if the job is lost.
"""

import time
from typing import Callable, Iterable

from .settings import settings

class ReservationBook:
    def __init__(self, r, ttl_seconds: float, prefix: str | None = None,
                 clock: Callable[[], float] = time.time):
        self._r = r
        self._ttl = ttl_seconds
        self._prefix = prefix or settings.reservation_prefix
        self._clock = clock

    def _key(self, preset_id: str) -> str:
        return f"{self._prefix}:{preset_id}"

    def _purge(self, key: str) -> None:
        self._r.zremrangebyscore(key, "-inf", self._clock())

    def active(self, preset_id: str) -> set[str]:
        key = self._key(preset_id)
        self._purge(key)
        return set(self._r.zrange(key, 0, -1))

    def reserve(self, preset_id: str, model_ids: Iterable[str]) -> list[str]:
        """Reserve what is free, return the ids that were actually reserved."""
        key = self._key(preset_id)
        self._purge(key)
        model_ids = list(model_ids)
        expires_at = self._clock() + self._ttl

        pipe = self._r.pipeline()
        for model_id in model_ids:
            pipe.zadd(key, {model_id: expires_at}, nx=True)
        pipe.expire(key, int(self._ttl) + 1)
        added = pipe.execute()[:-1]
        return [m for m, ok in zip(model_ids, added) if ok]

    def release(self, preset_id: str, model_ids: Iterable[str]) -> None:
        model_ids = list(model_ids)
        if model_ids:
            self._r.zrem(self._key(preset_id), *model_ids)
