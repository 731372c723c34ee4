from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field

from resizepipe.core.config import Settings


@dataclass
class RetryPolicy:
    max_attempts: int
    base_seconds: float
    max_seconds: float
    rng: random.Random = field(default_factory=random.Random)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_seconds < 0 or self.max_seconds < self.base_seconds:
            raise ValueError("retry bounds must satisfy 0 <= base_seconds <= max_seconds")

    @classmethod
    def from_settings(cls, settings: Settings, rng: random.Random | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=int(settings.max_attempts),
            base_seconds=float(settings.retry_base_seconds),
            max_seconds=float(settings.retry_max_seconds),
            rng=rng or random.Random(),
        )

    def should_retry(self, attempt_count: int) -> bool:
        return attempt_count < self.max_attempts

    def ceiling(self, attempt_count: int) -> float:
        exponent = min(max(0, attempt_count - 1), 62)
        return min(self.max_seconds, self.base_seconds * (2**exponent))

    def next_delay(self, attempt_count: int) -> float:
        ceiling = self.ceiling(attempt_count)
        with self._lock:
            return self.rng.uniform(0.0, ceiling)
