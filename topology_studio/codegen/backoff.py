from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from ..config import Settings


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff between status polls.

    The delay before poll n (1-based) is base_delay * multiplier^(n-1),
    capped at max_delay. Polling stops after max_attempts polls.
    """

    base_delay: float = 30.0
    multiplier: float = 1.5
    max_delay: float = 300.0
    max_attempts: int = 12

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1 so delays never shrink")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_delay=settings.poll_base_delay,
            multiplier=settings.poll_multiplier,
            max_delay=settings.poll_max_delay,
            max_attempts=settings.poll_max_attempts,
        )

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def delays(self) -> Iterator[float]:
        for attempt in range(1, self.max_attempts + 1):
            yield self.delay(attempt)
