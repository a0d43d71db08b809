"""Bounded linear backoff for relay reconnects."""

from __future__ import annotations

from dataclasses import dataclass

from .config import Settings


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    Linear backoff: the n-th retry waits base_delay_ms * n.

    With the defaults the waits are 2s, 4s, 6s, 8s, 10s and then the
    client gives up and goes offline.
    """

    max_attempts: int = 5
    base_delay_ms: int = 2000

    @classmethod
    def from_settings(cls, settings: Settings) -> ReconnectPolicy:
        return cls(
            max_attempts=settings.reconnect_max_attempts,
            base_delay_ms=settings.reconnect_base_delay_ms,
        )

    def delay_ms(self, attempt: int) -> int:
        """Delay before retry number `attempt` (counted from 1)."""
        if attempt < 0 or attempt > self.max_attempts:
            raise ValueError(
                f"attempt must be within [0, {self.max_attempts}], got {attempt}"
            )
        return self.base_delay_ms * attempt

    def can_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts
