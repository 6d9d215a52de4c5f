import asyncio
import random
import time


class GiveUp(Exception):
    """Raised by Backoff.sleep() once the configured ceiling has elapsed."""

    def __init__(self, attempts: int, elapsed: float):
        super().__init__(f"gave up after {attempts} attempts ({elapsed:.1f}s)")
        self.attempts = attempts
        self.elapsed = elapsed


class Backoff:
    """
    Exponential backoff with jitter and an optional total-time ceiling.

    Delays start at ``initial`` and grow by ``factor`` up to ``max_delay``.
    Each delay is spread by +/- ``jitter`` (a fraction). With
    ``give_up_after`` > 0, sleep() raises GiveUp once that many seconds have
    passed since the first attempt; 0 keeps retrying forever.
    """

    def __init__(
        self,
        initial: float = 0.1,
        factor: float = 2.0,
        max_delay: float = 2.0,
        jitter: float = 0.1,
        give_up_after: float = 0.0,
    ):
        self.initial = max(0.0, initial)
        self.factor = max(1.0, factor)
        self.max_delay = max(self.initial, max_delay)
        self.jitter = min(max(0.0, jitter), 1.0)
        self.give_up_after = max(0.0, give_up_after)
        self.attempts = 0
        self._started = time.monotonic()
        self._delay = self.initial

    def clone(self) -> "Backoff":
        """A fresh backoff with the same parameters (each wait loop owns one)."""
        return Backoff(
            initial=self.initial,
            factor=self.factor,
            max_delay=self.max_delay,
            jitter=self.jitter,
            give_up_after=self.give_up_after,
        )

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def next_delay(self) -> float:
        delay = self._delay
        self._delay = min(self.max_delay, self._delay * self.factor)
        if self.jitter and delay:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return delay

    async def sleep(self):
        self.attempts += 1
        if self.give_up_after and self.elapsed >= self.give_up_after:
            raise GiveUp(self.attempts, self.elapsed)
        await asyncio.sleep(self.next_delay())
