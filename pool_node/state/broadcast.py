import asyncio
from typing import AsyncIterator, Generic, Optional, TypeVar

T = TypeVar("T")


class LatestValueBroadcast(Generic[T]):
    """
    Multi-subscriber broadcast that remembers the last published value.

    A subscriber attaching after a publish receives the cached value at once,
    then every later value. Values are versioned per subscriber, so a value
    already delivered is never delivered again; a subscriber that falls
    behind skips straight to the newest value.
    """

    def __init__(self, name: str = "broadcast"):
        self.name = name
        self._value: Optional[T] = None
        self._version = 0
        self._cond = asyncio.Condition()
        self._subscribers = 0

    @property
    def latest(self) -> Optional[T]:
        return self._value

    @property
    def version(self) -> int:
        return self._version

    @property
    def subscriber_count(self) -> int:
        return self._subscribers

    async def publish(self, value: T) -> None:
        if value is None:
            raise ValueError(f"{self.name}: cannot publish None")
        async with self._cond:
            self._value = value
            self._version += 1
            self._cond.notify_all()

    async def subscribe(self) -> AsyncIterator[T]:
        seen = 0
        self._subscribers += 1
        try:
            while True:
                async with self._cond:
                    await self._cond.wait_for(lambda: self._version > seen)
                    value, seen = self._value, self._version
                yield value
        finally:
            self._subscribers -= 1

    def __repr__(self):
        return (
            f"LatestValueBroadcast(name='{self.name}', version={self._version}, "
            f"subscribers={self._subscribers})"
        )
