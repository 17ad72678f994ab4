from typing import Dict, Optional, Callable, Tuple
import asyncio
import time


class InterjectionLedger:
    """Per-channel record of when the agent last spoke unprompted"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.last_interjection: Dict[str, float] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    async def last_for(self, channel_id: str) -> Optional[float]:
        async with self._lock:
            return self.last_interjection.get(channel_id)

    async def claim(self, channel_id: str, interval: float) -> Tuple[bool, Optional[float]]:
        """
        Reserve the channel if its interval has passed, in one step.

        Returns whether the claim succeeded and the timestamp it replaced,
        which ``release`` puts back if the agent ends up staying quiet.
        """

        async with self._lock:
            now = self._clock()
            previous = self.last_interjection.get(channel_id)
            if previous is not None and now - previous < interval:
                return False, previous
            self.last_interjection[channel_id] = now
            return True, previous

    async def release(self, channel_id: str, previous: Optional[float]) -> None:
        async with self._lock:
            if previous is None:
                self.last_interjection.pop(channel_id, None)
            else:
                self.last_interjection[channel_id] = previous

    async def record(self, channel_id: str, at: Optional[float] = None) -> None:
        async with self._lock:
            self.last_interjection[channel_id] = self._clock() if at is None else at
