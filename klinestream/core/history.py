from collections import deque
from typing import List
from klinestream.core.models import CompletedCandle

class HistoryBuffer:
    """Bounded, newest-first store of completed candles"""
    def __init__(self, capacity: int = 50):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        # appendleft on a full deque drops the oldest (rightmost) entry
        self._candles = deque(maxlen=capacity)

    def push(self, candle: CompletedCandle):
        self._candles.appendleft(candle)

    def snapshot(self) -> List[CompletedCandle]:
        return list(self._candles)

    def __len__(self):
        return len(self._candles)
