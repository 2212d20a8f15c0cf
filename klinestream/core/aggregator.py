from datetime import datetime, timezone
from typing import Optional
from klinestream.core.models import Tick, Candle, CompletedCandle
from klinestream.core.history import HistoryBuffer
from klinestream.core.logger import logger

def iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()

class TickFilter:
    """
    Strict ordering guard. A tick is admitted only if its event time is
    greater than every previously admitted one. The watermark lives for the
    whole process, so it also rejects replays after a reconnect.
    """
    def __init__(self):
        self.last_tick_time = 0

    def admit(self, event_time_ms: int) -> bool:
        if event_time_ms <= self.last_tick_time:
            return False
        self.last_tick_time = event_time_ms
        return True

class CandleAggregator:
    def __init__(self, symbol: str, interval: str, interval_ms: int, exchange: str,
                 history: HistoryBuffer, gateway=None):
        self.symbol = symbol
        self.interval = interval
        self.interval_ms = interval_ms
        self.exchange = exchange
        self.history = history
        self.gateway = gateway

        self.current_candle: Optional[Candle] = None
        self.window_start = 0
        self._rolling_over = False

    def bucket(self, event_time_ms: int) -> int:
        return (event_time_ms // self.interval_ms) * self.interval_ms

    async def fold(self, tick: Tick) -> Optional[CompletedCandle]:
        """
        Folds a tick into the current window.
        Returns the candle that was closed by this tick, or None.
        """
        if self._rolling_over:
            logger.debug(f"Rollover in flight, dropping tick at {iso(tick.event_time_ms)}")
            return None

        bucket = self.bucket(tick.event_time_ms)

        if self.current_candle is None or bucket > self.window_start:
            completed = None
            try:
                self._rolling_over = True
                # Close and reopen before the first await so a cancelled
                # submit cannot leave the closed window as current_candle
                if self.current_candle is not None:
                    completed = self._finalize()
                self._open(bucket, tick)

                if completed is not None:
                    self.history.push(completed)
                    if self.gateway is not None:
                        await self.gateway.submit(completed)
                    self._log_candle(completed)
            finally:
                self._rolling_over = False
            return completed

        c = self.current_candle
        c.high = max(c.high, tick.price)
        c.low = min(c.low, tick.price)
        c.close = tick.price
        c.volume += tick.size
        c.trade_count += 1
        return None

    def _finalize(self) -> CompletedCandle:
        return CompletedCandle(**self.current_candle.model_dump(), exchange=self.exchange)

    def _open(self, bucket: int, tick: Tick):
        self.window_start = bucket
        self.current_candle = Candle(
            symbol=self.symbol,
            interval=self.interval,
            open_time=bucket,
            close_time=bucket + self.interval_ms,
            open=tick.price,
            high=tick.price,
            low=tick.price,
            close=tick.price,
            volume=tick.size,
            trade_count=1,
        )
        logger.info(f"Started new kline at {iso(bucket)}")

    def _log_candle(self, kline: CompletedCandle):
        logger.info(
            f"Completed kline {kline.exchange}:{kline.symbol} {kline.interval} "
            f"open_time={iso(kline.open_time)} close_time={iso(kline.close_time)} "
            f"O={kline.open:.2f} H={kline.high:.2f} L={kline.low:.2f} C={kline.close:.2f} "
            f"V={kline.volume:.8f} trades={kline.trade_count} "
            f"history={len(self.history)}/{self.history.capacity}",
            extra={"exchange": kline.exchange, "symbol": kline.symbol, "open_time": kline.open_time},
        )
