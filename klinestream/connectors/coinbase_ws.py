import asyncio
import inspect
import json
from enum import Enum
from typing import List, Optional
import websockets
from pydantic import ValidationError
from klinestream.core.logger import logger
from klinestream.core.models import TickerMessage, CompletedCandle
from klinestream.core.aggregator import TickFilter, CandleAggregator
from klinestream.core.history import HistoryBuffer
from klinestream.core.persistence import persistence_gateway
from klinestream.config import settings

class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"
    RECONNECTING = "RECONNECTING"
    EXHAUSTED = "EXHAUSTED"

class CoinbaseTickerWS:
    """
    Owns the Coinbase ticker stream for one symbol and feeds admitted ticks
    into the candle aggregator.

    Reconnects with a fixed delay after any close or transport error. The
    attempt counter resets each time a connection opens; once it reaches
    max_reconnect_attempts the client goes to EXHAUSTED and stays there.
    """
    def __init__(self, aggregator: CandleAggregator, tick_filter: Optional[TickFilter] = None,
                 symbol: Optional[str] = None, ws_url: Optional[str] = None,
                 max_reconnect_attempts: Optional[int] = None, reconnect_delay: Optional[float] = None):
        self.aggregator = aggregator
        self.tick_filter = tick_filter or TickFilter()
        self.symbol = symbol or settings.SYMBOL
        self.ws_url = ws_url or settings.COINBASE_WS_URL
        self.max_reconnect_attempts = (
            settings.MAX_RECONNECT_ATTEMPTS if max_reconnect_attempts is None else max_reconnect_attempts
        )
        self.reconnect_delay = settings.RECONNECT_DELAY_MS / 1000 if reconnect_delay is None else reconnect_delay

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.running = False
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self.listeners = [] # Callbacks for completed candles

    @property
    def last_tick_time(self) -> int:
        return self.tick_filter.last_tick_time

    def add_listener(self, callback):
        """Register a callback for completed candles"""
        self.listeners.append(callback)

    def get_recent_candles(self) -> List[CompletedCandle]:
        return self.aggregator.history.snapshot()

    async def connect(self):
        """Start the connection task"""
        if self.running:
            return

        self.running = True
        logger.info(f"Starting Coinbase WS for {self.symbol}")
        self._task = asyncio.create_task(self._connect_loop())

    async def disconnect(self):
        """Close the stream and stop reconnecting. Safe to call repeatedly."""
        if not self.running:
            return

        logger.info("Stopping Coinbase WS...")
        self.running = False
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._ws = None
        self.state = ConnectionState.DISCONNECTED

    async def wait_closed(self):
        """Wait until the connection task ends (disconnect or EXHAUSTED)"""
        if self._task is not None:
            await asyncio.wait([self._task])

    async def _connect_loop(self):
        while self.running:
            try:
                self.state = ConnectionState.CONNECTING
                logger.info(f"Connecting to {self.ws_url}...")
                async with websockets.connect(self.ws_url) as ws:
                    self._ws = ws
                    logger.info("Connected to Coinbase WS")
                    self.reconnect_attempts = 0

                    await self._subscribe(ws)
                    self.state = ConnectionState.SUBSCRIBED

                    await self._read_loop(ws)
                logger.info("Coinbase WS connection closed")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # If we are stopping, ignore
                if not self.running:
                    break
                logger.warning(f"Coinbase WS error: {e!r}")
            finally:
                self._ws = None

            if not self.running:
                break

            if self.reconnect_attempts >= self.max_reconnect_attempts:
                self.state = ConnectionState.EXHAUSTED
                self.running = False
                logger.critical(
                    "Max reconnection attempts reached. Please check the connection and restart the application.",
                    extra={"state": self.state.value, "attempt": self.reconnect_attempts},
                )
                break

            self.reconnect_attempts += 1
            self.state = ConnectionState.RECONNECTING
            logger.warning(
                f"Attempting to reconnect ({self.reconnect_attempts}/{self.max_reconnect_attempts}) "
                f"in {self.reconnect_delay}s...",
                extra={"attempt": self.reconnect_attempts},
            )
            await asyncio.sleep(self.reconnect_delay)

    async def _subscribe(self, ws):
        subscribe_msg = {
            "type": "subscribe",
            "product_ids": [self.symbol],
            "channels": ["ticker"]
        }
        await ws.send(json.dumps(subscribe_msg))
        logger.info(f"Sent subscription message: {json.dumps(subscribe_msg)}")

    async def _read_loop(self, ws):
        # Ends on a clean close, raises ConnectionClosedError on an abnormal one
        async for msg_raw in ws:
            await self._handle_message(msg_raw)

    async def _handle_message(self, msg_raw):
        """Decode one message and fold it if it is a ticker update"""
        try:
            data = json.loads(msg_raw)
            if not isinstance(data, dict):
                raise ValueError(f"Unexpected payload: {data!r}")

            msg_type = data.get("type")
            if msg_type == "error":
                logger.error(f"Coinbase WS Error: {data.get('message')} {data.get('reason', '')}")
                return
            if msg_type != "ticker":
                return

            tick = TickerMessage.model_validate(data).to_tick()
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            logger.error(f"Error processing message: {e}")
            return

        if not self.tick_filter.admit(tick.event_time_ms):
            return

        try:
            completed = await self.aggregator.fold(tick)
        except Exception as e:
            logger.error(f"Aggregation error: {e}", exc_info=True)
            return

        if completed is not None:
            await self._notify(completed)

    async def _notify(self, candle: CompletedCandle):
        for listener in self.listeners:
            try:
                result = listener(candle)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Listener error: {e}")

def build_client() -> CoinbaseTickerWS:
    history = HistoryBuffer(settings.HISTORY_CAPACITY)
    aggregator = CandleAggregator(
        symbol=settings.SYMBOL,
        interval=settings.INTERVAL,
        interval_ms=settings.interval_ms,
        exchange=settings.EXCHANGE,
        history=history,
        gateway=persistence_gateway,
    )
    return CoinbaseTickerWS(aggregator)

# Global instance
coinbase_ws_client = build_client()
