from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone, timedelta
from typing import Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

def to_epoch_ms(dt: datetime) -> int:
    """Exact epoch milliseconds (floor). Naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)

class Tick(BaseModel):
    """A single admitted trade/price update"""
    event_time_ms: int
    price: float = Field(gt=0)
    size: float = Field(default=0.0, ge=0)

class TickerMessage(BaseModel):
    """Subset of a Coinbase `ticker` channel message that we consume"""
    type: str
    time: datetime
    price: float
    last_size: float = 0.0
    product_id: Optional[str] = None

    @field_validator("last_size", mode="before")
    @classmethod
    def unknown_size(cls, v):
        # Exchange sends no size (or an empty one) when it is unknown
        if v is None or v == "":
            return 0.0
        return v

    def to_tick(self) -> Tick:
        return Tick(event_time_ms=to_epoch_ms(self.time), price=self.price, size=self.last_size)

class Candle(BaseModel):
    """OHLCV window. Mutable while owned by the aggregator."""
    symbol: str
    interval: str
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    trade_count: int = 1

class CompletedCandle(Candle):
    """Finalized candle, tagged with its exchange. Immutable."""
    model_config = ConfigDict(frozen=True)

    exchange: str

    @property
    def key(self):
        return (self.exchange, self.symbol, self.interval, self.open_time)
