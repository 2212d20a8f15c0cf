from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

# Interval label -> window length in milliseconds
INTERVALS = {
    "1m": 60_000,
    "3m": 180_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "4h": 14_400_000,
    "1d": 86_400_000,
}

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "KlineStream"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Market Data
    COINBASE_WS_URL: str = Field(default="wss://ws-feed.exchange.coinbase.com", description="Streaming endpoint")
    EXCHANGE: str = Field(default="COINBASE", description="Exchange tag stamped on completed candles")
    SYMBOL: str = Field(default="BTC-USD", description="Product to subscribe to")
    INTERVAL: str = Field(default="1m", description="Candle interval label")

    # Aggregation / Connection
    HISTORY_CAPACITY: int = Field(default=50, gt=0, description="Completed candles kept in memory")
    MAX_RECONNECT_ATTEMPTS: int = Field(default=5, ge=0)
    RECONNECT_DELAY_MS: int = Field(default=5000, ge=0, description="Fixed delay between reconnects")

    # Storage
    DB_PATH: str = "data/klines.db"

    @field_validator("INTERVAL")
    @classmethod
    def check_interval(cls, v):
        if v not in INTERVALS:
            raise ValueError(f"Unknown interval {v!r}, expected one of {list(INTERVALS)}")
        return v

    @property
    def interval_ms(self) -> int:
        return INTERVALS[self.INTERVAL]

settings = Settings()
