import aiosqlite
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional
from klinestream.core.models import CompletedCandle
from klinestream.config import settings

logger = logging.getLogger("klinestream")

class PersistenceError(Exception):
    """Store failed to commit a candle"""

class DuplicateKeyError(PersistenceError):
    """(exchange, symbol, interval, open_time) already stored"""

class CandleStore(ABC):
    @abstractmethod
    async def save(self, candle: CompletedCandle):
        """Commit the candle or raise DuplicateKeyError / PersistenceError"""

    @abstractmethod
    async def get_klines(self, exchange: str, symbol: str, interval: str, limit: int = 50) -> List[CompletedCandle]:
        pass

class SQLiteCandleStore(CandleStore):
    def __init__(self, db_path: str = "data/klines.db"):
        self.db_path = db_path

    async def init_db(self):
        """Initialize DB Schema and WAL mode"""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS klines (
                    exchange TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    interval TEXT NOT NULL,
                    open_time INTEGER NOT NULL,
                    close_time INTEGER NOT NULL,
                    open REAL,
                    high REAL,
                    low REAL,
                    close REAL,
                    volume REAL,
                    trade_count INTEGER,
                    PRIMARY KEY (exchange, symbol, interval, open_time)
                )
            """)
            await db.commit()
            logger.info(f"DB Initialized at {self.db_path} (WAL Mode)")

    async def save(self, candle: CompletedCandle):
        try:
            async with aiosqlite.connect(self.db_path) as db:
                # Plain INSERT: the primary key turns a second write into a conflict
                await db.execute("""
                    INSERT INTO klines (exchange, symbol, interval, open_time, close_time,
                                        open, high, low, close, volume, trade_count)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (candle.exchange, candle.symbol, candle.interval, candle.open_time, candle.close_time,
                      candle.open, candle.high, candle.low, candle.close, candle.volume, candle.trade_count))
                await db.commit()
        except aiosqlite.IntegrityError as e:
            raise DuplicateKeyError(f"Kline already stored: {candle.key}") from e
        except aiosqlite.Error as e:
            raise PersistenceError(str(e)) from e

    async def get_klines(self, exchange: str, symbol: str, interval: str, limit: int = 50) -> List[CompletedCandle]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("""
                SELECT * FROM klines
                WHERE exchange = ? AND symbol = ? AND interval = ?
                ORDER BY open_time DESC LIMIT ?
            """, (exchange, symbol, interval, limit)) as cursor:
                rows = await cursor.fetchall()
                return [CompletedCandle(**dict(row)) for row in rows]

class PersistenceGateway:
    """
    Forwards completed candles to a CandleStore.

    Once started, submissions go through a queue drained by a single worker,
    so the aggregator never waits on store latency and saves are committed
    in emission order. Duplicate keys count as success; any other failure
    is logged and the candle is dropped.
    """
    def __init__(self, store: CandleStore):
        self.store = store
        self.queue = asyncio.Queue()
        self.running = False
        self._task: Optional[asyncio.Task] = None

        self.saved = 0
        self.duplicates = 0
        self.failures = 0

    async def start(self):
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._process_queue())
        logger.info("Persistence Gateway Started")

    async def stop(self):
        if not self.running:
            return
        self.running = False
        if self._task:
            # join() also waits for the candle the worker is currently saving
            try:
                await asyncio.wait_for(self.queue.join(), timeout=2.0)
            except asyncio.TimeoutError:
                logger.warning(f"Persistence Gateway stopped with {self.queue.qsize()} unsaved klines")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Persistence Gateway Stopped. saved={self.saved} duplicates={self.duplicates} failures={self.failures}")

    async def submit(self, candle: CompletedCandle):
        if self.running:
            await self.queue.put(candle)
        else:
            await self.save(candle)

    async def save(self, candle: CompletedCandle) -> bool:
        """Returns True if the candle is in the store (new or duplicate)"""
        try:
            await self.store.save(candle)
        except DuplicateKeyError:
            self.duplicates += 1
            logger.debug(f"Kline already persisted: {candle.key}")
            return True
        except Exception as e:
            self.failures += 1
            logger.error(f"Failed to persist kline {candle.key}: {e}")
            return False

        self.saved += 1
        logger.info(f"Saved kline {candle.exchange}:{candle.symbol} at open_time={candle.open_time}")
        return True

    async def _process_queue(self):
        while True:
            candle = await self.queue.get()
            try:
                await self.save(candle)
            finally:
                self.queue.task_done()

# Singleton Instances
kline_store = SQLiteCandleStore(settings.DB_PATH)
persistence_gateway = PersistenceGateway(kline_store)
