import asyncio
import signal
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, Query
from klinestream.core.logger import logger
from klinestream.config import settings
from klinestream.connectors.coinbase_ws import coinbase_ws_client, ConnectionState
from klinestream.core.persistence import kline_store, persistence_gateway

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"{settings.APP_NAME} Initialized",
                extra={"exchange": settings.EXCHANGE, "symbol": settings.SYMBOL, "interval": settings.INTERVAL})

    await kline_store.init_db()
    await persistence_gateway.start()
    await coinbase_ws_client.connect()

    yield

    # Shutdown
    logger.info("Shutdown Initiated...")
    # The open window is not flushed; only rolled-over klines are persisted
    await coinbase_ws_client.disconnect()
    await persistence_gateway.stop()
    logger.info(f"{settings.APP_NAME} Shutdown Complete")

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

@app.get("/")
async def root():
    return {
        "status": "running",
        "service": settings.APP_NAME,
        "timestamp": datetime.now().isoformat(),
    }

def health_status(state: ConnectionState) -> str:
    if state == ConnectionState.SUBSCRIBED:
        return "healthy"
    if state == ConnectionState.EXHAUSTED:
        return "exhausted"
    return "degraded"

@app.get("/health")
async def health():
    client = coinbase_ws_client
    return {
        "status": health_status(client.state),
        "connection": client.state.value,
        "reconnect_attempts": client.reconnect_attempts,
        "last_tick_time": client.last_tick_time,
        "history_size": len(client.aggregator.history),
        "persisted": {
            "saved": persistence_gateway.saved,
            "duplicates": persistence_gateway.duplicates,
            "failures": persistence_gateway.failures,
        },
    }

@app.get("/klines")
async def recent_klines():
    """In-memory history, newest first"""
    return [c.model_dump() for c in coinbase_ws_client.get_recent_candles()]

@app.get("/klines/stored")
async def stored_klines(limit: int = Query(default=50, gt=0, le=1000)):
    candles = await kline_store.get_klines(settings.EXCHANGE, settings.SYMBOL, settings.INTERVAL, limit)
    return [c.model_dump() for c in candles]

async def main():
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    # Keep the app running
    stop_event = asyncio.Event()

    def handle_signal():
        stop_event.set()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, handle_signal)
    loop.add_signal_handler(signal.SIGTERM, handle_signal)

    # Run application lifecycle
    async with lifespan(app):
        logger.info(f"{settings.APP_NAME} Core Loop Running")
        # Stop when asked to, or when the stream gives up reconnecting
        stream_done = asyncio.create_task(coinbase_ws_client.wait_closed())
        stop_wait = asyncio.create_task(stop_event.wait())
        await asyncio.wait([stream_done, stop_wait], return_when=asyncio.FIRST_COMPLETED)
        stop_wait.cancel()
        stream_done.cancel()
        exhausted = not stop_event.is_set()
        if exhausted:
            logger.critical("Stream stopped permanently. Exiting for external restart.")
        else:
            logger.info("Shutdown signal received")

    if exhausted:
        # Non-zero so a restart-on-failure supervisor brings us back
        raise SystemExit(1)

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
