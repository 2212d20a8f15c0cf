import pytest
import json
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch
from klinestream.connectors.coinbase_ws import CoinbaseTickerWS, ConnectionState
from klinestream.core.aggregator import CandleAggregator
from klinestream.core.history import HistoryBuffer

NOON = 1735732800000 # 2025-01-01T12:00:00Z

def ticker(time, price, size="0.01"):
    return json.dumps({
        "type": "ticker",
        "product_id": "BTC-USD",
        "time": time,
        "price": price,
        "last_size": size,
    })

class FakeWS:
    def __init__(self, messages=()):
        self.messages = list(messages)
        self.sent = []
        self.closed = False

    async def send(self, msg):
        self.sent.append(msg)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for m in self.messages:
            yield m

class FakeConnect:
    def __init__(self, ws):
        self.ws = ws

    async def __aenter__(self):
        return self.ws

    async def __aexit__(self, *exc):
        return False

def make_client(max_attempts=5, delay=0.0):
    aggregator = CandleAggregator(symbol="BTC-USD", interval="1m", interval_ms=60000,
                                  exchange="COINBASE", history=HistoryBuffer(50))
    return CoinbaseTickerWS(aggregator, symbol="BTC-USD", ws_url="wss://example.invalid",
                            max_reconnect_attempts=max_attempts, reconnect_delay=delay)

@pytest.mark.asyncio
async def test_parsing_folds_ticker():
    client = make_client()

    await client._handle_message(ticker("2025-01-01T12:00:10.250000Z", "50000.5", "0.25"))

    c = client.aggregator.current_candle
    assert c.open_time == NOON
    assert c.open == 50000.5
    assert c.volume == 0.25
    assert client.last_tick_time == NOON + 10250

@pytest.mark.asyncio
async def test_non_ticker_messages_ignored():
    client = make_client()

    await client._handle_message(json.dumps({"type": "subscriptions", "channels": []}))
    await client._handle_message(json.dumps({"type": "heartbeat", "time": "2025-01-01T12:00:00Z"}))

    assert client.aggregator.current_candle is None
    assert client.last_tick_time == 0

@pytest.mark.asyncio
async def test_decode_errors_logged_and_dropped():
    client = make_client()

    with patch("klinestream.connectors.coinbase_ws.logger") as mock_logger:
        await client._handle_message("{not json")
        await client._handle_message(json.dumps([1, 2, 3]))
        await client._handle_message(ticker("yesterday", "100"))
        await client._handle_message(ticker("2025-01-01T12:00:10Z", "abc"))
        await client._handle_message(ticker("2025-01-01T12:00:10Z", "0"))

        assert mock_logger.error.call_count == 5

    assert client.aggregator.current_candle is None
    assert client.last_tick_time == 0

@pytest.mark.asyncio
async def test_unknown_size_counts_as_zero():
    client = make_client()

    await client._handle_message(ticker("2025-01-01T12:00:10Z", "100", ""))
    msg = json.loads(ticker("2025-01-01T12:00:11Z", "101"))
    del msg["last_size"]
    await client._handle_message(json.dumps(msg))

    c = client.aggregator.current_candle
    assert c.volume == 0
    assert c.trade_count == 2

@pytest.mark.asyncio
async def test_duplicate_timestamp_dropped():
    client = make_client()

    await client._handle_message(ticker("2025-01-01T12:00:10Z", "100", "1"))
    before = client.aggregator.current_candle.model_copy()
    await client._handle_message(ticker("2025-01-01T12:00:10Z", "999", "5"))

    assert client.aggregator.current_candle == before

@pytest.mark.asyncio
async def test_reconnect_budget_exhausted():
    client = make_client(max_attempts=5)
    connect = MagicMock(side_effect=OSError("Connection refused"))

    with patch("klinestream.connectors.coinbase_ws.websockets.connect", connect), \
         patch("klinestream.connectors.coinbase_ws.logger") as mock_logger:
        await client.connect()
        await client.wait_closed()

        mock_logger.critical.assert_called_once()

    # Initial attempt plus five retries, then nothing more
    assert connect.call_count == 6
    assert client.reconnect_attempts == 5
    assert client.state == ConnectionState.EXHAUSTED
    assert client.running is False

@pytest.mark.asyncio
async def test_open_resets_attempts_and_subscribes():
    client = make_client(max_attempts=2)
    ws = FakeWS([
        json.dumps({"type": "subscriptions"}),
        ticker("2025-01-01T12:00:10Z", "100", "1"),
        ticker("2025-01-01T12:01:10Z", "101", "1"),
    ])
    connect = MagicMock(side_effect=[OSError("refused"), FakeConnect(ws), OSError("refused"), OSError("refused")])

    with patch("klinestream.connectors.coinbase_ws.websockets.connect", connect):
        await client.connect()
        await client.wait_closed()

    assert json.loads(ws.sent[0]) == {"type": "subscribe", "product_ids": ["BTC-USD"], "channels": ["ticker"]}
    assert len(ws.sent) == 1
    # fail, open (reset), fail, fail -> exhausted
    assert connect.call_count == 4
    assert client.state == ConnectionState.EXHAUSTED
    assert [c.open_time for c in client.get_recent_candles()] == [NOON]

@pytest.mark.asyncio
async def test_watermark_survives_reconnect():
    client = make_client(max_attempts=1)
    first = FakeWS([
        ticker("2025-01-01T12:00:10Z", "100", "1"),
        ticker("2025-01-01T12:00:20Z", "102", "1"),
    ])
    # Replays the last tick after reconnecting
    second = FakeWS([
        ticker("2025-01-01T12:00:20Z", "102", "1"),
        ticker("2025-01-01T12:01:05Z", "103", "1"),
    ])
    connect = MagicMock(side_effect=[FakeConnect(first), FakeConnect(second), OSError("refused")])

    with patch("klinestream.connectors.coinbase_ws.websockets.connect", connect):
        await client.connect()
        await client.wait_closed()

    candles = client.get_recent_candles()
    assert len(candles) == 1
    assert candles[0].trade_count == 2
    assert candles[0].volume == 2
    assert client.last_tick_time == NOON + 65000

@pytest.mark.asyncio
async def test_disconnect_stops_reconnecting():
    client = make_client(max_attempts=5, delay=10.0)
    connect = MagicMock(side_effect=OSError("refused"))

    with patch("klinestream.connectors.coinbase_ws.websockets.connect", connect):
        await client.connect()
        await client.connect() # Already running
        for _ in range(5):
            await asyncio.sleep(0)
        await client.disconnect()
        await client.disconnect() # Idempotent

    assert connect.call_count == 1
    assert client.state == ConnectionState.DISCONNECTED
    assert client.running is False

@pytest.mark.asyncio
async def test_listeners_receive_completed_candles():
    client = make_client()
    sync_listener = MagicMock()
    async_listener = AsyncMock()
    broken = MagicMock(side_effect=RuntimeError("listener bug"))
    client.add_listener(broken)
    client.add_listener(sync_listener)
    client.add_listener(async_listener)

    await client._handle_message(ticker("2025-01-01T12:00:10Z", "100", "1"))
    sync_listener.assert_not_called()

    await client._handle_message(ticker("2025-01-01T12:01:00Z", "101", "1"))

    sync_listener.assert_called_once()
    async_listener.assert_awaited_once()
    assert sync_listener.call_args[0][0].open_time == NOON

@pytest.mark.asyncio
async def test_aggregation_error_does_not_escape():
    client = make_client()
    client.aggregator.fold = AsyncMock(side_effect=RuntimeError("bad state"))

    with patch("klinestream.connectors.coinbase_ws.logger") as mock_logger:
        await client._handle_message(ticker("2025-01-01T12:00:10Z", "100", "1"))
        mock_logger.error.assert_called_once()
