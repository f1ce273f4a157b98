#!/usr/bin/env python
"""
Exchange gateway tests: request signing, rate limiting, response parsing and stream messages
"""
import sys
sys.path.insert(0, '.')

import asyncio
import base64
import hashlib
import hmac
import json

import pytest

from ingest.bithumb_rest import GatewayAPIError, build_jwt
from ingest.rate_limiter import RateLimiter
from ingest.websocket_client import WebSocketClient
from strategy.transports.bithumb import BithumbGateway, OrderInfo


def _b64decode(part):
    return base64.urlsafe_b64decode(part + '=' * (-len(part) % 4))


def test_jwt_structure_and_signature():
    print("Testing JWT signing...")
    token = build_jwt('access', 'secret', 'market=KRW-BTC&side=bid')
    header_b64, payload_b64, signature_b64 = token.split('.')

    header = json.loads(_b64decode(header_b64))
    payload = json.loads(_b64decode(payload_b64))
    assert header == {'alg': 'HS256', 'typ': 'JWT'}
    assert payload['access_key'] == 'access'
    assert payload['query_hash'] == hashlib.sha512(b'market=KRW-BTC&side=bid').hexdigest()
    assert payload['query_hash_alg'] == 'SHA512'
    assert isinstance(payload['timestamp'], int)

    expected = hmac.new(b'secret', f"{header_b64}.{payload_b64}".encode('ascii'), hashlib.sha256).digest()
    assert _b64decode(signature_b64) == expected
    print("✓ JWT verified")


def test_jwt_without_query_has_no_hash_and_fresh_nonce():
    first = json.loads(_b64decode(build_jwt('a', 's').split('.')[1]))
    second = json.loads(_b64decode(build_jwt('a', 's').split('.')[1]))
    assert 'query_hash' not in first
    assert first['nonce'] != second['nonce']


def test_rate_limiter_refills_continuously():
    now = [0.0]
    limiter = RateLimiter(max_per_sec=10, clock=lambda: now[0])

    async def drain():
        for _ in range(10):
            await limiter.acquire()

    asyncio.run(drain())
    assert limiter.available == pytest.approx(0.0)
    now[0] = 0.5
    assert limiter.available == pytest.approx(5.0)
    now[0] = 10.0
    assert limiter.available == pytest.approx(10.0)


def test_rate_limiter_waits_when_empty():
    limiter = RateLimiter(max_per_sec=1000)

    async def burst():
        for _ in range(1005):
            await limiter.acquire()

    asyncio.run(burst())
    assert limiter.available < 1000


def test_rate_limiter_rejects_bad_rate():
    with pytest.raises(ValueError):
        RateLimiter(max_per_sec=0)


class FakeRest:
    """Serves canned responses by path and records requests."""

    has_credentials = True

    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    async def get(self, path, params=None, signed=False):
        self.requests.append(('GET', path, params, signed))
        value = self.responses[path]
        if isinstance(value, Exception):
            raise value
        return value

    async def post(self, path, body=None, signed=True):
        self.requests.append(('POST', path, body, signed))
        value = self.responses[path]
        if isinstance(value, Exception):
            raise value
        return value

    async def delete(self, path, params=None, signed=True):
        self.requests.append(('DELETE', path, params, signed))
        return self.responses.get(path, {})

    async def close(self):
        return None


def test_gateway_parses_balance():
    rest = FakeRest({'/v1/accounts': [
        {'currency': 'KRW', 'balance': '1000000.5', 'locked': '500'},
        {'currency': 'BTC', 'balance': '0.015', 'locked': '0.005'},
        {'currency': 'ETH', 'balance': '3', 'locked': '0'},
    ]})
    balance = asyncio.run(BithumbGateway(rest=rest).get_balance())
    assert balance.available_krw == 1000000.5
    assert balance.total_krw == 1000500.5
    assert balance.available_btc == 0.015
    assert balance.total_btc == pytest.approx(0.02)
    assert rest.requests[0][3] is True


def test_gateway_market_orders():
    print("Testing order placement...")
    rest = FakeRest({'/v1/orders': {'uuid': 'abc-123'}})
    gateway = BithumbGateway(rest=rest, market='KRW-BTC')

    result = asyncio.run(gateway.market_buy(500_000.9))
    assert result.success and result.order_id == 'abc-123'
    assert rest.requests[-1][2] == {'market': 'KRW-BTC', 'side': 'bid', 'ord_type': 'price', 'price': '500000'}

    asyncio.run(gateway.market_sell(0.0123456789))
    assert rest.requests[-1][2]['volume'] == '0.01234568'
    assert rest.requests[-1][2]['ord_type'] == 'market'


def test_gateway_order_rejection_is_a_result():
    rest = FakeRest({'/v1/orders': {'error': {'name': 'under_min_total', 'message': 'minimum 5000 KRW'}}})
    result = asyncio.run(BithumbGateway(rest=rest).market_buy(100))
    assert not result.success
    assert result.message == 'minimum 5000 KRW'

    rest = FakeRest({'/v1/orders': GatewayAPIError(503, None, 'unavailable', '')})
    result = asyncio.run(BithumbGateway(rest=rest).market_sell(0.1))
    assert not result.success


def test_gateway_parses_order_and_average_price():
    rest = FakeRest({'/v1/order': {
        'uuid': 'o-1', 'side': 'bid', 'ord_type': 'price', 'price': '1000000',
        'state': 'done', 'executed_volume': '0.02', 'paid_fee': '2500',
        'trades': [{'price': '49000000', 'volume': '0.01'}, {'price': '51000000', 'volume': '0.01'}],
    }})
    order = asyncio.run(BithumbGateway(rest=rest).get_order('o-1'))
    assert order.state == 'done'
    assert order.executed_volume == 0.02
    assert order.paid_fee == 2500
    assert order.average_price() == pytest.approx(50_000_000)


def test_average_price_fallbacks():
    market_buy = OrderInfo('o', 'bid', 'price', 1_000_000, 0.0, 'done', 0.02)
    assert market_buy.average_price() == pytest.approx(50_000_000)
    unfilled = OrderInfo('o', 'ask', 'market', 0.0, 0.01, 'cancel', 0.0)
    assert unfilled.average_price() is None


def test_gateway_parses_candles_oldest_first():
    rest = FakeRest({'/v1/candles/minutes/5': [
        {'candle_date_time_utc': '2024-01-01T00:05:00', 'opening_price': 101, 'high_price': 103,
         'low_price': 100, 'trade_price': 102, 'candle_acc_trade_volume': 2.0},
        {'candle_date_time_utc': '2024-01-01T00:00:00', 'opening_price': 100, 'high_price': 102,
         'low_price': 99, 'trade_price': 101, 'candle_acc_trade_volume': 1.0},
    ]})
    candles = asyncio.run(BithumbGateway(rest=rest).get_candles(2))
    assert [c.timestamp for c in candles] == [1_704_067_200_000, 1_704_067_500_000]
    assert candles[1].close == 102


def test_gateway_order_chance():
    rest = FakeRest({'/v1/orders/chance': {
        'market': {'state': 'active', 'bid': {'min_total': '5000'}, 'max_total': '1000000000'},
        'bid_account': {'balance': '750000'},
    }})
    chance = asyncio.run(BithumbGateway(rest=rest).get_order_chance())
    assert chance.is_active
    assert chance.min_total == 5000
    assert chance.max_total == 1_000_000_000
    assert chance.available_krw == 750_000

    failing = FakeRest({'/v1/orders/chance': GatewayAPIError(500, None, 'boom', '')})
    assert asyncio.run(BithumbGateway(rest=failing).get_order_chance()) is None


def test_gateway_virtual_asset_warning():
    rest = FakeRest({'/v1/market/virtual_asset_warning': [{'market': 'KRW-ETH'}, {'market': 'KRW-BTC'}]})
    assert asyncio.run(BithumbGateway(rest=rest, market='KRW-BTC').get_virtual_asset_warning()) is True
    assert asyncio.run(BithumbGateway(rest=rest, market='KRW-XRP').get_virtual_asset_warning()) is False


def test_ws_parse_trade():
    print("Testing stream parsing...")
    tick = WebSocketClient.parse_trade({
        'type': 'trade', 'code': 'KRW-BTC', 'trade_price': 50_000_000, 'trade_volume': 0.01,
        'trade_timestamp': 1_704_067_200_123, 'ask_bid': 'BID',
    })
    assert tick.price == 50_000_000
    assert tick.timestamp == 1_704_067_200_123
    assert tick.side == 'BUY'

    assert WebSocketClient.parse_trade({'trade_price': 0, 'trade_volume': 1}) is None
    assert WebSocketClient.parse_trade({'trade_price': 1, 'trade_volume': 0}) is None


def test_ws_parse_orderbook_sorts_levels():
    book = WebSocketClient.parse_orderbook({'timestamp': 5, 'orderbook_units': [
        {'ask_price': 101, 'ask_size': 1, 'bid_price': 99, 'bid_size': 1},
        {'ask_price': 100, 'ask_size': 2, 'bid_price': 99.5, 'bid_size': 2},
    ]})
    assert book.best_bid == 99.5
    assert book.best_ask == 100
    assert WebSocketClient.parse_orderbook({'orderbook_units': []}) is None


def test_ws_reconnect_backoff_is_capped():
    client = WebSocketClient(url='wss://example.invalid', market='KRW-BTC')
    delays = [client.reconnect_delay(n) for n in range(8)]
    assert delays[:3] == [1.0, 2.0, 4.0]
    assert max(delays) == 60.0


def test_ws_dispatches_messages_to_handlers():
    client = WebSocketClient(url='wss://example.invalid', market='KRW-BTC')
    ticks = []
    books = []

    async def on_tick(tick):
        ticks.append(tick)

    async def on_book(book):
        books.append(book)

    client.register_handler('tick', on_tick)
    client.register_handler('orderbook', on_book)

    async def feed():
        await client.handle_message(json.dumps({'status': 'UP'}))
        await client.handle_message('not json')
        await client.handle_message(json.dumps({'type': 'trade', 'trade_price': 1, 'trade_volume': 1}))
        await client.handle_message(json.dumps({'type': 'orderbook', 'orderbook_units': [
            {'ask_price': 2, 'ask_size': 1, 'bid_price': 1, 'bid_size': 1},
        ]}))

    asyncio.run(feed())
    assert len(ticks) == 1 and ticks[0].symbol == 'KRW-BTC'
    assert len(books) == 1


if __name__ == "__main__":
    test_jwt_structure_and_signature()
    test_gateway_market_orders()
    test_ws_parse_trade()
    print("\nAll gateway tests passed")
