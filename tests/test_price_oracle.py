import asyncio
import logging

import httpx

from autoexit.core.oracle import PriceOracle
from autoexit.core.position import Classification
from autoexit.data.venues import (
    AGGREGATED, POOL, AlphaQuoteVenue, JupiterPoolVenue, PriceVenue, normalize_symbol, select_best_pair,
)

log = logging.getLogger("autoexit.tests")
CONTRACT = "0xabc0000000000000000000000000000000000001"


class StubVenue(PriceVenue):
    def __init__(self, name, kind, price=None, error=None, delay=0.0, needs_contract=False, chains=None):
        self.name = name
        self.kind = kind
        self.price = price
        self.error = error
        self.delay = delay
        self.needs_contract = needs_contract
        self.chains = chains
        self.calls = 0

    def supports(self, chain):
        return self.chains is None or chain in self.chains

    async def quote(self, symbol, chain, contract_address=None):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.price


def oracle(cfg, *venues):
    return PriceOracle(cfg, log, list(venues))


async def test_alpha_prefers_aggregated(cfg):
    agg = StubVenue("agg", AGGREGATED, price=1.5)
    pool = StubVenue("pool", POOL, price=1.4, needs_contract=True)
    price = await oracle(cfg, pool, agg).get_price("TOK", "BSC", Classification.ALPHA, CONTRACT)
    assert price == 1.5
    assert pool.calls == 0


async def test_alpha_falls_back_to_pool(cfg):
    agg = StubVenue("agg", AGGREGATED, price=None)
    pool = StubVenue("pool", POOL, price=1.4, needs_contract=True)
    assert await oracle(cfg, agg, pool).get_price("TOK", "BSC", Classification.ALPHA, CONTRACT) == 1.4


async def test_pool_tokens_never_use_aggregated_quotes(cfg):
    agg = StubVenue("agg", AGGREGATED, price=9.9)
    pool = StubVenue("pool", POOL, price=None, needs_contract=True)
    assert await oracle(cfg, agg, pool).get_price("TOK", "BSC", Classification.POOL, CONTRACT) is None
    assert agg.calls == 0


async def test_pool_token_without_contract_is_unavailable(cfg):
    agg = StubVenue("agg", AGGREGATED, price=9.9)
    pool = StubVenue("pool", POOL, price=1.0, needs_contract=True)
    assert await oracle(cfg, agg, pool).get_price("TOK", "BSC", Classification.POOL, None) is None
    assert agg.calls == 0 and pool.calls == 0


async def test_pool_only_chain(cfg):
    agg = StubVenue("agg", AGGREGATED, price=9.9)
    pool = StubVenue("jup", POOL, price=0.02, needs_contract=True, chains={"Solana"})
    assert await oracle(cfg, agg, pool).get_price("BONK", "Solana", Classification.ALPHA, "mint") == 0.02
    assert agg.calls == 0


async def test_venue_errors_and_timeouts_move_on(cfg):
    cfg.oracle.venue_timeout_sec = 0.05
    slow = StubVenue("slow", AGGREGATED, price=1.0, delay=1.0)
    broken = StubVenue("broken", AGGREGATED, error=RuntimeError("500"))
    good = StubVenue("pool", POOL, price=1.2, needs_contract=True)
    price = await oracle(cfg, slow, broken, good).get_price("TOK", "BSC", Classification.UNKNOWN, CONTRACT)
    assert price == 1.2
    assert slow.calls == broken.calls == 1


async def test_non_positive_prices_count_as_unavailable(cfg):
    zero = StubVenue("agg", AGGREGATED, price=0.0)
    assert await oracle(cfg, zero).get_price("TOK", "BSC", Classification.ALPHA) is None


def test_normalize_symbol():
    assert normalize_symbol("tok/usdt") == "TOK"
    assert normalize_symbol("TOKUSDT") == "TOK"
    assert normalize_symbol("USDT") == "USDT"
    assert normalize_symbol(" cake ") == "CAKE"


def test_select_best_pair_prefers_chain_then_liquidity():
    pairs = [
        {"chainId": "ethereum", "priceUsd": "1.0", "liquidity": {"usd": 9_000_000},
         "baseToken": {"symbol": "TOK", "address": CONTRACT}, "quoteToken": {"symbol": "WETH"}},
        {"chainId": "bsc", "priceUsd": "1.1", "liquidity": {"usd": 50_000},
         "baseToken": {"symbol": "TOK", "address": CONTRACT}, "quoteToken": {"symbol": "WBNB"}},
        {"chainId": "bsc", "priceUsd": "1.2", "liquidity": {"usd": 80_000},
         "baseToken": {"symbol": "TOK", "address": CONTRACT}, "quoteToken": {"symbol": "USDT"}},
        {"chainId": "bsc", "priceUsd": "5.0", "liquidity": {"usd": 0},
         "baseToken": {"symbol": "TOK", "address": CONTRACT}, "quoteToken": {"symbol": "USDC"}},
    ]
    assert select_best_pair(pairs, "TOK", "BSC", CONTRACT)["priceUsd"] == "1.2"
    assert select_best_pair(pairs, "TOK", None, CONTRACT)["priceUsd"] == "1.0"
    assert select_best_pair([], "TOK", "BSC", CONTRACT) is None


async def test_alpha_venue_kline_then_ticker(cfg):
    seen = []

    def handler(request: httpx.Request):
        seen.append(request.url.path)
        if request.url.path.endswith("/klines"):
            if request.url.params["symbol"] == "TOKUSDT":
                return httpx.Response(200, json={"data": [[0, "1.0", "1.3", "0.9", "1.25", "100"]]})
            return httpx.Response(200, json={"data": []})
        return httpx.Response(200, json={"symbol": "CAKEUSDT", "price": "2.5"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    venue = AlphaQuoteVenue(cfg, log, client=client)
    assert await venue.quote("TOK/USDT", "BSC") == 1.25
    assert await venue.quote("CAKE", "BSC") == 2.5
    assert seen[-1] == "/api/v3/ticker/price"
    await venue.close()


async def test_jupiter_venue_reads_price_by_mint(cfg):
    mint = "So11111111111111111111111111111111111111112"

    def handler(request: httpx.Request):
        assert request.url.params["ids"] == mint
        return httpx.Response(200, json={"data": {mint: {"id": mint, "price": "151.2"}}})

    venue = JupiterPoolVenue(cfg, log, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    assert venue.supports("Solana") and not venue.supports("BSC")
    assert await venue.quote("SOL", "Solana", mint) == 151.2
    assert await venue.quote("SOL", "Solana", None) is None
    await venue.close()


async def test_native_price_uses_aggregated_quotes(cfg):
    agg = StubVenue("agg", AGGREGATED, price=610.0)
    pool = StubVenue("pool", POOL, price=1.0)
    o = oracle(cfg, pool, agg)
    assert await o.native_price("bsc") == 610.0
    assert pool.calls == 0
    assert await o.native_price("Fantom") is None
