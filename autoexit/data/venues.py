# autoexit/data/venues.py
import logging
from typing import Dict, List, Optional

import aiohttp
import httpx

AGGREGATED = "aggregated"
POOL = "pool"

# chain names as stored on positions -> DexScreener chainId
DEXSCREENER_CHAINS = {"bsc": "bsc", "base": "base", "solana": "solana", "eth": "ethereum", "ethereum": "ethereum"}

_PAIR_SUFFIXES = ("/USDT", "-USDT", "_USDT", "USDT", "/USDC", "-USDC", "USDC")


def normalize_symbol(symbol: str) -> str:
    base = (symbol or "").strip().upper()
    for suffix in _PAIR_SUFFIXES:
        if base.endswith(suffix) and len(base) > len(suffix):
            return base[: -len(suffix)]
    return base


def _positive(value) -> Optional[float]:
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


class PriceVenue:
    """Read-only price source. ``quote`` returns a USD price or None."""

    name = "venue"
    kind = AGGREGATED
    needs_contract = False

    def supports(self, chain: str) -> bool:
        return True

    async def quote(self, symbol: str, chain: str, contract_address: Optional[str] = None) -> Optional[float]:
        raise NotImplementedError

    async def close(self):
        pass


class AlphaQuoteVenue(PriceVenue):
    """
    Aggregated off-chain quotes by ticker symbol.
    Latest 1m kline close from the alpha market, then the spot ticker as a backup.
    """

    name = "alpha"
    kind = AGGREGATED

    def __init__(self, cfg, logger: logging.Logger, client: Optional[httpx.AsyncClient] = None):
        self.cfg = cfg.oracle.alpha
        self.logger = logger
        self.client = client or httpx.AsyncClient(timeout=cfg.oracle.venue_timeout_sec,
                                                  headers={"Accept": "application/json"})

    async def quote(self, symbol: str, chain: str, contract_address: Optional[str] = None) -> Optional[float]:
        base = normalize_symbol(symbol)
        if not base:
            return None
        price = await self._kline_close(base)
        if price is not None:
            return price
        return await self._spot_ticker(base)

    async def _kline_close(self, base: str) -> Optional[float]:
        params = {"symbol": f"{base}{self.cfg.quote_asset}", "interval": "1m", "limit": "1"}
        try:
            r = await self.client.get(self.cfg.klines_url, params=params)
            if r.status_code != 200:
                return None
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.debug(f"alpha kline lookup failed for {base}: {e}")
            return None
        rows = data.get("data") if isinstance(data, dict) else data
        if not rows:
            return None
        last = rows[-1]
        if isinstance(last, (list, tuple)):
            return _positive(last[4]) if len(last) > 4 else None
        if isinstance(last, dict):
            return _positive(last.get("c") or last.get("close") or last.get("closePrice"))
        return None

    async def _spot_ticker(self, base: str) -> Optional[float]:
        url = f"{self.cfg.spot_url}/api/v3/ticker/price"
        try:
            r = await self.client.get(url, params={"symbol": f"{base}{self.cfg.quote_asset}"})
            if r.status_code != 200:
                return None
            return _positive(r.json().get("price"))
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            self.logger.debug(f"spot ticker lookup failed for {base}: {e}")
            return None

    async def close(self):
        await self.client.aclose()


def select_best_pair(pairs: List[Dict], symbol: str, chain: Optional[str] = None,
                     contract_address: Optional[str] = None) -> Optional[Dict]:
    """
    Pick the pool that prices this token: matching symbol or contract, positive
    price and liquidity; prefer the position's chain, then the deepest pool.
    """
    sym = normalize_symbol(symbol).lower()
    contract = (contract_address or "").lower()
    chain_id = DEXSCREENER_CHAINS.get((chain or "").lower())

    def liquidity(p: Dict) -> float:
        return float(((p.get("liquidity") or {}).get("usd")) or 0.0)

    def base_address(p: Dict) -> str:
        return ((p.get("baseToken") or {}).get("address") or "").lower()

    valid = []
    for p in pairs:
        base_sym = ((p.get("baseToken") or {}).get("symbol") or "").lower()
        quote_sym = ((p.get("quoteToken") or {}).get("symbol") or "").lower()
        matches = (contract and base_address(p) == contract) or sym in (base_sym, quote_sym)
        if matches and _positive(p.get("priceUsd")) and liquidity(p) > 0:
            valid.append(p)

    if not valid:
        # loose match: same contract, liquidity unknown
        loose = [p for p in pairs if contract and base_address(p) == contract and _positive(p.get("priceUsd"))]
        return loose[0] if loose else None

    if chain_id:
        same_chain = [p for p in valid if (p.get("chainId") or "").lower() == chain_id]
        if same_chain:
            valid = same_chain
    return max(valid, key=liquidity)


class DexScreenerPoolVenue(PriceVenue):
    """On-chain pool price by contract address via DexScreener search."""

    name = "dexscreener"
    kind = POOL
    needs_contract = True

    def __init__(self, cfg, logger: logging.Logger):
        self.cfg = cfg.oracle.dexscreener
        self.timeout = cfg.oracle.venue_timeout_sec
        self.logger = logger
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"Accept": "application/json"})
        return self._session

    async def quote(self, symbol: str, chain: str, contract_address: Optional[str] = None) -> Optional[float]:
        if not contract_address:
            return None
        session = await self._get_session()
        try:
            async with session.get(self.cfg.search_url, params={"q": contract_address},
                                   timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                if resp.status != 200:
                    txt = await resp.text()
                    self.logger.debug(f"DexScreener non-200: {resp.status} {txt[:200]}")
                    return None
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as e:
            self.logger.debug(f"DexScreener lookup failed for {symbol}: {e}")
            return None
        pair = select_best_pair((payload or {}).get("pairs") or [], symbol, chain, contract_address)
        return _positive(pair.get("priceUsd")) if pair else None

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


class JupiterPoolVenue(PriceVenue):
    """Solana pool-derived price by mint from the Jupiter price API."""

    name = "jupiter"
    kind = POOL
    needs_contract = True

    def __init__(self, cfg, logger: logging.Logger, client: Optional[httpx.AsyncClient] = None):
        self.cfg = cfg.oracle.jupiter
        self.logger = logger
        headers = {"Accept": "application/json"}
        if self.cfg.api_key:
            headers["x-api-key"] = self.cfg.api_key
        self.client = client or httpx.AsyncClient(timeout=cfg.oracle.venue_timeout_sec, headers=headers)

    def supports(self, chain: str) -> bool:
        return (chain or "").lower() == "solana"

    async def quote(self, symbol: str, chain: str, contract_address: Optional[str] = None) -> Optional[float]:
        if not contract_address:
            return None
        try:
            r = await self.client.get(self.cfg.price_url, params={"ids": contract_address})
            if r.status_code != 200:
                return None
            data = r.json().get("data") or {}
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            self.logger.debug(f"Jupiter price lookup failed for {symbol}: {e}")
            return None
        entry = data.get(contract_address) or {}
        return _positive(entry.get("price"))

    async def close(self):
        await self.client.aclose()
