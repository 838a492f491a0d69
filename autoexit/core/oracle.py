import asyncio
import logging
from typing import List, Optional, Sequence

from autoexit.core.position import Classification
from autoexit.data.venues import AGGREGATED, POOL, PriceVenue
from autoexit.utils.logging_utils import jlog


class PriceOracle:
    """
    Resolves a USD price from prioritized venues. Never raises: any venue
    error or timeout just moves on to the next venue, and "nothing priced"
    comes back as None.

    Venue order by classification:
      alpha   -> aggregated, then pool
      pool    -> pool only (tickers collide across venues)
      unknown -> aggregated, then pool
    Chains listed in ``oracle.pool_only_chains`` only ever use pool venues.
    """

    def __init__(self, cfg, logger: logging.Logger, venues: Sequence[PriceVenue]):
        self.cfg = cfg
        self.logger = logger
        self.timeout = cfg.oracle.venue_timeout_sec
        self.pool_only_chains = {c.lower() for c in cfg.oracle.pool_only_chains}
        self.native_symbols = {k.lower(): v for k, v in cfg.oracle.native_symbols.items()}
        self.aggregated = [v for v in venues if v.kind == AGGREGATED]
        self.pool = [v for v in venues if v.kind == POOL]

    def venue_order(self, chain: str, classification: Classification,
                    contract_address: Optional[str] = None) -> List[PriceVenue]:
        pool = [v for v in self.pool
                if v.supports(chain) and (contract_address or not v.needs_contract)]
        aggregated = [v for v in self.aggregated if v.supports(chain)]
        if (chain or "").lower() in self.pool_only_chains:
            return pool
        if classification is Classification.POOL:
            return pool
        return aggregated + pool

    async def get_price(self, symbol: str, chain: str, classification: Classification,
                        contract_address: Optional[str] = None) -> Optional[float]:
        for venue in self.venue_order(chain, classification, contract_address):
            price = await self._ask(venue, symbol, chain, contract_address)
            if price is not None:
                jlog(self.logger, "PRICE", logging.DEBUG, symbol=symbol, chain=chain,
                     venue=venue.name, price=price)
                return price
        jlog(self.logger, "PRICE_UNAVAILABLE", symbol=symbol, chain=chain,
             classification=classification.value)
        return None

    async def native_price(self, chain: str) -> Optional[float]:
        """USD price of the chain's gas coin from the aggregated venues."""
        symbol = self.native_symbols.get((chain or "").lower())
        if not symbol:
            return None
        for venue in self.aggregated:
            price = await self._ask(venue, symbol, chain, None)
            if price is not None:
                return price
        return None

    async def _ask(self, venue: PriceVenue, symbol: str, chain: str,
                   contract_address: Optional[str]) -> Optional[float]:
        try:
            price = await asyncio.wait_for(venue.quote(symbol, chain, contract_address), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"{venue.name} timed out pricing {symbol}")
            return None
        except Exception as e:
            self.logger.warning(f"{venue.name} failed pricing {symbol}: {e}")
            return None
        if price is None or price <= 0:
            return None
        return float(price)

    async def close(self):
        for venue in self.aggregated + self.pool:
            await venue.close()
