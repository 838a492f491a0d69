import logging
from typing import Any, Dict, Optional

import httpx


class HttpFeeCollector:
    """Platform fee collection, sized from confirmed proceeds. Callers fire and forget."""

    def __init__(self, cfg, logger: logging.Logger, client: Optional[httpx.AsyncClient] = None):
        self.url = cfg.fees.url
        self.logger = logger
        self.client = client or httpx.AsyncClient(timeout=cfg.fees.timeout_sec,
                                                  headers={"Accept": "application/json"})

    async def collect(self, trade_amount_usd: float, side: str, chain: str,
                      identities: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"tradeAmountUsd": trade_amount_usd, "tradeType": side, "chain": chain, **identities}
        r = await self.client.post(self.url, json=payload)
        r.raise_for_status()
        return r.json() if r.content else {}

    async def close(self):
        await self.client.aclose()
