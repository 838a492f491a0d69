import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx


@dataclass
class SwapRequest:
    chain: str
    token_in: str
    token_in_address: Optional[str]
    token_out: str
    amount_in: float
    slippage_percent: float
    user_address: str
    is_alpha_token: Optional[bool] = None
    reference_price: Optional[float] = None   # price the decision was taken at

    def to_payload(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "tokenIn": self.token_in,
            "tokenInAddress": self.token_in_address,
            "tokenOut": self.token_out,
            "amountIn": repr(float(self.amount_in)),
            "slippage": self.slippage_percent,
            "userAddress": self.user_address,
            "isAlphaToken": self.is_alpha_token,
        }


@dataclass
class SwapBuild:
    unsigned_swap_tx: Dict[str, Any]
    needs_approval: bool = False
    unsigned_approval_tx: Optional[Dict[str, Any]] = None
    amount_out_min: Optional[float] = None
    token_out_address: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "SwapBuild":
        swap_tx = data.get("unsignedSwapTx") or data.get("swapTx")
        if swap_tx is None:
            # router-style payload: {routerAddress, txData, value, gasLimit, gasPrice} or a serialized transaction
            if data.get("transaction"):
                swap_tx = {"transaction": data["transaction"]}
            else:
                swap_tx = {
                    "to": data.get("routerAddress"),
                    "data": data.get("txData"),
                    "value": data.get("value") or "0x0",
                    "gas": data.get("gasLimit"),
                    "gasPrice": data.get("gasPrice"),
                }
        if not swap_tx or not any(swap_tx.values()):
            raise ValueError("swap builder returned no transaction")
        amount_out_min = data.get("amountOutMin")
        return cls(
            unsigned_swap_tx=swap_tx,
            needs_approval=bool(data.get("needsApproval")),
            unsigned_approval_tx=data.get("unsignedApprovalTx") or data.get("approvalTx"),
            amount_out_min=float(amount_out_min) if amount_out_min not in (None, "") else None,
            token_out_address=data.get("tokenOutAddress") or data.get("tokenAddress"),
            raw=data,
        )


class HttpSwapBuilder:
    """Venue adapter: asks the routing service for unsigned swap (and approval) transactions."""

    def __init__(self, cfg, logger: logging.Logger, client: Optional[httpx.AsyncClient] = None):
        self.url = cfg.execution.swap_builder_url
        self.logger = logger
        self.client = client or httpx.AsyncClient(timeout=cfg.execution.builder_timeout_sec,
                                                  headers={"Accept": "application/json"})

    async def build(self, req: SwapRequest) -> SwapBuild:
        r = await self.client.post(self.url, json=req.to_payload())
        if r.status_code != 200:
            raise RuntimeError(f"swap build rejected ({r.status_code}): {r.text[:300]}")
        data = r.json()
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        return SwapBuild.from_payload(data)

    async def close(self):
        await self.client.aclose()
