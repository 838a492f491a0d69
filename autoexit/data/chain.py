import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

# failure reasons
REVERTED = "reverted"
TIMEOUT = "timeout"
RPC_ERROR = "rpc_error"
NO_RPC = "no_rpc"

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
# decimals()
DECIMALS_SELECTOR = "0x313ce567"

LAMPORTS_PER_SOL = 1_000_000_000


@dataclass
class ReconcileHints:
    """What the chain client needs to read the proceeds of a swap back out of a receipt."""
    wallet_address: str
    token_out_address: Optional[str] = None
    amount_out_min: Optional[float] = None


@dataclass
class ChainStatus:
    success: bool
    actual_amount_out: Optional[float] = None
    failure_reason: Optional[str] = None
    gas_fee_usd: Optional[float] = None
    gas_fee_native: Optional[float] = None

    @property
    def reverted(self) -> bool:
        return not self.success and self.failure_reason == REVERTED


def _hex_int(value) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16) if str(value).startswith("0x") else int(value)


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def transfer_amount_raw(logs: List[Dict[str, Any]], token_address: str, recipient: str) -> Optional[int]:
    """Sum of ERC-20 Transfer amounts of ``token_address`` into ``recipient``."""
    token = token_address.lower()
    to = recipient.lower()
    total = None
    for log in logs or []:
        topics = log.get("topics") or []
        if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
            continue
        if (log.get("address") or "").lower() != token or _topic_address(topics[2]) != to:
            continue
        total = (total or 0) + _hex_int(log.get("data") or "0x0")
    return total


def token_balance_delta(meta: Dict[str, Any], mint: str, owner: str) -> Optional[float]:
    """Post minus pre SPL token balance of ``owner`` for ``mint`` from getTransaction meta."""

    def amount(entries) -> Optional[float]:
        for e in entries or []:
            if e.get("mint") == mint and e.get("owner") == owner:
                ui = e.get("uiTokenAmount") or {}
                value = ui.get("uiAmountString", ui.get("uiAmount"))
                return float(value) if value not in (None, "") else 0.0
        return None

    post = amount(meta.get("postTokenBalances"))
    if post is None:
        return None
    return post - (amount(meta.get("preTokenBalances")) or 0.0)


class JsonRpcChainStatus:
    """
    Transaction status over plain JSON-RPC.

    EVM chains: poll eth_getTransactionReceipt; the output amount is the sum of
    Transfer logs of the exit token into the wallet.
    Solana: poll getSignatureStatuses; the output amount is the wallet's token
    balance delta in the confirmed transaction.

    ``check`` polls until the transaction lands or ``confirm_timeout_sec`` runs
    out and never raises.
    """

    def __init__(self, cfg, logger: logging.Logger, client: Optional[httpx.AsyncClient] = None):
        self.cfg = cfg.reconcile
        self.logger = logger
        self.client = client or httpx.AsyncClient(timeout=15.0, headers={"Content-Type": "application/json"})
        self._decimals: Dict[str, int] = {}
        self._ids = 0

    async def _rpc(self, url: str, method: str, params: list):
        self._ids += 1
        r = await self.client.post(url, json={"jsonrpc": "2.0", "id": self._ids, "method": method, "params": params})
        r.raise_for_status()
        body = r.json()
        if body.get("error"):
            raise ValueError(f"{method}: {body['error']}")
        return body.get("result")

    def rpc_url(self, chain: str) -> Optional[str]:
        urls = {k.lower(): v for k, v in self.cfg.rpc_urls.items()}
        return urls.get((chain or "").lower())

    async def check(self, tx_hash: str, chain: str, hints: ReconcileHints) -> ChainStatus:
        url = self.rpc_url(chain)
        if not url:
            self.logger.error(f"No rpc url configured for chain {chain!r}; cannot check {tx_hash}")
            return ChainStatus(False, failure_reason=NO_RPC)
        solana = chain.lower() == "solana"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.cfg.confirm_timeout_sec
        reason = TIMEOUT
        while True:
            try:
                if solana:
                    status = await self._solana_once(url, tx_hash, hints)
                else:
                    status = await self._evm_once(url, tx_hash, hints)
                if status is not None:
                    return status
                reason = TIMEOUT
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
                self.logger.debug(f"{chain} rpc error for {tx_hash}: {e}")
                reason = RPC_ERROR
            if loop.time() >= deadline:
                return ChainStatus(False, failure_reason=reason)
            await asyncio.sleep(self.cfg.confirm_poll_sec)

    # ---------- EVM ----------
    async def _evm_once(self, url: str, tx_hash: str, hints: ReconcileHints) -> Optional[ChainStatus]:
        receipt = await self._rpc(url, "eth_getTransactionReceipt", [tx_hash])
        if not receipt:
            return None
        gas_native = _hex_int(receipt.get("gasUsed")) * _hex_int(receipt.get("effectiveGasPrice")) / 1e18
        if _hex_int(receipt.get("status")) != 1:
            return ChainStatus(False, failure_reason=REVERTED, gas_fee_native=gas_native)
        amount = None
        if hints.token_out_address:
            raw = transfer_amount_raw(receipt.get("logs") or [], hints.token_out_address, hints.wallet_address)
            if raw is not None:
                decimals = await self._erc20_decimals(url, hints.token_out_address)
                amount = raw / (10 ** decimals)
        return ChainStatus(True, actual_amount_out=amount, gas_fee_native=gas_native)

    async def _erc20_decimals(self, url: str, token: str) -> int:
        key = f"{url}|{token.lower()}"
        if key not in self._decimals:
            result = await self._rpc(url, "eth_call", [{"to": token, "data": DECIMALS_SELECTOR}, "latest"])
            self._decimals[key] = _hex_int(result) if result and result != "0x" else 18
        return self._decimals[key]

    # ---------- Solana ----------
    async def _solana_once(self, url: str, signature: str, hints: ReconcileHints) -> Optional[ChainStatus]:
        result = await self._rpc(url, "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        value = ((result or {}).get("value") or [None])[0]
        if not value:
            return None
        if value.get("err"):
            return ChainStatus(False, failure_reason=REVERTED)
        if value.get("confirmationStatus") not in ("confirmed", "finalized"):
            return None
        tx = await self._rpc(url, "getTransaction", [signature, {
            "encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": "confirmed",
        }])
        meta = (tx or {}).get("meta") or {}
        fee = (meta.get("fee") or 0) / LAMPORTS_PER_SOL
        amount = None
        if hints.token_out_address:
            amount = token_balance_delta(meta, hints.token_out_address, hints.wallet_address)
        return ChainStatus(True, actual_amount_out=amount, gas_fee_native=fee)

    async def close(self):
        await self.client.aclose()
