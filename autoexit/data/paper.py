"""Paper-mode stand-ins for the swap builder, signer and chain.

Sells fill at the reference price the exit was decided at; nothing leaves
the process. The three pieces share a ledger so the chain can report the
proceeds of a transaction the signer "sent".
"""
import hashlib
import itertools
import logging
from typing import Any, Dict, Optional

from autoexit.data.chain import REVERTED, ChainStatus, ReconcileHints
from autoexit.data.swap import SwapBuild, SwapRequest


class PaperLedger:
    def __init__(self):
        self.fills: Dict[str, float] = {}
        self.reverts: set = set()
        self._seq = itertools.count(1)

    def next_hash(self, seed: str) -> str:
        return "0x" + hashlib.sha256(f"{seed}:{next(self._seq)}".encode()).hexdigest()


class PaperSwapBuilder:
    def __init__(self, ledger: PaperLedger, logger: Optional[logging.Logger] = None):
        self.ledger = ledger
        self.logger = logger or logging.getLogger("autoexit")

    async def build(self, req: SwapRequest) -> SwapBuild:
        price = req.reference_price or 0.0
        expected = price * req.amount_in
        return SwapBuild(
            unsigned_swap_tx={"paper": True, "tokenIn": req.token_in, "amountIn": req.amount_in,
                              "expectedOut": expected},
            needs_approval=False,
            amount_out_min=expected * (1.0 - req.slippage_percent / 100.0),
            token_out_address=f"paper:{req.token_out}",
        )

    async def close(self):
        pass


class PaperSigner:
    def __init__(self, ledger: PaperLedger, logger: Optional[logging.Logger] = None):
        self.ledger = ledger
        self.logger = logger or logging.getLogger("autoexit")

    async def sign_and_send(self, owner_identity: str, unsigned_tx: Dict[str, Any], chain: str) -> str:
        tx_hash = self.ledger.next_hash(f"{owner_identity}:{chain}:{unsigned_tx.get('tokenIn')}")
        self.ledger.fills[tx_hash] = float(unsigned_tx.get("expectedOut") or 0.0)
        self.logger.debug(f"paper tx {tx_hash} for {unsigned_tx.get('tokenIn')}")
        return tx_hash

    async def close(self):
        pass


class PaperChainStatus:
    def __init__(self, ledger: PaperLedger):
        self.ledger = ledger

    async def check(self, tx_hash: str, chain: str, hints: ReconcileHints) -> ChainStatus:
        if tx_hash in self.ledger.reverts:
            return ChainStatus(False, failure_reason=REVERTED)
        if tx_hash not in self.ledger.fills:
            return ChainStatus(False, failure_reason="unknown_tx")
        return ChainStatus(True, actual_amount_out=self.ledger.fills[tx_hash], gas_fee_usd=0.0)

    async def close(self):
        pass
