import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from autoexit.core.position import DUST_TOKENS, ExitDecision, ExitTrigger, Position, utcnow
from autoexit.data.swap import SwapRequest
from autoexit.utils.logging_utils import jlog

EVM_TX_HASH = re.compile(r"(?<![0-9a-fA-Fx])0x[a-fA-F0-9]{64}(?![0-9a-fA-F])")
SOLANA_SIGNATURE = re.compile(r"(?<![1-9A-HJ-NP-Za-km-z])[1-9A-HJ-NP-Za-km-z]{86,88}(?![1-9A-HJ-NP-Za-km-z])")


class SubmissionError(RuntimeError):
    """No transaction hash could be obtained, nothing is known to be in flight."""


def sniff_tx_hash(text: str, chain: Optional[str] = None) -> Optional[str]:
    """Pull a transaction hash out of signer error text."""
    if not text:
        return None
    m = EVM_TX_HASH.search(text)
    if m:
        return m.group(0)
    if (chain or "").lower() == "solana":
        m = SOLANA_SIGNATURE.search(text)
        if m:
            return m.group(0)
    return None


@dataclass
class ExitHandle:
    tx_hash: str
    exit_type: ExitTrigger
    amount_in_token: float
    amount_out_min: Optional[float] = None
    token_out_address: Optional[str] = None
    approval_tx_hash: Optional[str] = None
    recovered_from_error: bool = False
    submitted_at: datetime = field(default_factory=utcnow)


class ExitExecutor:
    """
    Turns an exit decision into a submitted swap.

    approve (if the venue says so) -> settle delay -> swap, both through the
    remote signer. A signer exception whose text carries a transaction hash is
    treated as submitted; anything else is a SubmissionError.
    """

    def __init__(self, cfg, logger: logging.Logger, swap_builder, signer):
        self.cfg = cfg.execution
        self.logger = logger
        self.swap_builder = swap_builder
        self.signer = signer

    def exit_token(self, chain: str) -> str:
        tokens = {k.lower(): v for k, v in self.cfg.exit_tokens.items()}
        return tokens.get((chain or "").lower(), self.cfg.default_exit_token)

    def slippage_for(self, decision: ExitDecision) -> float:
        if decision.full:
            return self.cfg.full_exit_slippage_pct
        return self.cfg.partial_slippage_pct

    async def submit(self, position: Position, decision: ExitDecision) -> ExitHandle:
        amount = decision.token_amount(position)
        if amount <= DUST_TOKENS:
            raise SubmissionError(f"nothing to sell for position {position.id}")
        if not position.owner_identity:
            raise SubmissionError(f"no signing identity for wallet {position.wallet_address}")

        req = SwapRequest(
            chain=position.chain,
            token_in=position.token_symbol,
            token_in_address=position.contract_address,
            token_out=self.exit_token(position.chain),
            amount_in=amount,
            slippage_percent=self.slippage_for(decision),
            user_address=position.wallet_address,
            is_alpha_token=position.is_alpha_token,
            reference_price=decision.price,
        )
        try:
            build = await asyncio.wait_for(self.swap_builder.build(req), timeout=self.cfg.builder_timeout_sec)
        except asyncio.TimeoutError as e:
            raise SubmissionError(f"swap build timed out for {position.token_symbol}") from e
        except Exception as e:
            raise SubmissionError(f"swap build failed for {position.token_symbol}: {e}") from e

        approval_hash = None
        if build.needs_approval and build.unsigned_approval_tx:
            approval_tx = dict(build.unsigned_approval_tx)
            approval_tx.setdefault("gas", self.cfg.approval_gas_limit)
            approval_hash, _ = await self._send(position, approval_tx, "approval")
            jlog(self.logger, "APPROVAL_SUBMITTED", position_id=position.id, tx_hash=approval_hash)
            await asyncio.sleep(self.cfg.approval_settle_sec)

        tx_hash, recovered = await self._send(position, build.unsigned_swap_tx, "swap")
        jlog(self.logger, "SWAP_SUBMITTED", position_id=position.id, tx_hash=tx_hash,
             exit_type=decision.trigger.value, amount_in=amount, token_out=req.token_out,
             slippage=req.slippage_percent, recovered=recovered)
        return ExitHandle(
            tx_hash=tx_hash,
            exit_type=decision.trigger,
            amount_in_token=amount,
            amount_out_min=build.amount_out_min,
            token_out_address=build.token_out_address,
            approval_tx_hash=approval_hash,
            recovered_from_error=recovered,
        )

    async def _send(self, position: Position, tx: Dict[str, Any], label: str) -> Tuple[str, bool]:
        try:
            tx_hash = await asyncio.wait_for(
                self.signer.sign_and_send(position.owner_identity, tx, position.chain),
                timeout=self.cfg.signer_timeout_sec,
            )
        except asyncio.TimeoutError as e:
            raise SubmissionError(f"{label} signing timed out") from e
        except Exception as e:
            sniffed = sniff_tx_hash(str(e), position.chain)
            if sniffed is None:
                raise SubmissionError(f"{label} signing failed: {e}") from e
            jlog(self.logger, "SIGNER_ERROR_WITH_HASH", logging.WARNING, position_id=position.id,
                 stage=label, tx_hash=sniffed, error=str(e)[:300])
            return sniffed, True
        if not tx_hash:
            raise SubmissionError(f"{label} signer returned no transaction hash")
        return tx_hash, False

    async def close(self):
        for client in (self.swap_builder, self.signer):
            closer = getattr(client, "close", None)
            if closer is not None:
                await closer()
