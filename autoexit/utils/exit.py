"""Exit rules evaluated on every monitor tick.

The engine is pure: it reads a position snapshot and a price and returns
what should happen, it never touches the store or the position object.
Per tick, in priority order:

1. ratchet the stop (trailing stop / time decay), always reported as updates
2. stop-loss, sells everything that is left
3. partial take-profit ladder, several rungs may fire at once
4. full take-profit, only when the ladder is disabled

A take-profit stored below entry is a data defect; the value from the
originating signal replaces it before step 4.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from autoexit.config import StopsConfig
from autoexit.core.position import (
    ExitDecision, ExitTrigger, Position, StopLossType, utcnow,
)


@dataclass
class Evaluation:
    price: float
    primary: Optional[ExitDecision] = None
    partials: List[ExitDecision] = field(default_factory=list)
    updates: Dict[str, Any] = field(default_factory=dict)
    stop_moved: bool = False
    take_profit_repaired: bool = False

    @property
    def decisions(self) -> List[ExitDecision]:
        if self.primary is not None:
            return [self.primary]
        return list(self.partials)

    @property
    def fired(self) -> bool:
        return bool(self.decisions)


def manual_decision(position: Position, price: float, reason: str = "manual") -> ExitDecision:
    return ExitDecision(ExitTrigger.MANUAL, sell_pct=position.remaining_pct, price=price,
                        full=True, reason=reason)


class ExitRuleEngine:
    def __init__(self, cfg):
        self.cfg = cfg
        self.stops: StopsConfig = getattr(cfg, "stops", None) or StopsConfig()

    def evaluate(self, pos: Position, price: float, now: Optional[datetime] = None) -> Evaluation:
        now = now or utcnow()
        ev = Evaluation(price=price)
        profit_pct = pos.profit_pct(price)
        ev.updates["current_price"] = price
        ev.updates["unrealized_pnl_percent"] = profit_pct
        ev.updates["unrealized_pnl_usd"] = pos.balance * (price - pos.entry_price)

        stop, stop_type = self._ratchet(pos, price, profit_pct, now, ev)

        # Stop-loss
        if stop is not None and stop > 0 and price <= stop:
            trigger = ExitTrigger.TRAILING_STOP if stop_type is StopLossType.TRAILING else ExitTrigger.STOP_LOSS
            ev.primary = ExitDecision(trigger, sell_pct=pos.remaining_pct, price=price, full=True,
                                      reason=f"price {price:.8g} <= stop {stop:.8g}")
            return ev

        # Partial take-profit ladder
        if pos.partial_tp_enabled and pos.partial_tp_rules:
            ev.partials = self._ladder(pos, price, profit_pct)

        take_profit = self._checked_take_profit(pos, ev)

        # Full take-profit; the ladder owns the upside when enabled
        if not pos.partial_tp_enabled and take_profit and price >= take_profit:
            ev.primary = ExitDecision(ExitTrigger.TAKE_PROFIT, sell_pct=pos.remaining_pct, price=price,
                                      full=True, reason=f"price {price:.8g} >= take-profit {take_profit:.8g}")
        return ev

    # ---------- stops ----------
    def _ratchet(self, pos: Position, price: float, profit_pct: float, now: datetime, ev: Evaluation):
        c = self.stops
        stop = pos.stop_loss_price
        stop_type = pos.stop_loss_type
        highest = pos.highest_price or pos.entry_price
        activated = pos.trailing_activated

        if price > highest:
            highest = price
        if stop_type is StopLossType.TRAILING and not activated and profit_pct >= c.trailing_activation_pct:
            activated = True

        new_stop = stop
        if activated:
            candidate = highest * (1.0 - c.trailing_stop_pct / 100.0)
            if new_stop is None or candidate > new_stop:
                new_stop = candidate
                stop_type = StopLossType.TRAILING
        elif stop_type is StopLossType.FIXED and c.time_decay_enabled:
            decayed = self._time_decay(pos, new_stop, highest, now)
            if decayed is not None:
                new_stop = decayed

        if highest != pos.highest_price:
            ev.updates["highest_price"] = highest
        if activated != pos.trailing_activated:
            ev.updates["trailing_activated"] = activated
        if new_stop is not None and (stop is None or new_stop > stop):
            ev.updates["stop_loss_price"] = new_stop
            ev.updates["stop_loss_type"] = stop_type
            ev.updates["last_stop_update_at"] = now
            ev.stop_moved = True
            return new_stop, stop_type
        return stop, pos.stop_loss_type

    def _time_decay(self, pos: Position, stop: Optional[float], highest: float, now: datetime) -> Optional[float]:
        c = self.stops
        if stop is None or highest > pos.entry_price:
            return None
        if pos.age_sec(now) < c.time_decay_start_sec:
            return None
        last = pos.last_stop_update_at
        if last is not None and (now - last).total_seconds() < c.time_decay_interval_sec:
            return None
        ceiling = pos.entry_price * (1.0 - c.time_decay_min_distance_pct / 100.0)
        candidate = min(stop + pos.entry_price * c.time_decay_step_pct / 100.0, ceiling)
        return candidate if candidate > stop else None

    # ---------- take-profit ----------
    def _ladder(self, pos: Position, price: float, profit_pct: float) -> List[ExitDecision]:
        fired: List[ExitDecision] = []
        remaining = pos.remaining_pct
        rungs = sorted(enumerate(pos.partial_tp_rules), key=lambda item: item[1].profit_pct)
        for index, rule in rungs:
            if index in pos.partial_tp_triggered:
                continue
            if remaining <= 0:
                break
            if profit_pct < rule.profit_pct:
                break
            pct = min(rule.sell_pct, remaining)
            if pct <= 0:
                continue
            fired.append(ExitDecision(ExitTrigger.PARTIAL_TP, sell_pct=pct, price=price, full=False,
                                      rule_index=index,
                                      reason=f"profit {profit_pct:.2f}% >= {rule.profit_pct}% sell {pct}%"))
            remaining -= pct
        return fired

    def _checked_take_profit(self, pos: Position, ev: Evaluation) -> Optional[float]:
        take_profit = pos.take_profit_price
        if take_profit and take_profit < pos.entry_price:
            from_signal = pos.signal_take_profit
            if from_signal and from_signal >= pos.entry_price:
                ev.updates["take_profit_price"] = from_signal
                ev.take_profit_repaired = True
                return from_signal
            # no trustworthy value, never act on the stale one
            return None
        return take_profit
