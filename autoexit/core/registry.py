import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from autoexit.core.position import Position, utcnow


@dataclass
class MonitorEntry:
    position_id: str
    task: asyncio.Task
    token_symbol: Optional[str] = None
    entry_price: Optional[float] = None
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    started_at: datetime = field(default_factory=utcnow)

    def describe(self, now: datetime) -> dict:
        return {
            "position_id": self.position_id,
            "token": self.token_symbol,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss_price,
            "take_profit": self.take_profit_price,
            "started_at": self.started_at.isoformat(),
            "running_sec": int((now - self.started_at).total_seconds()),
        }


class MonitorRegistry:
    """position id -> live polling task. At most one entry per position."""

    def __init__(self):
        self._entries: Dict[str, MonitorEntry] = {}

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, position_id: str) -> Optional[MonitorEntry]:
        return self._entries.get(position_id)

    def add(self, entry: MonitorEntry) -> bool:
        if entry.position_id in self._entries:
            return False
        self._entries[entry.position_id] = entry
        return True

    def refresh(self, pos: Position):
        entry = self._entries.get(pos.id)
        if entry is None:
            return
        entry.token_symbol = pos.token_symbol
        entry.entry_price = pos.entry_price
        entry.stop_loss_price = pos.stop_loss_price
        entry.take_profit_price = pos.take_profit_price

    def detach(self, position_id: str) -> Optional[MonitorEntry]:
        """Forget the entry without cancelling its task."""
        return self._entries.pop(position_id, None)

    def cancel(self, position_id: str) -> bool:
        entry = self._entries.pop(position_id, None)
        if entry is None:
            return False
        entry.task.cancel()
        return True

    def cancel_all(self) -> List[asyncio.Task]:
        tasks = [e.task for e in self._entries.values()]
        self._entries.clear()
        for t in tasks:
            t.cancel()
        return tasks

    def status(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        return {
            "active": len(self._entries),
            "positions": [e.describe(now) for e in self._entries.values()],
        }
