import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

Subscriber = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]

EXIT_TRIGGERED = "exit_triggered"
EXIT_SUBMITTED = "exit_submitted"
EXIT_CONFIRMED = "exit_confirmed"
PARTIAL_CONFIRMED = "partial_confirmed"
EXIT_REVERTED = "exit_reverted"
EXIT_FAILED = "exit_failed"
EXIT_UNRESOLVED = "exit_unresolved"
EXIT_SUBMIT_FAILED = "exit_submit_failed"
STOP_UPDATED = "stop_updated"


class EventChannel:
    """
    Status notifications for whoever is listening (UI bridge, notifier, tests).
    Publishing never fails: subscriber errors are logged and dropped.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("autoexit")
        self._subscribers: List[Subscriber] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, callback: Subscriber) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, topic: str, **payload) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(topic, payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_done)
            except Exception as e:
                self.logger.error(f"Event subscriber failed on {topic}: {e}")

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Async event subscriber failed: {task.exception()}")

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
