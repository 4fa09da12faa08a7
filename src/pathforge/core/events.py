from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from collections.abc import AsyncIterator
from typing import Any, Literal

from pydantic import BaseModel, Field

ToastLevel = Literal["info", "success", "warning", "error"]

TOASTS = "toasts"
HISTORY_LIMIT = 200


class Notification(BaseModel):
    kind: str
    level: ToastLevel = "info"
    message: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


class EventBus:
    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self._queues: dict[str, list[asyncio.Queue[Notification]]] = defaultdict(list)
        self._history: dict[str, deque[Notification]] = defaultdict(lambda: deque(maxlen=history_limit))
        self._lock = asyncio.Lock()

    async def publish(self, channel: str, event: Notification) -> None:
        async with self._lock:
            self._history[channel].append(event)
            for queue in list(self._queues.get(channel, [])):
                await queue.put(event)

    async def toast(self, level: ToastLevel, message: str, **payload: Any) -> None:
        await self.publish(TOASTS, Notification(kind="toast", level=level, message=message, payload=payload))

    def history(self, channel: str) -> list[Notification]:
        return list(self._history.get(channel, ()))

    async def subscribe(self, channel: str) -> AsyncIterator[Notification]:
        queue: asyncio.Queue[Notification] = asyncio.Queue()
        async with self._lock:
            self._queues[channel].append(queue)

        try:
            while True:
                event = await queue.get()
                yield event
        finally:
            async with self._lock:
                if queue in self._queues.get(channel, []):
                    self._queues[channel].remove(queue)
