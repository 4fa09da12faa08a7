from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any, TypeVar

from pathforge.api.errors import ApiClientError
from pathforge.api.services import JobSearchAPI
from pathforge.config import Settings, get_settings
from pathforge.core.events import EventBus
from pathforge.core.runtime import get_event_bus
from pathforge.types import IngestedJob, Page

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Debouncer:
    """Runs the most recent call only after ``delay`` seconds of quiet."""

    def __init__(self, delay: float):
        self.delay = delay
        self._task: asyncio.Task[Any] | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def call(self, factory: Callable[[], Awaitable[T]]) -> asyncio.Task[T]:
        self.cancel()
        self._task = asyncio.create_task(self._run(factory))
        return self._task

    def cancel(self) -> None:
        if self.pending:
            self._task.cancel()
        self._task = None

    async def wait(self) -> Any:
        task = self._task
        if task is None:
            return None
        return await task

    async def aclose(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self, factory: Callable[[], Awaitable[T]]) -> T:
        await asyncio.sleep(self.delay)
        return await factory()


class JobSearchSession:
    def __init__(
        self,
        search: JobSearchAPI,
        *,
        settings: Settings | None = None,
        event_bus: EventBus | None = None,
    ):
        self.search_api = search
        self.settings = settings or get_settings()
        self.event_bus = event_bus or get_event_bus()
        self.debouncer = Debouncer(self.settings.search_debounce_sec)

        self.query = ""
        self.filters: dict[str, Any] = {}
        self.results: Page[IngestedJob] | None = None
        self.error: ApiClientError | None = None
        self.requests = 0

    async def __aenter__(self) -> JobSearchSession:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def set_query(
        self,
        query: str,
        *,
        location: str | None = None,
        employment_type: str | None = None,
        remote_only: bool | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> asyncio.Task[Page[IngestedJob] | None]:
        self.query = query
        self.filters = {
            "location": location,
            "employment_type": employment_type,
            "remote_only": remote_only,
            "date_from": date_from,
            "date_to": date_to,
        }
        return self.debouncer.call(self.search_now)

    async def search_now(self) -> Page[IngestedJob] | None:
        self.requests += 1
        try:
            page = await self.search_api.search(
                query=self.query.strip() or None,
                page=1,
                page_size=self.settings.search_page_size,
                **self.filters,
            )
        except ApiClientError as exc:
            self.error = exc
            logger.warning("Job search failed query=%r: %s", self.query, exc)
            await self.event_bus.toast("error", exc.general_message() or "Failed to search jobs")
            return None

        self.error = None
        self.results = page
        return page

    async def wait(self) -> Page[IngestedJob] | None:
        return await self.debouncer.wait()

    async def close(self) -> None:
        await self.debouncer.aclose()
