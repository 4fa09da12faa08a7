from __future__ import annotations

import asyncio

import httpx

from pathforge.core.search import Debouncer, JobSearchSession


def _page(*titles: str) -> dict:
    return {
        "items": [
            {"id": f"p-{index}", "job_title": title, "company_name": "Acme", "location_raw": "Berlin"}
            for index, title in enumerate(titles)
        ],
        "total": len(titles),
        "page": 1,
        "page_size": 20,
    }


def test_rapid_queries_collapse_into_one_request(make_api, settings, event_bus) -> None:
    seen: list[httpx.QueryParams] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params)
        return httpx.Response(200, json=_page("Python Developer"))

    api = make_api(httpx.MockTransport(handler))

    async def scenario():
        async with JobSearchSession(api.search, settings=settings, event_bus=event_bus) as session:
            session.set_query("py")
            session.set_query("pyth")
            session.set_query("python", location="Berlin", remote_only=True)
            page = await session.wait()
            return session, page

    session, page = asyncio.run(scenario())

    assert session.requests == 1
    assert len(seen) == 1
    assert seen[0]["query"] == "python"
    assert seen[0]["location"] == "Berlin"
    assert seen[0]["remote_only"] == "true"
    assert seen[0]["page"] == "1"
    assert [job.job_title for job in page.items] == ["Python Developer"]
    assert session.results is page


def test_search_failure_is_recorded_and_toasted(make_api, settings, event_bus) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "Search index unavailable"})

    api = make_api(httpx.MockTransport(handler))

    async def scenario():
        async with JobSearchSession(api.search, settings=settings, event_bus=event_bus) as session:
            return session, await session.search_now()

    session, page = asyncio.run(scenario())

    assert page is None
    assert session.error.transient
    assert event_bus.history("toasts")[-1].message == "Search index unavailable"


def test_close_cancels_pending_search(make_api, settings, event_bus) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_page())

    api = make_api(httpx.MockTransport(handler))

    async def scenario():
        session = JobSearchSession(api.search, settings=settings, event_bus=event_bus)
        session.set_query("rust")
        assert session.debouncer.pending
        await session.close()
        await asyncio.sleep(settings.search_debounce_sec * 2)
        return session

    session = asyncio.run(scenario())

    assert calls == []
    assert session.requests == 0
    assert not session.debouncer.pending


def test_debouncer_runs_only_latest_factory() -> None:
    ran: list[int] = []

    async def job(value: int) -> int:
        ran.append(value)
        return value

    async def scenario():
        debouncer = Debouncer(0.01)
        for value in range(5):
            debouncer.call(lambda value=value: job(value))
        return await debouncer.wait()

    assert asyncio.run(scenario()) == 4
    assert ran == [4]
