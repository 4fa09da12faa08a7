from __future__ import annotations

import asyncio
import json
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import typer

from pathforge.api.client import ApiClient
from pathforge.api.errors import ApiClientError, SessionInvalidatedError
from pathforge.api.services import PathForgeAPI
from pathforge.auth.token_store import SqlTokenStore
from pathforge.config import get_settings
from pathforge.core.apply_flow import ApplyFlowController, ApplyTarget, FlowStateError, FlowStep
from pathforge.core.kanban import COLUMN_LABELS, KanbanBoard
from pathforge.core.poller import PollerState, RunStatusPoller
from pathforge.core.preferences import PreferencesEditor, PreferencesValidationError, validate
from pathforge.core.runtime import get_event_bus
from pathforge.core.search import JobSearchSession
from pathforge.db.init import init_database
from pathforge.logging_config import configure_logging
from pathforge.types import AuthTokens

app = typer.Typer(help="PathForge CLI")
run_app = typer.Typer(help="Watch and steer application runs")
board_app = typer.Typer(help="Job pipeline board")
prefs_app = typer.Typer(help="Auto-apply preferences")

app.add_typer(run_app, name="run")
app.add_typer(board_app, name="board")
app.add_typer(prefs_app, name="prefs")

T = TypeVar("T")

_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _on_session_invalidated() -> None:
    typer.echo(f"Session expired. Sign in again at {get_settings().signin_url}", err=True)


def _api() -> PathForgeAPI:
    token_store = SqlTokenStore(on_invalidated=_on_session_invalidated)
    return PathForgeAPI(ApiClient(token_store))


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except SessionInvalidatedError as exc:
        _echo({"ok": False, "error": exc.general_message(), "signin_url": get_settings().signin_url})
        raise typer.Exit(code=1) from exc
    except FlowStateError as exc:
        _echo({"ok": False, "error": str(exc)})
        raise typer.Exit(code=1) from exc
    except PreferencesValidationError as exc:
        _echo({"ok": False, "errors": exc.errors})
        raise typer.Exit(code=1) from exc
    except ApiClientError as exc:
        _echo({"ok": False, "status_code": exc.status_code, "error": exc.general_message(), "fields": exc.field_errors})
        raise typer.Exit(code=1) from exc


def _start() -> None:
    configure_logging()
    ensure_initialized()


@app.command("init")
def init_cmd() -> None:
    """Create the local data directory and token database."""
    configure_logging()
    result = init_database()
    _echo({"ok": True, **result})


@app.command("login")
def login(
    access_token: str = typer.Option(..., "--access-token"),
    refresh_token: str = typer.Option(..., "--refresh-token"),
) -> None:
    _start()
    SqlTokenStore().set_tokens(AuthTokens(access_token=access_token, refresh_token=refresh_token))
    _echo({"ok": True})


@app.command("logout")
def logout() -> None:
    _start()
    SqlTokenStore().clear_tokens()
    _echo({"ok": True})


@app.command("search")
def search_cmd(
    query: str = typer.Option("", "--query"),
    location: str | None = typer.Option(None, "--location"),
    remote_only: bool = typer.Option(False, "--remote-only"),
) -> None:
    _start()

    async def _search() -> dict[str, Any]:
        async with _api() as api:
            async with JobSearchSession(api.search) as session:
                session.set_query(query, location=location, remote_only=remote_only or None)
                page = await session.wait()
                if page is None:
                    raise session.error or ApiClientError("Job search failed")
                return page.model_dump(mode="json")

    _echo(_run(_search()))


@app.command("apply")
def apply_cmd(
    job_id: str = typer.Option(..., "--job-id"),
    posting: bool = typer.Option(False, "--posting", help="Treat --job-id as a job-database posting id"),
    resume_id: str | None = typer.Option(None, "--resume-id"),
    resume_file: Path | None = typer.Option(None, "--resume-file", exists=True, readable=True),
    tailor: bool = typer.Option(True, "--tailor/--no-tailor"),
    consent_text: str | None = typer.Option(None, "--consent-text"),
    watch: bool = typer.Option(False, "--watch"),
) -> None:
    _start()

    async def _apply() -> dict[str, Any]:
        async with _api() as api:
            if posting:
                target = ApplyTarget.from_posting(await api.search.get_posting(job_id))
            else:
                target = ApplyTarget.from_record(await api.jobs.get_job(job_id))

            flow = ApplyFlowController(target, resumes=api.resumes, runs=api.runs)
            step = await flow.start()
            if step is FlowStep.UPLOAD or (step is FlowStep.SELECT and resume_file is not None):
                if resume_file is None:
                    raise typer.BadParameter("no resumes on file; pass --resume-file")
                await flow.upload(resume_file)
            elif step is FlowStep.SELECT:
                if resume_id is None:
                    names = {resume.id: resume.display_name for resume in flow.resumes}
                    raise typer.BadParameter(f"several resumes on file, pass --resume-id (one of {names})")
                await flow.select(resume_id)

            if tailor:
                flow.accept()
            else:
                flow.skip()
            run_id = await flow.confirm(consent_text)
            result: dict[str, Any] = {
                "run_id": run_id,
                "resume_id": flow.chosen_resume_id,
                "tailor_error": flow.tailor_error,
            }
            if watch:
                async with flow.poller() as poller:
                    result["run"] = await _follow(poller)
            return result

    _echo(_run(_apply()))


async def _follow(poller: RunStatusPoller) -> dict[str, Any] | None:
    bus = poller.event_bus

    async def _print_events() -> None:
        async for event in bus.subscribe(poller.channel):
            _echo(event.model_dump(mode="json"))
            if event.kind in {"terminal", "errored"}:
                return

    printer = asyncio.create_task(_print_events())
    await asyncio.sleep(0)
    poller.start()
    try:
        await poller.wait()
        await asyncio.wait({printer}, timeout=1.0)
    finally:
        printer.cancel()
        try:
            await printer
        except asyncio.CancelledError:
            pass
    return poller.run.model_dump(mode="json", exclude={"log_entries"}) if poller.run else None


async def _load_run(api: PathForgeAPI, run_id: str) -> RunStatusPoller:
    poller = RunStatusPoller(api.runs, run_id)
    await poller.poll_once()
    if poller.state is PollerState.ERRORED and poller.error is not None:
        raise poller.error
    return poller


@run_app.command("watch")
def run_watch(run_id: str = typer.Option(..., "--run-id")) -> None:
    _start()

    async def _watch() -> dict[str, Any] | None:
        async with _api() as api:
            async with RunStatusPoller(api.runs, run_id) as poller:
                return await _follow(poller)

    _echo({"run": _run(_watch())})


@run_app.command("status")
def run_status(run_id: str = typer.Option(..., "--run-id")) -> None:
    _start()

    async def _status() -> dict[str, Any]:
        async with _api() as api:
            poller = await _load_run(api, run_id)
            logs, events = await poller.refresh_timeline()
            return {
                "run": poller.run.model_dump(mode="json", exclude={"log_entries"}) if poller.run else None,
                "user_action": poller.gate.action.message if poller.gate.action else None,
                "logs": [entry.model_dump(mode="json") for entry in logs],
                "events": [{"type": event.kind.value, "raw": event.event_type, "at": event.timestamp} for event in events],
            }

    _echo(_run(_status()))


@run_app.command("cancel")
def run_cancel(run_id: str = typer.Option(..., "--run-id")) -> None:
    _start()

    async def _cancel() -> dict[str, Any] | None:
        async with _api() as api:
            poller = RunStatusPoller(api.runs, run_id)
            run = await poller.cancel_run()
            return run.model_dump(mode="json", exclude={"log_entries"}) if run else None

    _echo({"run": _run(_cancel())})


def _resolve(run_id: str, decision: str) -> None:
    _start()

    async def _resolve_action() -> dict[str, Any]:
        async with _api() as api:
            poller = await _load_run(api, run_id)
            if poller.gate.action is None:
                raise typer.BadParameter(f"run {run_id} is not waiting for user action")
            try:
                if decision == "approve":
                    done = await poller.gate.approve()
                elif decision == "reject":
                    done = await poller.gate.reject()
                else:
                    done = await poller.gate.resume()
            except ValueError as exc:
                raise typer.BadParameter(str(exc)) from exc
            return {"ok": done, "action": poller.gate.action.raw if poller.gate.action else None}

    _echo(_run(_resolve_action()))


@run_app.command("approve")
def run_approve(run_id: str = typer.Option(..., "--run-id")) -> None:
    _resolve(run_id, "approve")


@run_app.command("reject")
def run_reject(run_id: str = typer.Option(..., "--run-id")) -> None:
    _resolve(run_id, "reject")


@run_app.command("resume")
def run_resume(run_id: str = typer.Option(..., "--run-id")) -> None:
    """Confirm a captcha or consent step finished outside the tool."""
    _resolve(run_id, "resume")


@board_app.command("show")
def board_show(query: str = typer.Option("", "--query")) -> None:
    _start()

    async def _show() -> dict[str, Any]:
        async with _api() as api:
            board = KanbanBoard(api.jobs)
            await board.load()
            return {
                COLUMN_LABELS[status]: [card.model_dump(mode="json") for card in cards]
                for status, cards in board.filter(query).items()
            }

    _echo(_run(_show()))


@board_app.command("move")
def board_move(
    card_id: str = typer.Option(..., "--card-id"),
    to: str = typer.Option(..., "--to"),
) -> None:
    _start()
    if to not in COLUMN_LABELS:
        raise typer.BadParameter(f"--to must be one of {sorted(COLUMN_LABELS)}")

    async def _move() -> dict[str, Any]:
        bus = get_event_bus()
        async with _api() as api:
            board = KanbanBoard(api.jobs, event_bus=bus)
            await board.load()
            if board.card(card_id) is None:
                raise typer.BadParameter(f"card {card_id} is not on the board")
            moved = await board.drag_end(card_id, to)
            toast = bus.history("toasts")[-1].message if bus.history("toasts") else None
            card = board.card(card_id)
            return {"ok": moved, "message": toast, "card": card.model_dump(mode="json") if card else None}

    _echo(_run(_move()))


@prefs_app.command("show")
def prefs_show() -> None:
    _start()

    async def _show() -> dict[str, Any]:
        async with _api() as api:
            editor = PreferencesEditor(api.preferences)
            prefs = await editor.load()
            return {
                "preferences": prefs.model_dump(mode="json"),
                "stats": editor.stats.model_dump(mode="json") if editor.stats else None,
            }

    _echo(_run(_show()))


@prefs_app.command("validate")
def prefs_validate() -> None:
    _start()

    async def _validate() -> dict[str, Any]:
        async with _api() as api:
            prefs = (await api.preferences.get()).preferences
            errors = validate(prefs)
            return {"can_activate": not errors, "errors": errors}

    _echo(_run(_validate()))


def _set_status(action: str) -> None:
    _start()

    async def _toggle() -> dict[str, Any]:
        async with _api() as api:
            editor = PreferencesEditor(api.preferences)
            await editor.load()
            updated = await getattr(editor, action)()
            return {"ok": True, "status": updated.status}

    _echo(_run(_toggle()))


@prefs_app.command("enable")
def prefs_enable() -> None:
    _set_status("enable")


@prefs_app.command("disable")
def prefs_disable() -> None:
    _set_status("disable")


@prefs_app.command("pause")
def prefs_pause() -> None:
    _set_status("pause")

