from __future__ import annotations

import asyncio

from pathforge.core.apply_flow import ApplyFlowController, ApplyTarget, FlowStep
from pathforge.core.poller import PollerState, RunStatusPoller


def test_apply_tailor_confirm_then_approve_review(backend, backend_api, settings, event_bus, snapshot, make_log) -> None:
    backend.add_job("42", title="Backend Engineer", company="Acme", external_url="https://acme.example/apply")
    backend.resumes.append({"id": "resume-1", "title": "Main", "file_name": "cv.pdf", "is_primary": True})
    backend.run_scripts["run-1"] = [
        snapshot("run-1", "pending"),
        snapshot("run-1", "running", progress=40, logs=[make_log("a", 1)]),
        snapshot(
            "run-1",
            "waiting_for_user",
            action="review_required",
            logs=[make_log("a", 1), make_log("b", 2)],
        ),
    ]

    async def scenario():
        async with backend_api as api:
            target = ApplyTarget.from_record(await api.jobs.get_job("42"))
            flow = ApplyFlowController(target, resumes=api.resumes, runs=api.runs, settings=settings, event_bus=event_bus)
            assert await flow.start() is FlowStep.TAILOR
            flow.accept()
            run_id = await flow.confirm()

            async with flow.poller() as poller:
                poller.start()
                while not poller.gate.is_open:
                    await asyncio.sleep(0.005)
                assert await poller.gate.approve()
                backend.run_scripts[run_id].append(
                    snapshot("run-1", "submitted", progress=100, logs=[make_log("c", 3)])
                )
                await asyncio.wait_for(poller.wait(), timeout=2)
                return run_id, poller

    run_id, poller = asyncio.run(scenario())

    assert run_id == "run-1"
    started = backend.started[0]
    assert started["job_id"] == "42"
    assert started["resume_id"] == "resume-1-tailored"
    assert started["user_consent"] is True
    assert started["consent_text"].startswith("I authorize PathForge AI")
    assert backend.user_actions == [
        {"run_id": "run-1", "action_type": "review_required", "action_data": {"action": "approve", "approved": True}}
    ]
    assert poller.state is PollerState.COMPLETED
    assert [entry.id for entry in poller.run.log_entries] == ["a", "b", "c"]
    assert event_bus.history("toasts")[-1].message == "Application submitted"


def test_reject_review_refreshes_run(backend, backend_api, settings, event_bus, snapshot) -> None:
    backend.run_scripts["run-7"] = [
        snapshot("run-7", "waiting_for_user", action="review_before_submission"),
        snapshot("run-7", "aborted", error_reason="Rejected by user"),
    ]

    async def scenario():
        async with backend_api as api:
            poller = RunStatusPoller(api.runs, "run-7", settings=settings, event_bus=event_bus)
            await poller.poll_once()
            assert poller.gate.is_open
            rejected = await poller.gate.reject()
            return poller, rejected

    poller, rejected = asyncio.run(scenario())

    assert rejected
    assert backend.user_actions[0]["action_data"] == {"action": "reject", "approved": False}
    assert poller.run.status == "aborted"
    assert poller.gate.decision == "rejected"
    assert event_bus.history("toasts")[-1].message == "Application was cancelled"


def test_tailoring_outage_falls_back_to_original_resume(backend, backend_api, settings, event_bus) -> None:
    backend.tailor_fails = True
    backend.resumes.extend([{"id": "resume-1", "title": "General"}, {"id": "resume-2", "title": "Backend"}])

    async def scenario():
        async with backend_api as api:
            target = ApplyTarget(job_id="42", title="Backend Engineer", company="Acme")
            flow = ApplyFlowController(target, resumes=api.resumes, runs=api.runs, settings=settings, event_bus=event_bus)
            assert await flow.start() is FlowStep.SELECT
            await flow.select("resume-2")
            flow.accept()
            return flow, await flow.confirm()

    flow, run_id = asyncio.run(scenario())

    assert run_id == "run-1"
    assert flow.tailor_error == "Tailoring service unavailable"
    assert backend.started[0]["resume_id"] == "resume-2"


def test_unknown_run_errors_without_retrying(backend, backend_api, settings, event_bus) -> None:
    async def scenario():
        async with backend_api as api:
            poller = RunStatusPoller(api.runs, "run-missing", settings=settings, event_bus=event_bus)
            poller.start()
            await asyncio.wait_for(poller.wait(), timeout=2)
            return poller

    poller = asyncio.run(scenario())

    assert poller.state is PollerState.ERRORED
    assert poller.error.status_code == 404
    assert backend.status_calls == {}
