"""Tests for RunFinalizer."""

from __future__ import annotations

import asyncio

from cdflow.core.finalizer import RunFinalizer
from cdflow.core.models import (
    ContextSpec,
    PipelineRun,
    RunBindings,
    RunStatus,
    StageKind,
    StageNode,
)
from cdflow.core.ports import ExecutionContext
from cdflow.core.state import Event, EventType
from tests.fakes import FakeNotifier, FakeProvider


def _finished_run(status=RunStatus.FAILED):
    run = PipelineRun.create(
        RunBindings(build_number=9, branch="main"),
        StageNode(name="delivery", kind=StageKind.SEQUENTIAL),
    )
    run.status = status
    if status == RunStatus.FAILED:
        run.failed_stage = "Deploy Production"
    return run


class TestRunFinalizer:
    """Tests for end-of-run cleanup, notification and archiving."""

    def test_finalize_runs_every_phase(self, test_db):
        provider = FakeProvider()
        notifier = FakeNotifier()
        run = _finished_run()
        test_db.append_event(
            Event(run_id=9, event_type=EventType.RUN_STARTED, payload={"pipeline": "delivery"})
        )

        asyncio.run(RunFinalizer(provider, notifier, test_db, "#releases").finalize(run))

        assert run.finalized
        assert provider.cleanups == 1
        assert notifier.sent == [("#releases", run.summary())]
        assert "Build #9 (main) FAILED at stage 'Deploy Production'" in notifier.sent[0][1]
        assert test_db.get_run(9).archived
        assert test_db.get_events(9, [EventType.NOTIFICATION_SENT])

    def test_finalize_is_idempotent(self, test_db):
        provider = FakeProvider()
        notifier = FakeNotifier()
        finalizer = RunFinalizer(provider, notifier, test_db)
        run = _finished_run(RunStatus.SUCCEEDED)

        async def twice():
            await finalizer.finalize(run)
            await finalizer.finalize(run)

        asyncio.run(twice())

        assert provider.cleanups == 1
        assert len(notifier.sent) == 1
        assert len(test_db.get_events(9, [EventType.RUN_ARCHIVED])) == 1

    def test_leaked_contexts_released(self, test_db):
        provider = FakeProvider()
        leaked = ExecutionContext(id="ctx-leaked", spec=ContextSpec())

        asyncio.run(RunFinalizer(provider, None, test_db).finalize(_finished_run(), [leaked]))

        assert provider.released == ["ctx-leaked"]

    def test_notification_failure_does_not_stop_archiving(self, test_db):
        run = _finished_run()

        asyncio.run(RunFinalizer(FakeProvider(), FakeNotifier(fail=True), test_db).finalize(run))

        failed = test_db.get_events(9, [EventType.NOTIFICATION_FAILED])
        assert failed[0].payload["error"] == "chat service down"
        assert test_db.get_events(9, [EventType.RUN_ARCHIVED])

    def test_cleanup_failure_does_not_stop_notification(self, test_db):
        class BrokenProvider(FakeProvider):
            async def cleanup(self):
                raise OSError("disk full")

        notifier = FakeNotifier()

        asyncio.run(RunFinalizer(BrokenProvider(), notifier, test_db).finalize(_finished_run()))

        assert len(notifier.sent) == 1

    def test_without_notifier(self, test_db):
        run = _finished_run(RunStatus.SUCCEEDED)

        asyncio.run(RunFinalizer(FakeProvider(), None, test_db).finalize(run))

        assert run.finalized
        assert test_db.get_events(9, [EventType.NOTIFICATION_SENT]) == []
