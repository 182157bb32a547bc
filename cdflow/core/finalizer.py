"""End-of-run cleanup, notification and archiving."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from cdflow.core.models import PipelineRun
from cdflow.core.ports import ExecutionContext, ExecutionProvider, NotificationChannel
from cdflow.core.state import Database, Event, EventType

logger = logging.getLogger(__name__)


class RunFinalizer:
    """Runs once per run after the stage tree is terminal.

    Each phase is best-effort: a failing phase is logged and the next one
    still runs. Calling ``finalize`` again for the same run is a no-op.
    """

    def __init__(
        self,
        provider: ExecutionProvider,
        notifier: NotificationChannel | None,
        db: Database,
        channel: str = "#deployments",
    ):
        self.provider = provider
        self.notifier = notifier
        self.db = db
        self.channel = channel

    async def finalize(
        self, run: PipelineRun, held_contexts: Iterable[ExecutionContext] = ()
    ) -> None:
        if run.finalized:
            logger.debug(f"Run #{run.run_id} already finalized")
            return
        run.finalized = True

        await self._release(list(held_contexts))
        await self._notify(run)
        await self._archive(run)

    async def _release(self, contexts: list[ExecutionContext]) -> None:
        for context in contexts:
            logger.warning(f"Releasing execution context '{context.id}' left held at end of run")
            try:
                await self.provider.release(context)
            except Exception as e:
                logger.error(f"Failed to release execution context '{context.id}': {e}")
        try:
            await self.provider.cleanup()
        except Exception as e:
            logger.error(f"Failed to clean provider working storage: {e}")

    async def _notify(self, run: PipelineRun) -> None:
        message = run.summary()
        if self.notifier is None:
            logger.info(message)
            return
        try:
            await self.notifier.send(self.channel, message)
        except Exception as e:
            logger.error(f"Notification to '{self.channel}' failed: {e}")
            await self._emit(
                run, EventType.NOTIFICATION_FAILED, {"channel": self.channel, "error": str(e)}
            )
            return
        await self._emit(
            run, EventType.NOTIFICATION_SENT, {"channel": self.channel, "message": message}
        )

    async def _archive(self, run: PipelineRun) -> None:
        try:
            await asyncio.to_thread(self.db.archive_run, run)
        except Exception as e:
            logger.error(f"Failed to archive run #{run.run_id}: {e}")

    async def _emit(self, run: PipelineRun, event_type: EventType, payload: dict) -> None:
        event = Event(run_id=run.run_id, event_type=event_type, payload=payload)
        try:
            await asyncio.to_thread(self.db.append_event, event)
        except Exception as e:
            logger.error(f"Failed to record {event_type.value} for run #{run.run_id}: {e}")
