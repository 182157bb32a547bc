"""Manual promotion gates.

USAGE (inside the engine loop):
    gate = ApprovalGate(channel, db, default_timeout=3600)
    request = await gate.request(run_id, node, abort_event)  # raises unless approved

The waiting branch suspends on the channel's future and holds no execution
context. A request ends in exactly one final decision:

- APPROVED: an allowed responder accepted before the timeout
- REJECTED: an allowed responder declined, the channel failed, or the run was
  aborted/cancelled while waiting
- TIMED_OUT: no decision before the timeout (treated like REJECTED)
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from cdflow.core.errors import ApprovalRejected, ApprovalTimedOut, RunAborted
from cdflow.core.interaction import ApprovalDecision, ApprovalRequest
from cdflow.core.models import ApprovalSpec, NodeStatus, StageNode
from cdflow.core.ports import ApprovalChannel
from cdflow.core.state import Database, Event, EventType

logger = logging.getLogger(__name__)

_DECISION_EVENTS = {
    ApprovalDecision.APPROVED: EventType.APPROVAL_GRANTED,
    ApprovalDecision.REJECTED: EventType.APPROVAL_DENIED,
    ApprovalDecision.TIMED_OUT: EventType.APPROVAL_TIMED_OUT,
}


class ApprovalGate:
    """Suspend a branch until an external actor decides."""

    def __init__(
        self,
        channel: ApprovalChannel,
        db: Database,
        default_timeout: float = 3600.0,
        default_rejection: str = "failed",
    ):
        self.channel = channel
        self.db = db
        self.default_timeout = default_timeout
        self.default_rejection = default_rejection

    def rejection_status(self, spec: ApprovalSpec) -> NodeStatus:
        """Status of a gate whose request was rejected or timed out."""
        policy = spec.on_reject or self.default_rejection
        return NodeStatus.ABORTED if policy == "aborted" else NodeStatus.FAILED

    async def request(
        self,
        run_id: int,
        node: StageNode,
        abort_event: asyncio.Event | None = None,
    ) -> ApprovalRequest:
        """Prompt for a decision and wait for it.

        Returns the approved request.

        Raises:
            ApprovalRejected: The request was rejected
            ApprovalTimedOut: No decision arrived in time
            RunAborted: The run was aborted while the request was pending
        """
        spec = node.approval
        request = ApprovalRequest(
            request_id=f"approval-{uuid.uuid4().hex[:8]}",
            run_id=run_id,
            stage=node.path,
            message=spec.message,
            timeout=spec.timeout or self.default_timeout,
            allowed_responders=list(spec.allowed_responders),
        )
        requested = Event(
            run_id=run_id,
            event_type=EventType.APPROVAL_REQUESTED,
            stage=node.path,
            payload={
                "request_id": request.request_id,
                "message": request.message,
                "allowed_responders": request.allowed_responders,
                "timeout": request.timeout,
            },
        )
        await asyncio.to_thread(self.db.append_event, requested)
        logger.info(f"[{node.path}] Waiting for approval: {request.message}")

        aborted = False
        prompt_task = asyncio.ensure_future(self.channel.prompt(request))
        waiters: set[asyncio.Future] = {prompt_task}
        abort_task = None
        if abort_event is not None:
            abort_task = asyncio.ensure_future(abort_event.wait())
            waiters.add(abort_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=request.timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if prompt_task in done:
                decision = self._read_decision(prompt_task, request)
            elif abort_task is not None and abort_task in done:
                aborted = True
                decision = ApprovalDecision.REJECTED
            else:
                decision = ApprovalDecision.TIMED_OUT
        except asyncio.CancelledError:
            request.resolve(ApprovalDecision.REJECTED)
            await self._record(request, reason="cancelled")
            raise
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        request.resolve(decision, request.responder)
        await self._record(request, reason="aborted" if aborted else None)

        if aborted:
            raise RunAborted(f"Run aborted while approval '{request.message}' was pending", node.path)
        if request.decision == ApprovalDecision.TIMED_OUT:
            raise ApprovalTimedOut(
                f"Approval '{request.message}' timed out after {request.timeout}s", node.path
            )
        if request.decision == ApprovalDecision.REJECTED:
            by = f" by {request.responder}" if request.responder else ""
            raise ApprovalRejected(f"Approval '{request.message}' rejected{by}", node.path)

        logger.info(f"[{node.path}] Approved by {request.responder or 'unknown'}")
        return request

    def _read_decision(
        self, prompt_task: asyncio.Future, request: ApprovalRequest
    ) -> ApprovalDecision:
        try:
            decision = prompt_task.result()
        except Exception as e:
            logger.error(f"Approval channel failed for '{request.request_id}': {e}")
            return ApprovalDecision.REJECTED
        if decision is None:
            return ApprovalDecision.TIMED_OUT
        if not decision.is_final:
            logger.warning(
                f"Approval channel returned a non-final decision for '{request.request_id}'"
            )
            return ApprovalDecision.REJECTED
        return decision

    async def _record(self, request: ApprovalRequest, reason: str | None = None) -> None:
        payload = {
            "request_id": request.request_id,
            "decision": request.decision.value,
            "responder": request.responder,
        }
        if reason:
            payload["reason"] = reason
        event = Event(
            run_id=request.run_id,
            event_type=_DECISION_EVENTS[request.decision],
            stage=request.stage,
            status=request.decision.value,
            payload=payload,
        )
        await asyncio.to_thread(self.db.append_event, event)
