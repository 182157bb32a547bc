"""Thread-safe bridge between the engine loop and human approvers.

The engine awaits a future per approval request, so a pending approval never
blocks a thread or holds an execution context. Decisions may be submitted from
any thread (a CLI prompt, a chat bot, a webhook handler); they are marshalled
back onto the engine's event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    """State of an approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"

    @property
    def is_final(self) -> bool:
        return self != ApprovalDecision.PENDING


@dataclass
class ApprovalRequest:
    """A manual promotion request awaiting a decision."""

    request_id: str
    run_id: int
    stage: str
    message: str
    timeout: float
    allowed_responders: list[str] = field(default_factory=list)
    decision: ApprovalDecision = ApprovalDecision.PENDING
    responder: str | None = None
    created_at: float = field(default_factory=time.time)
    decided_at: float | None = None

    def is_authorized(self, responder: str) -> bool:
        """An empty allowed set admits any responder."""
        return not self.allowed_responders or responder in self.allowed_responders

    def resolve(self, decision: ApprovalDecision, responder: str | None = None) -> None:
        """Move to a final state. Final states never change again."""
        if self.decision.is_final:
            return
        self.decision = decision
        self.responder = responder
        self.decided_at = time.time()


class ApprovalBroker:
    """In-process approval channel backed by asyncio futures.

    USAGE (engine side, inside the event loop - SUSPENDS, never blocks):
        decision = await broker.prompt(request)

    USAGE (any thread - NON-BLOCKING):
        for req in broker.get_pending_requests():
            broker.submit_decision(req.request_id, approve=True, responder="alice")
    """

    def __init__(self):
        self._pending: dict[
            str, tuple[ApprovalRequest, asyncio.Future, asyncio.AbstractEventLoop]
        ] = {}
        self._lock = threading.Lock()

    async def prompt(self, request: ApprovalRequest) -> ApprovalDecision | None:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        with self._lock:
            self._pending[request.request_id] = (request, future, loop)
        logger.info(f"Approval '{request.request_id}' pending for stage '{request.stage}'")
        try:
            return await future
        finally:
            with self._lock:
                self._pending.pop(request.request_id, None)

    def get_pending_requests(self) -> list[ApprovalRequest]:
        with self._lock:
            return [request for request, _, _ in self._pending.values()]

    def submit_decision(self, request_id: str, approve: bool, responder: str) -> bool:
        """Submit a decision for a pending request.

        Returns True if the request was pending and the responder is allowed to
        decide it. A refused submission leaves the request pending.
        """
        with self._lock:
            entry = self._pending.get(request_id)
        if entry is None:
            return False

        request, future, loop = entry
        if not request.is_authorized(responder):
            logger.warning(
                f"Responder '{responder}' is not allowed to decide approval '{request_id}'"
            )
            return False

        decision = ApprovalDecision.APPROVED if approve else ApprovalDecision.REJECTED
        loop.call_soon_threadsafe(_settle, future, request, decision, responder)
        return True


def _settle(
    future: asyncio.Future,
    request: ApprovalRequest,
    decision: ApprovalDecision,
    responder: str,
) -> None:
    if future.done():
        return
    request.responder = responder
    future.set_result(decision)
