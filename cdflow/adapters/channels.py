"""Approval and notification channels for terminal use."""

from __future__ import annotations

import asyncio
import logging
import threading

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

from cdflow.core.interaction import ApprovalBroker, ApprovalDecision, ApprovalRequest

logger = logging.getLogger(__name__)


class ConsoleApprovalChannel:
    """Ask for approval on the terminal.

    The prompt runs on a daemon thread and feeds an ApprovalBroker, so the
    engine loop keeps running while the question is on screen and an
    unanswered prompt never blocks interpreter exit.
    """

    def __init__(self, console: Console | None = None, broker: ApprovalBroker | None = None):
        self.console = console or Console()
        self.broker = broker or ApprovalBroker()

    async def prompt(self, request: ApprovalRequest) -> ApprovalDecision | None:
        thread = threading.Thread(
            target=self._ask,
            args=(request,),
            name=f"approval-{request.request_id}",
            daemon=True,
        )
        decision = asyncio.ensure_future(self.broker.prompt(request))
        # Let the broker register the request before anyone can answer it
        await asyncio.sleep(0)
        thread.start()
        return await decision

    def _ask(self, request: ApprovalRequest) -> None:
        allowed = ", ".join(request.allowed_responders) or "anyone"
        self.console.print(
            Panel(
                f"{escape(request.message)}\n\n"
                f"[dim]Stage:[/] {escape(request.stage)}\n"
                f"[dim]Allowed responders:[/] {escape(allowed)}\n"
                f"[dim]Timeout:[/] {request.timeout:.0f}s",
                title="[bold red]Approval Required[/bold red]",
            )
        )
        while True:
            responder = Prompt.ask("Your name", console=self.console)
            approved = Confirm.ask("Approve?", default=False, console=self.console)
            if self.broker.submit_decision(request.request_id, approved, responder):
                return
            if not any(
                r.request_id == request.request_id for r in self.broker.get_pending_requests()
            ):
                return
            self.console.print(f"[red]{escape(responder)} may not decide this approval[/red]")


class AutoApprovalChannel:
    """Decide every request immediately. For unattended runs and tests."""

    def __init__(self, responder: str = "auto", approve: bool = True):
        self.responder = responder
        self.approve = approve

    async def prompt(self, request: ApprovalRequest) -> ApprovalDecision | None:
        if not request.is_authorized(self.responder):
            logger.warning(
                f"Auto-approver '{self.responder}' is not allowed to decide "
                f"'{request.request_id}'; leaving it undecided"
            )
            return None
        request.responder = self.responder
        return ApprovalDecision.APPROVED if self.approve else ApprovalDecision.REJECTED


class ConsoleNotificationChannel:
    """Print run notifications to the terminal and the log."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    async def send(self, channel: str, message: str) -> None:
        logger.info(f"Notification to {channel}: {message}")
        style = "green" if " SUCCEEDED" in message else "red"
        self.console.print(
            Panel(escape(message), title=f"[bold]{escape(channel)}[/bold]", border_style=style)
        )
