"""Interactive terminal approval of blocked gates."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from flowforge.core.run import WorkflowRun


@dataclass
class GateDecision:
    approved: bool
    context: dict = field(default_factory=dict)
    reason: str | None = None


class GatePrompter:

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def ask(self, run: WorkflowRun) -> GateDecision:
        """Show the gate a run is blocked on and ask the operator to decide."""
        gate = run.gate
        step_id = gate.step_id if gate else run.current_step
        message = gate.message if gate and gate.message else "Approval required to continue."
        approvers = ", ".join(gate.approvers) if gate and gate.approvers else "anyone"

        panel = Panel(
            f"[bold]Run:[/bold] {run.id}\n"
            f"[bold]Workflow:[/bold] {run.workflow_id} v{run.workflow_version}\n"
            f"[bold]Gate:[/bold] {step_id}\n"
            f"[bold]Approvers:[/bold] {approvers}\n\n"
            f"{message}",
            title="🔔 Approval Required",
            border_style="yellow",
        )
        self.console.print(panel)

        choice = Prompt.ask(
            "[bold yellow]Action[/bold yellow] (a=approve, r=reject, c=approve with context)",
            choices=["a", "r", "c"],
            default="a",
            console=self.console,
        )

        if choice == "r":
            reason = Prompt.ask("[red]Rejection reason[/red]", default="No reason given", console=self.console)
            self.console.print(f"[red]❌ Rejected: {reason}[/red]")
            return GateDecision(approved=False, reason=reason)

        context: dict = {}
        if choice == "c":
            raw = Prompt.ask("[blue]Context (JSON object)[/blue]", default="{}", console=self.console)
            try:
                context = json.loads(raw)
            except ValueError:
                self.console.print("[red]Not valid JSON; approving without context.[/red]")
                context = {}
            if not isinstance(context, dict):
                self.console.print("[red]Context must be a JSON object; approving without context.[/red]")
                context = {}

        self.console.print("[green]✅ Approved[/green]")
        return GateDecision(approved=True, context=context)
