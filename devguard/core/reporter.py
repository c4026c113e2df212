"""Aggregate per-step outcomes into the final hardening report."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from devguard.core.files import atomic_write
from devguard.models.changes import OperationResult, StepStatus
from devguard.models.report import HardeningReport


logger = logging.getLogger(__name__)

STATUS_STYLES = {
    StepStatus.SUCCEEDED: "bold green",
    StepStatus.WARNING: "bold yellow",
    StepStatus.PLANNED: "bold cyan",
    StepStatus.FAILED: "bold red",
    StepStatus.SKIPPED: "dim",
}


class ResultReporter:
    """The only component allowed to produce the run's human-readable conclusion."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def build(self, results: Iterable[OperationResult], *, dry_run: bool = False) -> HardeningReport:
        steps = list(results)
        failures: List[str] = []
        warnings: List[str] = []
        next_steps: List[str] = []
        for result in steps:
            failures.extend(f"{result.step}: {message}" for message in result.failures)
            warnings.extend(f"{result.step}: {message}" for message in result.warnings)
            for hint in result.next_steps:
                if hint not in next_steps:
                    next_steps.append(hint)

        if any(result.status is StepStatus.FAILED for result in steps):
            status = "Failed"
        elif dry_run:
            status = "Planned"
        else:
            status = "Succeeded"

        report = HardeningReport(
            status=status,
            dry_run=dry_run,
            steps=steps,
            applied_changes=[change for result in steps for change in result.applied],
            planned_changes=[change for result in steps for change in result.planned],
            failures=failures,
            warnings=warnings,
            next_steps=next_steps,
        )
        logger.info("Hardening report: %s (%s steps)", report.status, len(steps))
        return report

    def render(self, report: HardeningReport) -> None:
        table = Table(title="devguard hardening report")
        table.add_column("Step")
        table.add_column("Status")
        table.add_column("Changes", justify="right")
        table.add_column("Details")

        for result in report.steps:
            changes = len(result.planned) if report.dry_run else len(result.applied)
            details = result.failures + result.warnings or result.diagnostics[-1:]
            table.add_row(
                result.step,
                f"[{STATUS_STYLES[result.status]}]{result.status.value}[/]",
                str(changes),
                "\n".join(details),
            )
        self.console.print(table)

        changes = report.planned_changes if report.dry_run else report.applied_changes
        if changes:
            heading = "Planned changes (nothing was applied)" if report.dry_run else "Applied changes"
            self.console.print(Panel.fit(
                "\n".join(f"- {change.describe()}\n    {change.rationale}" for change in changes),
                title=heading,
            ))

        notices = [note for result in report.steps for note in result.diagnostics if not note.startswith("state: ")]
        if notices:
            self.console.print(Panel.fit("\n".join(notices), title="Notes"))

        if report.next_steps:
            self.console.print(Panel.fit(
                "\n".join(f"{i}. {hint}" for i, hint in enumerate(report.next_steps, start=1)),
                title="[bold]Next steps[/bold]",
                border_style="red" if report.status == "Failed" else "yellow",
            ))

        style = {"Succeeded": "bold green", "Planned": "bold cyan", "Failed": "bold red"}[report.status]
        self.console.print(f"\nOverall status: [{style}]{report.status}[/]")

    def save(self, report: HardeningReport, path: Path) -> Path:
        atomic_write(path, report.model_dump_json(indent=2).encode("utf-8"), mode=0o600)
        logger.info("Saved hardening report to %s", path)
        return path

    @staticmethod
    def load(path: Path) -> HardeningReport:
        return HardeningReport.model_validate_json(path.read_text(encoding="utf-8"))


__all__ = ["ResultReporter"]
