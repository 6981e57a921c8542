"""
Grading Pipeline CLI Application.

Provides a command-line interface for running the answer-grading
pipeline over a JSON data file and for administrative re-queues.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from grading_pipeline.config import Settings, get_settings
from grading_pipeline.grading import LLMClient, ScoringOrchestrator
from grading_pipeline.lifecycle import (
    AnswerLifecycleCoordinator,
    AnswerState,
    InvalidTransitionError,
)
from grading_pipeline.models import Answer, RequeueOutcome, RequeueSummary
from grading_pipeline.storage import InMemoryAnswerRepository, RecordNotFoundError
from grading_pipeline.transcription import TranscriptionQueue, WhisperTranscriber

# Create Typer app
app = typer.Typer(
    name="grading-pipeline",
    help="AI grading for written and spoken exam answers",
    add_completion=False,
)

console = Console()


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log at DEBUG level"),
    ] = False,
) -> None:
    """Configure logging before any command runs."""
    try:
        level = "DEBUG" if verbose else get_settings().log_level
    except ValidationError:
        # Missing API key; commands report it themselves
        level = "INFO"
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_repository(data_file: Path) -> InMemoryAnswerRepository:
    if not data_file.exists():
        console.print(f"[red]Error:[/red] Data file not found: {data_file}")
        raise typer.Exit(1)
    try:
        return InMemoryAnswerRepository.load(data_file)
    except (json.JSONDecodeError, ValidationError) as e:
        console.print(f"[red]Data Error:[/red] {e}")
        raise typer.Exit(1)


def _build_coordinator(
    repository: InMemoryAnswerRepository, settings: Settings
) -> AnswerLifecycleCoordinator:
    speech = WhisperTranscriber(settings)
    orchestrator = ScoringOrchestrator(repository, LLMClient(settings), speech, settings)
    queue = TranscriptionQueue(speech, repository, settings)
    return AnswerLifecycleCoordinator(repository, orchestrator, queue, settings)


@app.command()
def grade(
    data_file: Annotated[Path, typer.Argument(help="JSON file with answers, questions and criteria")],
    answer_id: Annotated[
        Optional[int],
        typer.Option("--answer-id", "-a", help="Grade a single answer"),
    ] = None,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write the updated data file here"),
    ] = None,
) -> None:
    """
    Submit answers to the grading pipeline and wait for the results.

    Audio answers are transcribed first, then every answer is scored
    against the criteria configured for its question type.
    """
    settings = get_settings()
    repository = _load_repository(data_file)
    answer_ids = [answer_id] if answer_id is not None else repository.answer_ids()

    async def run() -> tuple[list[Answer], dict[int, AnswerState | None]]:
        coordinator = _build_coordinator(repository, settings)
        for aid in answer_ids:
            try:
                await coordinator.submit(aid)
            except InvalidTransitionError as e:
                console.print(f"[yellow]Skipped:[/yellow] {e}")
        await coordinator.join()
        answers = [await repository.get_answer(aid) for aid in answer_ids]
        return answers, {aid: await coordinator.current_state(aid) for aid in answer_ids}

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(f"Grading {len(answer_ids)} answer(s)...", total=None)
            answers, states = asyncio.run(run())
    except RecordNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    _display_answers(answers, states)

    if output:
        saved_path = repository.save(output)
        console.print(f"\n[green]Results saved to:[/green] {saved_path}")


@app.command()
def requeue(
    data_file: Annotated[Path, typer.Argument(help="JSON file with answers, questions and criteria")],
    limit: Annotated[
        Optional[int],
        typer.Option("--limit", "-l", min=1, help="Maximum number of answers to re-run"),
    ] = None,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write the updated data file here"),
    ] = None,
) -> None:
    """
    Re-run scoring for answers that have no score yet.

    Speaking answers without a transcription or audio are skipped.
    """
    settings = get_settings()
    repository = _load_repository(data_file)

    async def run() -> RequeueSummary:
        coordinator = _build_coordinator(repository, settings)
        return await coordinator.requeue_pending(limit)

    summary = asyncio.run(run())
    _display_requeue(summary)

    if output:
        saved_path = repository.save(output)
        console.print(f"\n[green]Results saved to:[/green] {saved_path}")


@app.command()
def criteria(
    data_file: Annotated[Path, typer.Argument(help="JSON file with answers, questions and criteria")],
) -> None:
    """
    List the scoring criteria configured per question type.
    """
    repository = _load_repository(data_file)
    rows = repository.to_dict()["criteria"]

    if not rows:
        console.print("[yellow]No scoring criteria configured[/yellow]")
        return

    table = Table(title="Scoring Criteria")
    table.add_column("Aptis Type", justify="right")
    table.add_column("Question Type", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Max Score", justify="right")
    table.add_column("Description")

    for row in sorted(rows, key=lambda r: (r["aptis_type_id"], r["question_type_id"], r["id"])):
        table.add_row(
            str(row["aptis_type_id"]),
            str(row["question_type_id"]),
            row["name"],
            str(row["weight"]),
            str(row["max_score"]),
            (row.get("description") or "")[:50],
        )

    console.print(table)


@app.command()
def health() -> None:
    """
    Check if the grading pipeline is operational.

    Verifies configuration and API connectivity.
    """
    try:
        settings = get_settings()
        console.print("[bold]Grading Pipeline Health Check[/bold]\n")

        # Check settings
        console.print("[dim]Checking configuration...[/dim]")
        console.print(f"  API Base URL: {settings.openai_base_url}")
        console.print(f"  Scoring Model: {settings.scoring_model}")
        console.print(f"  Transcription Model: {settings.transcription_model}")
        console.print(f"  Retry Backoff: {settings.retry_backoff_mode.value}")

        # Check API connectivity
        console.print("\n[dim]Checking API connectivity...[/dim]")
        if asyncio.run(LLMClient(settings).health_check()):
            console.print("[green]✓ API is reachable[/green]")
        else:
            console.print("[red]✗ API is not reachable[/red]")
            raise typer.Exit(1)

        console.print("\n[green]All systems operational[/green]")

    except ValidationError as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(1)


def _display_answers(answers: list[Answer], states: dict[int, AnswerState | None]) -> None:
    """Display graded answers in a formatted table."""
    table = Table(title="Grading Results")
    table.add_column("Answer", justify="right")
    table.add_column("Type")
    table.add_column("State", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Feedback")

    for answer in answers:
        state = states.get(answer.id)
        score = "-" if answer.score is None else str(answer.score)
        if answer.max_score is not None and answer.score is not None:
            score = f"{answer.score}/{answer.max_score}"
        color = "yellow" if answer.needs_review else "green" if answer.score is not None else "dim"
        table.add_row(
            str(answer.id),
            answer.answer_type.value,
            state.value if state else "-",
            f"[{color}]{score}[/{color}]",
            (answer.ai_feedback or "").split("\n")[0][:60],
        )

    console.print(table)

    flagged = sum(1 for a in answers if a.needs_review)
    if flagged:
        console.print(f"[yellow]⚠ {flagged} answer(s) flagged for human review[/yellow]")


def _display_requeue(summary: RequeueSummary) -> None:
    """Display the tallies of a re-queue run."""
    console.print(
        Panel(
            f"Found: {summary.total_found}\n"
            f"[green]Scored: {summary.scored}[/green]\n"
            f"[red]Failed: {summary.failed}[/red]\n"
            f"[yellow]Skipped: {summary.skipped}[/yellow]",
            title="Re-queue Summary",
        )
    )

    details = [i for i in summary.items if i.outcome != RequeueOutcome.SCORED]
    if details:
        table = Table(title="Not Scored")
        table.add_column("Answer", justify="right")
        table.add_column("Skill")
        table.add_column("Outcome")
        table.add_column("Reason")
        for item in details:
            skill = item.skill.value if item.skill else "-"
            table.add_row(str(item.answer_id), skill, item.outcome.value, item.reason or "")
        console.print(table)


if __name__ == "__main__":
    app()
