"""
Chiron CLI - Main command-line interface for Chiron.

Interactive chat with crisis screening, saved-session management and
training-data export.
"""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from chiron.agents import AgentRegistry, ResearchAgent, UrlValidator, WikipediaClient
from chiron.config import settings
from chiron.dialogue import (
    AggregatorConfig,
    ConversationOrchestrator,
    MetadataAggregator,
    TurnResult,
    therapeutic_summary,
)
from chiron.exceptions import BackendUnavailableError, ChironError, StorageIOError
from chiron.export import TrainingExporter
from chiron.inference import OllamaClient, RetryConfig
from chiron.logging_config import setup_logging
from chiron.models import Role
from chiron.safety import SAFETY_BANNER, KeywordCrisisDetector
from chiron.storage import SessionStore

app = typer.Typer(
    name="chiron",
    help="Chiron - Mental wellness conversation companion",
    no_args_is_help=True,
)
sessions_app = typer.Typer(help="Manage saved sessions", no_args_is_help=True)
app.add_typer(sessions_app, name="sessions")

console = Console()

QUIT_COMMANDS = {"quit", "exit"}
SUMMARY_COMMAND = "summary"
GOODBYE = "Goodbye! Take care of yourself."


def _init_logging(context: str, console_enabled: Optional[bool] = None) -> None:
    # Fall back to basic logging if the log directory is not writable
    try:
        setup_logging(context=context, console=console_enabled)
    except PermissionError:
        logging.basicConfig(level=logging.INFO)


def _open_store(sessions_dir: Optional[Path]) -> SessionStore:
    return SessionStore(sessions_dir or settings.sessions_directory)


def _build_backend(host: str, model: str) -> OllamaClient:
    return OllamaClient(
        host,
        model,
        timeout=settings.ollama_timeout,
        retry_config=RetryConfig(max_retries=settings.ollama_max_retries),
    )


def _build_wikipedia() -> WikipediaClient:
    return WikipediaClient(
        settings.research_wikipedia_api,
        timeout=settings.research_timeout,
        retry_config=RetryConfig(max_retries=settings.ollama_max_retries),
    )


def _build_agents(backend: OllamaClient, wikipedia: WikipediaClient) -> AgentRegistry:
    registry = AgentRegistry()
    registry.register(
        ResearchAgent(backend, wikipedia, validator=UrlValidator(settings.research_domains))
    )
    return registry


def _fail(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    raise typer.Exit(1)


@app.command()
def chat(
    model: str = typer.Option(None, help="Ollama model to use (default from settings)"),
    host: str = typer.Option(None, help="Ollama server host (default from settings)"),
    resume: str = typer.Option(None, "--resume", help="Continue a saved session by id"),
    no_save: bool = typer.Option(False, "--no-save", help="Do not persist this session"),
    sessions_dir: Path = typer.Option(None, "--sessions-dir", help="Session storage directory"),
    stream: bool = typer.Option(True, "--stream/--no-stream", help="Stream replies as they arrive"),
    research: Optional[bool] = typer.Option(
        None, "--research/--no-research", help="Answer research requests from Wikipedia"
    ),
) -> None:
    """
    Start an interactive chat session.

    Every message is screened for crisis indicators first; a crisis gets the
    safety response with crisis resources and never reaches the model.
    """
    # Console logging would interleave with the conversation
    _init_logging("chat", console_enabled=False)

    if resume and no_save:
        _fail("--resume cannot be combined with --no-save")

    model = model or settings.ollama_model
    host = host or settings.ollama_host

    console.print("[bold blue]Chiron[/bold blue] - mental wellness companion")
    console.print(f"  Model: {model}")
    console.print(f"  Host: {host}")
    use_research = settings.research_enabled if research is None else research
    if use_research:
        console.print("  Research: Wikipedia")
    console.print("Type 'quit' to exit, 'summary' for a session overview\n")

    backend = _build_backend(host, model)
    wikipedia: Optional[WikipediaClient] = None
    try:
        try:
            backend.check_connection()
        except BackendUnavailableError as e:
            console.print(
                "[bold red]Error:[/bold red] Failed to connect to Ollama: "
                f"{escape(str(e))}"
            )
            console.print(f"Make sure Ollama is running and the model '{model}' is available")
            raise typer.Exit(1)

        agents = None
        if use_research:
            wikipedia = _build_wikipedia()
            agents = _build_agents(backend, wikipedia)

        orchestrator = ConversationOrchestrator(
            backend,
            store=None if no_save else _open_store(sessions_dir),
            detector=KeywordCrisisDetector(settings.crisis_keywords),
            aggregator=MetadataAggregator(AggregatorConfig.from_settings(settings)),
            autosave_every=settings.autosave_every_messages,
            context_window=settings.context_window_messages,
            agents=agents,
        )
        if resume:
            session = orchestrator.resume(resume)
            console.print(
                f"[green]✓ Resumed session[/green] {session.id} "
                f"({len(session.messages)} messages)\n"
            )
        elif no_save:
            console.print("[yellow]This session will not be saved[/yellow]\n")

        console.print(SAFETY_BANNER, style="yellow", markup=False)
        console.print()
        _chat_loop(orchestrator, stream)
    except ChironError as e:
        _fail(str(e))
    finally:
        if wikipedia is not None:
            wikipedia.close()
        backend.close()


def _chat_loop(orchestrator: ConversationOrchestrator, stream: bool) -> None:
    try:
        while True:
            try:
                text = console.input("[bold cyan]You:[/bold cyan] ").strip()
            except EOFError:
                console.print()
                break

            if not text:
                continue
            if text.lower() in QUIT_COMMANDS:
                console.print(GOODBYE)
                break
            if text.lower() == SUMMARY_COMMAND:
                console.print(therapeutic_summary(orchestrator.session), markup=False)
                continue

            try:
                result = _run_turn(orchestrator, text, stream)
            except BackendUnavailableError as e:
                console.print(
                    "\n[red]✗ The assistant is unavailable right now:[/red] "
                    f"{escape(str(e))}\n"
                )
                continue
            except StorageIOError as e:
                console.print(f"\n[yellow]⚠ Autosave failed:[/yellow] {escape(str(e))}\n")
                continue

            if result.is_crisis and not _continue_after_crisis():
                console.print("Please prioritize getting professional help. Take care.")
                break
    except KeyboardInterrupt:
        console.print(f"\n{GOODBYE}")
    finally:
        if orchestrator.close():
            console.print(f"[dim]Session saved: {orchestrator.session.id}[/dim]")


def _run_turn(orchestrator: ConversationOrchestrator, text: str, stream: bool) -> TurnResult:
    streamed: list[str] = []

    def show_fragment(fragment: str) -> None:
        if not streamed:
            console.print("\n[bold green]Chiron:[/bold green] ", end="")
        streamed.append(fragment)
        console.print(fragment, end="", markup=False, highlight=False)

    result = orchestrator.process_turn(text, on_fragment=show_fragment if stream else None)

    if result.is_crisis:
        console.print()
        console.print(result.text, style="bold red", markup=False, highlight=False)
    elif streamed:
        # Output filters may append text after the streamed reply
        shown = "".join(streamed)
        if result.text.startswith(shown) and len(result.text) > len(shown):
            console.print(result.text[len(shown):], end="", markup=False, highlight=False)
        console.print()
    else:
        console.print("\n[bold green]Chiron:[/bold green] ", end="")
        console.print(result.text, markup=False, highlight=False)
    console.print()
    return result


def _continue_after_crisis() -> bool:
    try:
        answer = console.input("Would you like to continue our conversation? (yes/no) ")
    except EOFError:
        return False
    return not answer.strip().lower().startswith("n")


@sessions_app.command("list")
def list_sessions(
    sessions_dir: Path = typer.Option(None, "--sessions-dir", help="Session storage directory"),
) -> None:
    """List saved sessions, most recently updated first."""
    _init_logging("cli")
    try:
        summaries = _open_store(sessions_dir).list()
    except ChironError as e:
        _fail(str(e))

    if not summaries:
        console.print("[yellow]No saved sessions[/yellow]")
        return

    table = Table(title="Saved sessions")
    table.add_column("ID", no_wrap=True)
    table.add_column("Updated")
    table.add_column("Messages", justify="right")
    table.add_column("Phase")
    table.add_column("Concerns")
    table.add_column("Preview")
    for summary in summaries:
        table.add_row(
            summary.id,
            summary.last_updated.strftime("%Y-%m-%d %H:%M"),
            str(summary.message_count),
            summary.therapy_phase.value,
            ", ".join(summary.primary_concerns) or "-",
            summary.preview,
        )
    console.print(table)
    console.print(f"{len(summaries)} session(s)")


@sessions_app.command("show")
def show_session(
    session_id: str = typer.Argument(..., help="Session id"),
    sessions_dir: Path = typer.Option(None, "--sessions-dir", help="Session storage directory"),
) -> None:
    """Print a saved session's transcript and aggregates."""
    _init_logging("cli")
    try:
        session = _open_store(sessions_dir).load(session_id)
    except ChironError as e:
        _fail(str(e))

    metadata = session.therapeutic_metadata
    quality = session.session_quality
    console.print(f"[bold blue]Session:[/bold blue] {session.id}")
    console.print(f"  Created: {session.created_at.isoformat()}")
    console.print(f"  Updated: {session.last_updated.isoformat()}")
    console.print(f"  Phase: {metadata.therapy_phase.value}")
    console.print(f"  Concerns: {', '.join(sorted(metadata.primary_concerns)) or '-'}")
    console.print(f"  Techniques: {', '.join(sorted(metadata.intervention_techniques)) or '-'}")
    console.print(f"  Crisis indicators: {metadata.crisis_indicator_count}")
    console.print(
        f"  Alliance: {quality.alliance_score:.2f}  "
        f"Coherence: {quality.coherence_score:.2f}  "
        f"Safety compliant: {'yes' if quality.safety_compliance_flag else 'no'}"
    )
    console.print()
    for message in session.messages:
        style = "red" if message.role == Role.SYSTEM_SAFETY else "cyan"
        console.print(f"[{style}]{message.role.value}[/{style}] ", end="")
        console.print(message.content, markup=False, highlight=False)


@sessions_app.command("delete")
def delete_session(
    session_id: str = typer.Argument(..., help="Session id"),
    sessions_dir: Path = typer.Option(None, "--sessions-dir", help="Session storage directory"),
) -> None:
    """Delete a saved session."""
    _init_logging("cli")
    try:
        _open_store(sessions_dir).delete(session_id)
    except ChironError as e:
        _fail(str(e))
    console.print(f"[green]✓ Deleted[/green] {session_id}")


@app.command()
def export(
    output: Path = typer.Argument(..., help="Output JSONL file"),
    session: Optional[list[str]] = typer.Option(
        None, "--session", help="Session id to export (repeatable; default all)"
    ),
    append: bool = typer.Option(False, "--append", help="Append to an existing file"),
    sessions_dir: Path = typer.Option(None, "--sessions-dir", help="Session storage directory"),
) -> None:
    """
    Export saved sessions as training examples.

    Writes one JSON object per user/assistant exchange. Crisis turns are
    never exported.
    """
    _init_logging("cli")
    try:
        exporter = TrainingExporter(
            _open_store(sessions_dir),
            MetadataAggregator(AggregatorConfig.from_settings(settings)),
        )
        report = exporter.write_jsonl(output, session_ids=session or None, append=append)
    except ChironError as e:
        _fail(str(e))

    for session_id, reason in sorted(report.skipped.items()):
        console.print(f"[yellow]⊘ Skipped[/yellow] {escape(session_id)}: {escape(reason)}")

    console.print()
    console.print("[bold]Summary:[/bold]")
    console.print(f"  Sessions exported: {report.sessions_exported}")
    console.print(f"  Sessions skipped: {len(report.skipped)}")
    console.print(f"  Examples written: {report.examples_written}")
    console.print(f"  Output: {output}")


if __name__ == "__main__":
    app()
