"""Command line interface for the wonbiz application."""

from __future__ import annotations

import asyncio
import json
import wave
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Dict, Iterable, Optional, TypeVar

import typer
import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import config as config_mod
from .auth import issue_token
from .chat import ChatConversationManager
from .client import ApiClient
from .codec import guess_mime_type
from .config import ConfigError
from .errors import WonbizError
from .logging_utils import setup_logging
from .models import APP_DIR, ROLE_USER, AudioBlob, Config, LLMConfig, Note
from .pipeline import NotePipeline, PipelineResult
from .search import HybridSearchEngine

app = typer.Typer(add_completion=False, help="Voice notes: record, analyse, search and chat with your notes.")
console = Console()

T = TypeVar("T")


def _load() -> Config:
    try:
        cfg = config_mod.load_config()
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    setup_logging(str(APP_DIR / "logs"), cfg.log_level)
    return cfg


def _run(awaitable: Awaitable[T]) -> T:
    try:
        return asyncio.run(awaitable)
    except WonbizError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _llm_config(cfg: Config, provider: Optional[str], model: Optional[str]) -> LLMConfig:
    if provider and not model:
        return LLMConfig.for_provider(provider)
    return LLMConfig(provider=provider or cfg.llm_provider, model=model or cfg.llm_model).validate()


def _format_timestamp(value: int) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M")


def _probe_duration(path: Path) -> Optional[float]:
    if path.suffix.lower() != ".wav":
        return None
    try:
        with wave.open(str(path), "rb") as handle:
            return handle.getnframes() / float(handle.getframerate())
    except (wave.Error, EOFError):
        return None


def _status(message: str) -> None:
    console.print(f"[dim]{message}[/dim]")


def _print_note(note: Note) -> None:
    meta = f"{_format_timestamp(note.created_at)}  |  {note.source_type}  |  {note.duration:.1f}s"
    if note.llm_provider:
        meta += f"  |  {note.llm_provider}"
    body = f"[dim]{meta}[/dim]\n\n[green]{note.summary}[/green]"
    if note.tags:
        body += "\n\n" + " ".join(f"#{tag}" for tag in note.tags)
    body += f"\n\n{note.transcript}"
    console.print(Panel(body, title=note.title or note.id, subtitle=note.id))


def _print_notes(notes: Iterable[Note], show_score: bool = False) -> None:
    table = Table()
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Tags")
    table.add_column("Created")
    if show_score:
        table.add_column("Score", justify="right")
    for note in notes:
        row = [note.id, note.title, ", ".join(note.tags), _format_timestamp(note.created_at)]
        if show_score:
            row.append("-" if note.vector_score is None else f"{note.vector_score:.3f}")
        table.add_row(*row)
    console.print(table)


def _report_result(result: PipelineResult) -> None:
    _print_note(result.note)
    if not result.saved:
        typer.secho(
            "The note could not be saved to the server; it was kept in memory only.",
            fg=typer.colors.YELLOW,
            err=True,
        )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    if version:
        typer.echo("wonbiz v0.3.0")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def record(
    audio: Path = typer.Argument(..., exists=True, readable=True, help="Path to the recorded audio file."),
    duration: Optional[float] = typer.Option(None, "--duration", min=0.0, help="Recording length in seconds."),
    provider: Optional[str] = typer.Option(None, "--provider", help="LLM provider (openai, grok, gemini)."),
    model: Optional[str] = typer.Option(None, "--model", help="Model id for the chosen provider."),
    language: Optional[str] = typer.Option(None, "--language", help="Transcription hint (en or zh)."),
) -> None:
    """Turn a recording into a note: transcribe, analyse, embed and save it."""

    cfg = _load()
    if duration is None:
        duration = _probe_duration(audio)
    if duration is None:
        typer.secho("Could not determine the recording length; pass --duration.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    blob = AudioBlob(data=audio.read_bytes(), mime_type=guess_mime_type(audio))

    async def _record() -> PipelineResult:
        llm_config = _llm_config(cfg, provider, model)
        async with ApiClient(cfg) as client:
            pipeline = NotePipeline(client, client, client, client)
            return await pipeline.create_note(blob, duration, llm_config, language or cfg.language, _status)

    _report_result(_run(_record()))


@app.command("import-text")
def import_text(
    path: Path = typer.Argument(..., exists=True, readable=True, help="Text extracted from a document."),
    provider: Optional[str] = typer.Option(None, "--provider", help="LLM provider (openai, grok, gemini)."),
    model: Optional[str] = typer.Option(None, "--model", help="Model id for the chosen provider."),
    language: Optional[str] = typer.Option(None, "--language", help="Language of the document (en or zh)."),
) -> None:
    """Create a note from already extracted document text."""

    cfg = _load()
    text = path.read_text(encoding="utf-8")

    async def _import() -> PipelineResult:
        llm_config = _llm_config(cfg, provider, model)
        async with ApiClient(cfg) as client:
            pipeline = NotePipeline(client, client, client, client)
            return await pipeline.create_text_note(text, llm_config, language or cfg.language, _status)

    _report_result(_run(_import()))


@app.command("list")
def list_command() -> None:
    """List stored notes."""

    cfg = _load()

    async def _list() -> list:
        async with ApiClient(cfg) as client:
            return await client.list_notes()

    notes = _run(_list())
    if not notes:
        typer.echo("No notes found. Use `wonbiz record` to create one.")
        return
    _print_notes(notes)


@app.command()
def show(note_id: str = typer.Argument(..., help="Identifier of the note to display.")) -> None:
    """Show a stored note."""

    cfg = _load()

    async def _show() -> Note:
        async with ApiClient(cfg) as client:
            return await client.get_note(note_id)

    _print_note(_run(_show()))


@app.command()
def delete(note_id: str = typer.Argument(..., help="Identifier of the note to delete.")) -> None:
    """Delete a stored note."""

    cfg = _load()

    async def _delete() -> None:
        async with ApiClient(cfg) as client:
            await client.delete_note(note_id)

    _run(_delete())
    typer.secho(f"Note {note_id} deleted.", fg=typer.colors.BLUE)


@app.command()
def regenerate(
    note_id: str = typer.Argument(..., help="Identifier of the note to regenerate."),
    provider: Optional[str] = typer.Option(None, "--provider", help="LLM provider (openai, grok, gemini)."),
    model: Optional[str] = typer.Option(None, "--model", help="Model id for the chosen provider."),
) -> None:
    """Re-run transcription and analysis for a note with the chosen model."""

    cfg = _load()

    async def _regenerate() -> Note:
        llm_config = _llm_config(cfg, provider, model)
        async with ApiClient(cfg) as client:
            _status(f"Regenerating with {llm_config.provider} / {llm_config.model}...")
            await client.regenerate_note(note_id, llm_config)
            return await client.get_note(note_id)

    _print_note(_run(_regenerate()))


@app.command()
def search(query: str = typer.Argument(..., help="Text to look for.")) -> None:
    """Search notes by keyword and meaning."""

    cfg = _load()

    async def _search() -> tuple:
        async with ApiClient(cfg) as client:
            engine = HybridSearchEngine(client)
            notes = await client.list_notes()
            return await engine.search(query, notes), engine.error

    results, error = _run(_search())
    if error:
        typer.secho(f"Semantic search unavailable, showing keyword matches only: {error}", fg=typer.colors.YELLOW)
    if not results:
        typer.echo("No matching notes.")
        return
    _print_notes(results, show_score=True)


@app.command()
def chat(
    session_id: Optional[str] = typer.Option(None, "--session", help="Resume a specific chat session."),
    provider: Optional[str] = typer.Option(None, "--provider", help="LLM provider (openai, grok, gemini)."),
    model: Optional[str] = typer.Option(None, "--model", help="Model id for the chosen provider."),
) -> None:
    """Chat with your notes. Type /new for a fresh session and /exit to leave."""

    cfg = _load()

    async def _chat() -> None:
        llm_config = _llm_config(cfg, provider, model)
        async with ApiClient(cfg) as client:
            manager = ChatConversationManager(client, client, client, llm_config, language=cfg.language)
            await manager.load()
            if session_id:
                manager.select_session(session_id)
            elif manager.current is None:
                manager.new_session()

            for message in manager.current.messages:
                speaker = "You" if message.role == ROLE_USER else "Assistant"
                console.print(f"[bold]{speaker}:[/bold] {message.text}")

            while True:
                text = await asyncio.to_thread(console.input, "[bold cyan]You:[/bold cyan] ")
                command = text.strip()
                if command in ("/exit", "/quit"):
                    break
                if command == "/new":
                    manager.new_session()
                    console.print("[dim]Started a new chat.[/dim]")
                    continue
                if not command:
                    continue
                with console.status("Thinking..."):
                    reply = await manager.send_message(text)
                console.print(f"[bold green]Assistant:[/bold green] {reply.text}")
                if manager.sync_error:
                    typer.secho(f"Chat history not saved: {manager.sync_error}", fg=typer.colors.YELLOW, err=True)

    try:
        _run(_chat())
    except (KeyboardInterrupt, EOFError):
        typer.echo()


@app.command()
def sessions() -> None:
    """List chat sessions, most recently active first."""

    cfg = _load()

    async def _sessions() -> list:
        async with ApiClient(cfg) as client:
            return await client.list_sessions()

    rows = _run(_sessions())
    if not rows:
        typer.echo("No chat sessions yet. Use `wonbiz chat` to start one.")
        return
    table = Table()
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")
    for session in rows:
        table.add_row(session.id, session.title, str(len(session.messages)), _format_timestamp(session.updated_at))
    console.print(table)


@app.command()
def health() -> None:
    """Check connectivity to the configured API server."""

    cfg = _load()

    async def _health() -> dict:
        async with ApiClient(cfg) as client:
            return await client.health()

    payload = _run(_health())
    for key in ("status", "mongodb", "voyage", "assemblyai", "llamaindex"):
        typer.echo(f"{key}: {payload.get(key, 'unknown')}")


@app.command()
def config(
    server_url: Optional[str] = typer.Option(None, help="Base URL of the wonbiz API server."),
    server_token: Optional[str] = typer.Option(None, help="Bearer token for the API server."),
    llm_provider: Optional[str] = typer.Option(None, help="Default LLM provider (openai, grok, gemini)."),
    llm_model: Optional[str] = typer.Option(None, help="Default model for the LLM provider."),
    language: Optional[str] = typer.Option(None, help="Preferred language (en or zh)."),
    db_path: Optional[str] = typer.Option(None, help="SQLite database used by `wonbiz serve`."),
    verify_ssl: Optional[bool] = typer.Option(
        None,
        "--verify-ssl/--no-verify-ssl",
        help="Toggle TLS certificate verification for API calls.",
    ),
    api_timeout: Optional[float] = typer.Option(None, help="HTTP client timeout (seconds) for API calls."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "server_url": server_url,
            "server_token": server_token,
            "llm_provider": llm_provider,
            "llm_model": llm_model,
            "language": language,
            "db_path": db_path,
            "verify_ssl": verify_ssl,
            "api_timeout": api_timeout,
        }.items()
        if value is not None
    }

    if show or not updates:
        cfg = _load()
        typer.echo(json.dumps(asdict(cfg), indent=2, default=str))
        return

    try:
        if llm_provider and not llm_model:
            updates["llm_model"] = LLMConfig.for_provider(llm_provider).model
        current = config_mod.load_config()
        LLMConfig(
            provider=str(updates.get("llm_provider", current.llm_provider)),
            model=str(updates.get("llm_model", current.llm_model)),
        ).validate()
        config_mod.update_config(**updates)
    except (ConfigError, WonbizError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


@app.command()
def login(
    token: Optional[str] = typer.Option(
        None,
        "--token",
        help="API token for authenticating with the wonbiz server.",
        prompt=True,
        hide_input=True,
    ),
) -> None:
    """Persist the API bearer token for server requests."""

    try:
        config_mod.update_config(server_token=token or None)
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho("Server token stored.", fg=typer.colors.BLUE)


@app.command()
def token(
    user_id: str = typer.Argument(..., help="User the token is issued for."),
    username: Optional[str] = typer.Option(None, "--username", help="Display name stored in the token."),
) -> None:
    """Issue a bearer token signed with the server secret."""

    cfg = _load()
    typer.echo(issue_token(cfg, user_id, username))


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(3001, "--port", help="Port to listen on."),
) -> None:  # pragma: no cover - starts a server
    """Run the API server."""

    cfg = _load()
    config_mod.ensure_db_dir(cfg)
    uvicorn.run("wonbiz.api:create_app", factory=True, host=host, port=port, log_level=cfg.log_level.lower())


if __name__ == "__main__":  # pragma: no cover
    app()
