"""
CLI interface for velvet-chat.

Provides command-line access to usage status, character profiles,
stored histories and a one-shot chat turn.
"""

import asyncio
import logging
import sys
from dataclasses import replace
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from velvet_chat.config.loader import AppConfig, default_config, load_config
from velvet_chat.core.retry import RetryingRequestExecutor
from velvet_chat.core.session import ConversationSession, TurnState
from velvet_chat.core.usage_guard import UsageGuard
from velvet_chat.sdk.openai_client import OpenAIChatProvider, generate_avatar
from velvet_chat.storage.db import DEFAULT_DB_PATH
from velvet_chat.storage.models import CharacterProfile, IntimacyLevel, Role
from velvet_chat.storage.repository import (
    HistoryStore,
    KeyValueUsageStore,
    ProfileStore,
    SQLiteKeyValueStore,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_RELATIONSHIP = "Stranger"
DEFAULT_TRAITS = "A mysterious individual with a charming smile."


def _load_settings(ctx: typer.Context) -> AppConfig:
    path = ctx.obj.get("config_path") if ctx.obj else None
    return load_config(path) if path else default_config()


def _db_path(ctx: typer.Context) -> str:
    return (ctx.obj or {}).get("db_path", DEFAULT_DB_PATH)


def _build_guard(ctx: typer.Context, config: AppConfig) -> UsageGuard:
    store = SQLiteKeyValueStore(_db_path(ctx))
    return UsageGuard(KeyValueUsageStore(store), limits=config.limits)


def _profile_store(ctx: typer.Context, config: AppConfig) -> ProfileStore:
    store = SQLiteKeyValueStore(_db_path(ctx))
    return ProfileStore(store, HistoryStore(store, limit=config.history.limit))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """velvet-chat CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    ctx.obj = {"db_path": db_path, "config_path": config_path}
    if ctx.invoked_subcommand is None:
        console.print("velvet-chat - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the velvet-chat database."""
    try:
        initialize_schema(_db_path(ctx))
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(ctx: typer.Context):
    """Show local rate-limit usage."""
    try:
        config = _load_settings(ctx)
        status = _build_guard(ctx, config).get_status()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="API Usage")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Requests (last 60s)", f"{status.active_count}/{status.active_limit}")
    table.add_row("Requests today", f"{status.daily_count}/{status.daily_limit}")
    table.add_row("Cooldown remaining", f"{status.cooldown_remaining_seconds}s")
    verdict = "[red]BLOCKED[/]" if status.is_blocked else "[green]OK[/]"
    table.add_row("Status", verdict)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(ctx: typer.Context, profile_id: str = typer.Argument(..., help="Profile id")):
    """Show the stored conversation for a profile."""
    try:
        config = _load_settings(ctx)
        store = HistoryStore(SQLiteKeyValueStore(_db_path(ctx)), limit=config.history.limit)
        messages = store.get(profile_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not messages:
        console.print(f"\n[bold yellow]No messages stored for {profile_id}[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"History: {profile_id}")
    table.add_column("Time")
    table.add_column("Role")
    table.add_column("Message")
    table.add_column("Reactions")
    for message in messages:
        when = datetime.fromtimestamp(message.timestamp / 1000).strftime("%Y-%m-%d %H:%M")
        role = "[cyan]you[/]" if message.role == Role.USER else "[magenta]model[/]"
        table.add_row(when, role, escape(message.content), " ".join(message.reactions))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def clear(ctx: typer.Context, profile_id: str = typer.Argument(..., help="Profile id")):
    """Delete the stored conversation for a profile."""
    try:
        HistoryStore(SQLiteKeyValueStore(_db_path(ctx))).delete(profile_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] History cleared for {profile_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def create(
    ctx: typer.Context,
    profile_id: str = typer.Argument(..., help="Profile id"),
    name: str = typer.Option(..., "--name", "-n", help="Character name"),
    relationship: str = typer.Option(DEFAULT_RELATIONSHIP, "--relationship", "-r", help="Relationship title"),
    traits: str = typer.Option(DEFAULT_TRAITS, "--traits", "-t", help="Character description"),
    tags: Optional[str] = typer.Option(None, "--tags", help="Comma-separated personality tags"),
    explicit: bool = typer.Option(False, "--explicit", help="Use the bold persona mode"),
    avatar: bool = typer.Option(False, "--avatar", help="Generate a profile picture")
):
    """Create or update a character profile."""
    try:
        config = _load_settings(ctx)
        profile = CharacterProfile(
            id=profile_id,
            name=name,
            relationship=relationship,
            traits=traits,
            intimacy_level=IntimacyLevel.EXPLICIT if explicit else IntimacyLevel.NORMAL,
            tags=tuple(t.strip() for t in (tags or "").split(",") if t.strip())
        )
        if avatar:
            url = asyncio.run(generate_avatar(profile, model_config=config.model))
            profile = replace(profile, avatar_url=url)
        _profile_store(ctx, config).save(profile)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Saved profile {profile_id} ({escape(profile.name)})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def profiles(ctx: typer.Context):
    """List stored character profiles, newest first."""
    try:
        stored = _profile_store(ctx, _load_settings(ctx)).list_all()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not stored:
        console.print("\n[bold yellow]No profiles stored[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Profiles")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Relationship")
    table.add_column("Mode")
    table.add_column("Tags")
    for profile in stored:
        table.add_row(
            profile.id,
            escape(profile.name),
            escape(profile.relationship),
            profile.intimacy_level.value,
            ", ".join(profile.tags)
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def delete(ctx: typer.Context, profile_id: str = typer.Argument(..., help="Profile id")):
    """Delete a character profile and its conversation."""
    try:
        _profile_store(ctx, _load_settings(ctx)).delete(profile_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Profile {profile_id} deleted")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def send(
    ctx: typer.Context,
    profile_id: str = typer.Argument(..., help="Profile id"),
    message: str = typer.Argument(..., help="Message to send"),
    name: str = typer.Option("Alex", "--name", "-n", help="Character name for a new profile"),
    relationship: str = typer.Option(
        DEFAULT_RELATIONSHIP, "--relationship", "-r", help="Relationship title for a new profile"
    ),
    traits: str = typer.Option(
        DEFAULT_TRAITS, "--traits", "-t", help="Character description for a new profile"
    ),
    explicit: bool = typer.Option(False, "--explicit", help="Use the bold persona mode for a new profile")
):
    """Send one message to a character and print the reply.

    A stored profile is always used as is; the persona options only
    apply when the profile does not exist yet, and it is saved then.
    """
    try:
        config = _load_settings(ctx)
        kv_store = SQLiteKeyValueStore(_db_path(ctx))
        guard = UsageGuard(KeyValueUsageStore(kv_store), limits=config.limits)
        history_store = HistoryStore(kv_store, limit=config.history.limit)
        profile_store = ProfileStore(kv_store, history_store)

        profile = profile_store.get(profile_id)
        if profile is None:
            profile = CharacterProfile(
                id=profile_id,
                name=name,
                relationship=relationship,
                traits=traits,
                intimacy_level=IntimacyLevel.EXPLICIT if explicit else IntimacyLevel.NORMAL
            )
            profile_store.save(profile)

        stored = history_store.get(profile_id)
        provider = OpenAIChatProvider(profile, history=stored, model_config=config.model)
        executor = RetryingRequestExecutor(guard, policy=config.retry, markers=config.markers)
        session = ConversationSession(
            profile_id, provider, guard, history_store,
            executor=executor, initial_messages=stored
        )
        result = asyncio.run(session.send(message))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    mood = f" [dim]({result.mood.value})[/]" if result.mood else ""
    console.print(f"[bold magenta]{escape(profile.name)}[/]{mood}: {escape(result.message.content)}")
    sys.exit(EXIT_CODE_PASS if result.state == TurnState.DELIVERED else EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
