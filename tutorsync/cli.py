"""
tutorsync CLI - inspect and drive settings sync from the shell.

Commands:
- Setup: init, create
- Canonical side: show, set
- Legacy side: legacy-get, legacy-set
- Sync: resync, capabilities
- Server: serve

Values given on the command line are parsed as JSON when possible
(true, 10, null, ["a"]) and taken as plain strings otherwise.
"""

import json
import logging
import sys
from typing import Any, Tuple

import click

from tutorsync import __version__
from tutorsync.config import SyncConfig, load_config
from tutorsync.engine import SyncResult
from tutorsync.errors import TutorSyncError
from tutorsync.guard import Direction
from tutorsync.legacy import MISSING, set_in
from tutorsync.mappings import ENTITY_TYPES
from tutorsync.service import SettingsService, create_service
from tutorsync.store import SQLiteEntityStore, get_db_path, init_db


class Context:
    """Lazily built config, store and service shared by commands."""

    def __init__(self, config: SyncConfig):
        self.config = config
        self._service = None

    @property
    def db_path(self) -> str:
        return self.config.db_path or get_db_path()

    @property
    def service(self) -> SettingsService:
        if self._service is None:
            self._service = create_service(self.config, SQLiteEntityStore(self.db_path))
        return self._service

    @property
    def store(self):
        return self.service.store


pass_context = click.make_pass_decorator(Context)


def parse_value(text: str) -> Any:
    """JSON value if it parses, else the raw string."""
    try:
        return json.loads(text)
    except ValueError:
        return text


def parse_assignments(assignments: Tuple[str, ...]) -> dict:
    """Turn ("a.b=1", "c=x") into {"a": {"b": 1}, "c": "x"}."""
    payload: dict = {}
    for item in assignments:
        path, sep, raw = item.partition("=")
        if not sep or not path:
            raise click.BadParameter(f"expected PATH=VALUE, got {item!r}")
        payload = set_in(payload, path.strip(), parse_value(raw))
    return payload


def echo_results(results) -> None:
    for result in results:
        _echo_result(result)


def _echo_result(result: SyncResult) -> None:
    direction = result.direction.value if result.direction else "-"
    line = f"  {result.outcome.value:<20} {direction:<8} {result.path or result.key}"
    if result.written:
        line += f" -> {', '.join(result.written)}"
    click.echo(line)
    for location, reason in result.failed.items():
        click.echo(f"    failed {location}: {reason}", err=True)


def fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
              help="Config file (default: $TUTORSYNC_CONFIG or ./tutorsync.yaml)")
@click.option("--db", "db_path", default=None, type=click.Path(dir_okay=False),
              help="SQLite database (default: $TUTORSYNC_DB or ~/.tutorsync/entities.db)")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path: str, db_path: str, verbose: bool):
    """tutorsync - keep block-editor settings and legacy LMS meta in sync."""
    try:
        config = load_config(config_path)
    except TutorSyncError as e:
        fail(str(e))

    if db_path:
        config.db_path = db_path

    logging.basicConfig(
        level=logging.DEBUG if verbose else config.log_level_value(),
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = Context(config)


# ============================================================================
# Setup Commands
# ============================================================================

@cli.command()
@pass_context
def init(ctx: Context):
    """Create the entity database."""
    try:
        init_db(ctx.db_path)
    except TutorSyncError as e:
        fail(str(e))
    click.echo(f"Initialized {ctx.db_path}")


@cli.command()
@click.argument("entity_type", type=click.Choice(ENTITY_TYPES))
@click.option("--id", "entity_id", type=int, default=None, help="Use a specific entity id")
@pass_context
def create(ctx: Context, entity_type: str, entity_id: int):
    """Create an entity.

    ENTITY_TYPE: course, lesson, assignment or bundle
    """
    try:
        new_id = ctx.store.create_entity(entity_type, entity_id)
    except TutorSyncError as e:
        fail(str(e))
    click.echo(f"Created {entity_type} {new_id}")


# ============================================================================
# Canonical Settings
# ============================================================================

@cli.command()
@click.argument("entity_id", type=int)
@pass_context
def show(ctx: Context, entity_id: int):
    """Print the canonical settings of an entity as JSON."""
    try:
        settings = ctx.service.get(entity_id)
    except TutorSyncError as e:
        fail(str(e))
    click.echo(json.dumps(settings, indent=2))


@cli.command(name="set")
@click.argument("entity_id", type=int)
@click.argument("assignments", nargs=-1, required=True)
@pass_context
def set_settings(ctx: Context, entity_id: int, assignments: Tuple[str, ...]):
    """Write canonical settings.

    \b
    Examples:
        tutorsync set 12 course_level=expert is_public_course=true
        tutorsync set 40 lesson_preview.enabled=true
        tutorsync set 12 maximum_students=null
    """
    payload = parse_assignments(assignments)
    try:
        report = ctx.service.update(entity_id, payload)
    except TutorSyncError as e:
        fail(str(e))

    click.echo(f"Wrote {len(report.written)} field(s): {', '.join(report.written) or '-'}")
    for warning in report.warnings:
        click.echo(f"Warning: {warning}", err=True)
    if not report.success:
        sys.exit(1)


# ============================================================================
# Legacy Side
# ============================================================================

@cli.command(name="legacy-get")
@click.argument("entity_id", type=int)
@click.argument("key")
@pass_context
def legacy_get(ctx: Context, entity_id: int, key: str):
    """Print a raw meta value as JSON."""
    try:
        if ctx.store.entity_type(entity_id) is None:
            fail(f"Entity {entity_id} not found")
        value = ctx.store.get(entity_id, key)
    except TutorSyncError as e:
        fail(str(e))

    if value is MISSING:
        click.echo("(not set)")
    else:
        click.echo(json.dumps(value))


@cli.command(name="legacy-set")
@click.argument("entity_id", type=int)
@click.argument("key")
@click.argument("value")
@pass_context
def legacy_set(ctx: Context, entity_id: int, key: str, value: str):
    """Write a raw meta value, as the LMS itself would."""
    engine = ctx.service.engine
    try:
        with engine.recording() as results:
            ctx.store.set(entity_id, key, parse_value(value))
    except TutorSyncError as e:
        fail(str(e))

    click.echo(f"Set {key}")
    echo_results(results)


# ============================================================================
# Sync
# ============================================================================

@cli.command()
@click.argument("entity_id", type=int)
@click.option("--reverse", is_flag=True, help="Pull legacy values into canonical fields")
@pass_context
def resync(ctx: Context, entity_id: int, reverse: bool):
    """Push canonical settings to legacy meta (or pull with --reverse)."""
    direction = Direction.REVERSE if reverse else Direction.FORWARD
    try:
        results = ctx.service.engine.resync(entity_id, direction)
    except TutorSyncError as e:
        fail(str(e))

    click.echo(f"Resynced {entity_id} ({direction.value}): {len(results)} field(s)")
    echo_results(results)
    if any(not r.ok for r in results):
        sys.exit(1)


@cli.command()
@pass_context
def capabilities(ctx: Context):
    """Show which addon capabilities are enabled."""
    for name, enabled in ctx.config.capability_set().to_dict().items():
        click.echo(f"  {name:<20} {'enabled' if enabled else 'disabled'}")


# ============================================================================
# Server
# ============================================================================

@cli.command()
@click.option("--port", default=8080, help="Port to serve on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@pass_context
def serve(ctx: Context, port: int, host: str):
    """Serve the settings REST API.

    Examples:
        tutorsync serve
        tutorsync --db ./site.db serve --port 3000
    """
    from tutorsync.api.server import create_app
    import uvicorn

    app = create_app(config=ctx.config, service=ctx.service)
    click.echo(f"tutorsync {__version__}")
    click.echo(f"URL: http://{host}:{port}")
    click.echo("Press Ctrl+C to stop")

    uvicorn.run(app, host=host, port=port, log_level=ctx.config.log_level.lower())


def main():
    cli()


if __name__ == "__main__":
    main()
