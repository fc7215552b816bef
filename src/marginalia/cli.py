"""Command-line interface for Marginalia."""

import asyncio
from datetime import datetime
from pathlib import Path

import click

from marginalia import __version__
from marginalia.config import Config
from marginalia.logging import get_logger, setup_logging

log = get_logger("cli")


@click.group()
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level (overrides config).",
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Output logs as JSON or human-readable format (overrides config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    log_level: str | None,
    log_json: bool | None,
) -> None:
    """Marginalia - bridge Hypothesis annotations and Discord.

    New annotations in a subscribed group are posted to a Discord channel;
    Discord replies to those posts become annotation replies.
    """
    ctx.ensure_object(dict)

    config = Config.load_or_default(config_file)
    ctx.obj["config"] = config
    ctx.obj["config_file"] = config_file

    effective_log_level = log_level or config.log_level
    effective_log_json = log_json if log_json is not None else config.log_json
    setup_logging(json_output=effective_log_json, level=effective_log_level)


def open_store(config: Config):
    """Open the database, bring the schema up to date and wrap it in a store."""
    from marginalia.database import get_engine
    from marginalia.migrations import migrate
    from marginalia.store import MappingStore

    engine = get_engine(config)
    migrate(engine)
    return MappingStore(engine)


@cli.command()
def version() -> None:
    """Print version information."""
    click.echo(f"marginalia {__version__}")


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the bridge (Discord bot plus annotation poller).

    Requires DISCORD_TOKEN environment variable to be set.
    Use Ctrl+C or send SIGTERM for graceful shutdown.
    """
    from marginalia.bot import run_bot

    config = ctx.obj["config"]

    if not config.discord_token:
        click.echo("Error: DISCORD_TOKEN environment variable not set", err=True)
        click.echo("Set DISCORD_TOKEN to your bot token to connect to Discord.", err=True)
        raise SystemExit(1)

    store = open_store(config)
    log.info("run_command_invoked", poll_interval_seconds=config.poller.interval_seconds)

    try:
        asyncio.run(run_bot(config, store))
    except KeyboardInterrupt:
        log.info("shutdown_requested_keyboard")
    except Exception as e:
        log.error("run_failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        store.engine.dispose()


# =============================================================================
# Subscription Commands
# =============================================================================


@cli.group()
def subs() -> None:
    """Subscription management commands."""
    pass


@subs.command(name="add")
@click.option("--token", required=True, help="Hypothesis API token.")
@click.option("--group", required=True, help="Hypothesis group id.")
@click.option("--chat", "chat_id", required=True, help="Discord channel id.")
@click.option(
    "--since",
    default=None,
    help="Only bridge annotations updated after this ISO 8601 time (default: now).",
)
@click.pass_context
def subs_add(ctx: click.Context, token: str, group: str, chat_id: str, since: str | None) -> None:
    """Subscribe a Discord channel to a Hypothesis group."""
    from marginalia.models import Subscription, utcnow
    from marginalia.store import ConflictError

    watermark = utcnow()
    if since is not None:
        try:
            watermark = datetime.fromisoformat(since)
        except ValueError:
            click.echo(f"Error: invalid --since time: {since}", err=True)
            raise SystemExit(2)

    store = open_store(ctx.obj["config"])
    try:
        store.add_subscription(Subscription(token=token, group=group, chat_id=chat_id, watermark=watermark))
    except ConflictError:
        click.echo(f"Error: channel {chat_id} is already subscribed to group {group}", err=True)
        raise SystemExit(1)
    finally:
        store.engine.dispose()

    click.echo(f"Subscribed channel {chat_id} to group {group}")


@subs.command(name="list")
@click.pass_context
def subs_list(ctx: click.Context) -> None:
    """List subscriptions and their watermarks."""
    store = open_store(ctx.obj["config"])
    try:
        subscriptions = store.list_subscriptions()
    finally:
        store.engine.dispose()

    if not subscriptions:
        click.echo("No subscriptions")
        return

    for sub in subscriptions:
        click.echo(f"{sub.group}\t{sub.chat_id}\t{sub.watermark.isoformat()}")


@subs.command(name="remove")
@click.option("--group", required=True, help="Hypothesis group id.")
@click.option("--chat", "chat_id", required=True, help="Discord channel id.")
@click.pass_context
def subs_remove(ctx: click.Context, group: str, chat_id: str) -> None:
    """Unsubscribe a Discord channel from a Hypothesis group."""
    from marginalia.store import NotFoundError

    store = open_store(ctx.obj["config"])
    try:
        store.remove_subscription(chat_id, group)
    except NotFoundError:
        click.echo(f"Error: no subscription for group {group} in channel {chat_id}", err=True)
        raise SystemExit(1)
    finally:
        store.engine.dispose()

    click.echo(f"Unsubscribed channel {chat_id} from group {group}")


# =============================================================================
# Database Commands
# =============================================================================


@cli.group()
def db() -> None:
    """Database management commands."""
    pass


@db.command(name="status")
@click.pass_context
def db_status(ctx: click.Context) -> None:
    """Show database migration status."""
    from marginalia.database import get_engine
    from marginalia.migrations import get_current_version, get_migrations

    config = ctx.obj["config"]
    engine = get_engine(config)

    current = get_current_version(engine)
    migrations = get_migrations()

    click.echo(f"Database: {config.database_path}")
    click.echo(f"Current version: {current}")
    click.echo(f"Available migrations: {len(migrations)}")

    pending = [(v, m) for v, m in migrations if v > current]
    if pending:
        click.echo(f"Pending migrations: {len(pending)}")
        for version, module in pending:
            desc = getattr(module, "DESCRIPTION", "No description")
            click.echo(f"  {version}: {desc}")
    else:
        click.echo("No pending migrations")
    engine.dispose()


@db.command(name="migrate")
@click.option(
    "--target",
    type=int,
    default=None,
    help="Target version (default: latest).",
)
@click.pass_context
def db_migrate(ctx: click.Context, target: int | None) -> None:
    """Apply pending database migrations."""
    from marginalia.database import get_engine
    from marginalia.migrations import get_current_version, migrate

    config = ctx.obj["config"]
    engine = get_engine(config)

    before = get_current_version(engine)
    after = migrate(engine, target_version=target)
    engine.dispose()

    if before == after:
        click.echo(f"Database already at version {after}")
    else:
        click.echo(f"Migrated from version {before} to {after}")


# =============================================================================
# Config Commands
# =============================================================================


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command(name="check")
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=True, path_type=Path),
    default="config.yaml",
    help="Path to configuration file.",
)
def config_check(config_file: Path) -> None:
    """Validate configuration file."""
    try:
        cfg = Config.load(config_file)
        click.echo(f"Configuration valid: {config_file}")
        click.echo(f"  Data directory: {cfg.data_dir}")
        click.echo(f"  Database path: {cfg.database_path}")
        click.echo(f"  Log level: {cfg.log_level}")
        click.echo(f"  Hypothesis API: {cfg.hypothesis.api_url}")
        click.echo(f"  Poll interval: {cfg.poller.interval_seconds}s")
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)
