import subprocess
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from telemetry_ingest.config import get_settings
from telemetry_ingest.errors import StoreError
from telemetry_ingest.store import EventStore

app = typer.Typer(help="Telemetry ingestion service CLI (server, schema, user data)")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (default: APP_HOST)"),
    port: Optional[int] = typer.Option(None, help="Port (default: APP_PORT)"),
):
    """Run the ingestion API with uvicorn."""
    import uvicorn

    settings = get_settings()
    host = host or settings.APP_HOST
    port = port or settings.APP_PORT
    logger.info(f"Serving telemetry ingest on {host}:{port}")
    uvicorn.run("telemetry_ingest.service.app:create_app", factory=True, host=host, port=port)


@app.command()
def migrate(target: str = "head"):
    """Run Alembic migrations to the specified target (default: head)."""
    try:
        logger.info(f"Running migrations to {target}")
        result = subprocess.run(
            ["alembic", "-c", get_settings().ALEMBIC_INI, "upgrade", target],
            capture_output=True,
            text=True,
            cwd=Path(__file__).parent.parent.parent,
        )
        if result.returncode == 0:
            logger.success(f"Successfully migrated to {target}")
            if result.stdout:
                logger.info(f"Migration output: {result.stdout}")
        else:
            logger.error(f"Migration failed: {result.stderr}")
            sys.exit(1)

    except Exception as e:
        logger.error(f"Failed to run migrations: {e}")
        sys.exit(1)


@app.command("init-db")
def init_db():
    """Create the events table directly (local runs without Alembic)."""
    try:
        store = EventStore.from_url(get_settings().database_url)
        store.create_schema()
        store.dispose()
        logger.success("Event store schema created")
    except Exception as e:
        logger.error(f"Failed to create schema: {e}")
        sys.exit(1)


@app.command("delete-user")
def delete_user(user_id: str):
    """Delete every persisted event for USER_ID."""
    try:
        store = EventStore.from_url(get_settings().database_url)
        deleted = store.delete_user(user_id)
        store.dispose()
        logger.success(f"Deleted {deleted} events for user {user_id!r}")
        typer.echo(deleted)
    except StoreError as e:
        logger.error(f"Failed to delete user {user_id!r}: {e}")
        sys.exit(1)


@app.command()
def count(user: Optional[str] = typer.Option(None, "--user", help="Only count this user's events")):
    """Print the number of stored events."""
    try:
        store = EventStore.from_url(get_settings().database_url)
        n = store.count(user)
        store.dispose()
        typer.echo(n)
    except StoreError as e:
        logger.error(f"Failed to count events: {e}")
        sys.exit(1)


if __name__ == "__main__":
    app()
