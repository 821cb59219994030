"""Entry-point for the Course Relay service."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from course_relay.bootstrap import initialize_app
from course_relay.logging_utils import build_service_handlers, configure_logging, resolve_log_level
from course_relay.services.counters import JobCounter
from course_relay.services.mailbox import MailboxStore
from course_relay.services.naming import build_object_key
from course_relay.services.storage import VideoRepository
from course_relay.ui.overview import OverviewUI
from course_relay.web.server import create_app, normalize_root_path


LOGGER = logging.getLogger("course_relay.cli")


cli = typer.Typer(add_completion=False, help="Course Relay management commands")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(resolve_log_level(), handlers=build_service_handlers(storage_root))


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="COURSE_RELAY_ROOT_PATH",
    ),
) -> None:
    """Run the webhook endpoints and the notification socket."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    missing = app_config.transcoder.missing_fields()
    if missing:
        LOGGER.warning(
            "Transcoder settings incomplete (%s); upload webhooks will fail until they are set",
            ", ".join(missing),
        )

    repository = VideoRepository(app_config)
    normalized_root = normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving Course Relay on http://%s:%s%s", host, port, normalized_root or "/")
    server.run()


@cli.command()
def overview() -> None:
    """Render videos by processing state and the pending mailbox backlog."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    OverviewUI(VideoRepository(config), MailboxStore(config), JobCounter(config)).run()


@cli.command("register-video")
def register_video(
    owner: str = typer.Option(..., help="User id that receives the status notifications"),
    file_name: Optional[str] = typer.Option(None, help="Original file name of the upload"),
    object_key: Optional[str] = typer.Option(None, help="Explicit storage key for the upload"),
    title: str = typer.Option("", help="Video title"),
    size: Optional[int] = typer.Option(None, min=0, help="Original file size in bytes"),
) -> None:
    """Create an ``initializing`` record awaiting its upload webhook."""

    if not object_key and not file_name:
        raise typer.BadParameter("Provide either --object-key or --file-name.")

    config = initialize_app()
    _prepare_logging(config.storage_root)

    key = object_key or build_object_key(file_name or "")
    record = VideoRepository(config).create_video(
        key,
        owner,
        title=title,
        original_file_size=size,
    )
    typer.echo(f"Registered video {record.id} for {owner}")
    typer.echo(f"  Object key: {record.object_key}")


@cli.command()
def drain(user_id: str = typer.Argument(..., help="User whose mailbox should be emptied")) -> None:
    """Print and remove every pending notification for *user_id*."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    messages = MailboxStore(config).drain_all(user_id)
    if not messages:
        typer.echo(f"No pending notifications for {user_id}.")
        return
    for payload in messages:
        typer.echo(json.dumps(json.loads(payload), sort_keys=True))
    typer.echo(f"Drained {len(messages)} notification(s) for {user_id}.")


if __name__ == "__main__":
    cli()
