"""Configure command for shelfsync CLI.

Commands:
- configure: Store the remote URL, API key and local database location
"""

from __future__ import annotations

import click

from shelfsync.client.cli.config import get_config_file, load_config, save_config


@click.command()
@click.option("--url", prompt="Remote URL", help="Base URL of the remote backend.")
@click.option(
    "--api-key",
    prompt="API key",
    hide_input=True,
    help="API key of the remote backend.",
)
@click.option(
    "--db-path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Location of the local mirror database.",
)
@click.option("--page-size", type=click.IntRange(min=1), default=None, help="Rows per pull page.")
@click.option(
    "--max-workers",
    type=click.IntRange(min=1),
    default=None,
    help="Tables synchronized concurrently.",
)
def configure(
    url: str,
    api_key: str,
    db_path: str | None,
    page_size: int | None,
    max_workers: int | None,
) -> None:
    """Configure the connection to the remote library database."""
    if not url.startswith(("http://", "https://")):
        raise click.BadParameter("URL must start with http:// or https://", param_hint="--url")

    config = load_config()
    config["url"] = url.rstrip("/")
    config["api_key"] = api_key
    if db_path:
        config["db_path"] = db_path
    if page_size is not None:
        config["page_size"] = page_size
    if max_workers is not None:
        config["max_workers"] = max_workers
    save_config(config)

    click.echo(f"Configuration saved to {get_config_file()}")
