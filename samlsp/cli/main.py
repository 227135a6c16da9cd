"""CLI entry point for samlsp."""

from pathlib import Path

import click

from samlsp import __version__
from samlsp.cli import config as config_commands
from samlsp.cli import serve as serve_commands
from samlsp.cli import tools as tool_commands


@click.group()
@click.version_option(version=__version__, prog_name="samlsp")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),  # type: ignore[type-var]
    default=None,
    help="Path to config.yaml (default: ~/.samlsp/config.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """samlsp - SAML 2.0 Service Provider."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


cli.add_command(config_commands.config)
cli.add_command(serve_commands.serve)
cli.add_command(tool_commands.decode)
cli.add_command(tool_commands.encode)
