"""Server CLI commands."""

import click


@click.command()
@click.option(
    "--host",
    "-h",
    default=None,
    help="Host to bind to (default: from config or 127.0.0.1)",
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=None,
    help="Port to bind to (default: from config or 8080)",
)
@click.option(
    "--debug",
    is_flag=True,
    help="Enable debug mode",
)
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, debug: bool) -> None:
    """Start the Service Provider web server.

    Examples:

        # Start with settings from ~/.samlsp/config.yaml
        samlsp serve

        # Start on custom port
        samlsp serve --port 9080
    """
    from samlsp.app import run_server
    from samlsp.core.config import ConfigurationError, load_config
    from samlsp.core.crypto.certs import InvalidCertificate

    try:
        config = load_config(ctx.obj.get("config_path") if ctx.obj else None)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from None

    if debug:
        config.server.debug = True

    try:
        run_server(app_config=config, host=host, port=port)
    except (ConfigurationError, InvalidCertificate) as e:
        raise click.ClickException(str(e)) from None
