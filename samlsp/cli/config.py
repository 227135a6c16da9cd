"""Configuration management CLI commands."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

# Common option for JSON output
json_option = click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output results as JSON for scripting",
)


def output_result(data: dict[str, Any], as_json: bool = False) -> None:
    """Output result as JSON or formatted text.

    Args:
        data: Data to output
        as_json: If True, output as JSON
    """
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))


def error_result(message: str, as_json: bool = False) -> NoReturn:
    """Output error message and exit.

    This function never returns - it either raises ClickException or calls sys.exit.
    """
    if as_json:
        click.echo(json.dumps({"error": message}, indent=2), err=True)
        sys.exit(1)
    raise click.ClickException(message)


def _config_path(ctx: click.Context) -> Path | None:
    return ctx.obj.get("config_path") if ctx.obj else None


@click.group()
def config() -> None:
    """Manage samlsp configuration."""
    pass


@config.command("show")
@json_option
@click.pass_context
def config_show(ctx: click.Context, output_json: bool) -> None:
    """Show the effective configuration (file plus environment).

    The IdP certificate body is abbreviated.
    """
    from samlsp.core.config import ConfigurationError, load_config

    try:
        app_config = load_config(_config_path(ctx))
    except ConfigurationError as e:
        error_result(str(e), output_json)

    data = app_config.to_dict()
    cert = data["saml"].get("idp_x509_cert")
    if cert:
        data["saml"]["idp_x509_cert"] = f"<{len(cert)} characters>"

    if output_json:
        output_result(data, as_json=True)
        return

    for section, values in data.items():
        click.echo(f"{section}:")
        for key, value in values.items():
            click.echo(f"  {key}: {value if value not in (None, '') else '(not set)'}")


@config.command("init")
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite an existing config file.",
)
@click.option(
    "--path",
    "target",
    type=click.Path(dir_okay=False, path_type=Path),  # type: ignore[type-var]
    default=None,
    help="Where to write the file (default: ~/.samlsp/config.yaml)",
)
@json_option
@click.pass_context
def config_init(ctx: click.Context, force: bool, target: Path | None, output_json: bool) -> None:
    """Write an example config.yaml.

    Examples:

        # Write ~/.samlsp/config.yaml
        samlsp config init

        # Overwrite an existing file
        samlsp config init --force
    """
    from samlsp.core.config import DEFAULT_CONFIG_FILE, get_default_config_yaml

    path = target or _config_path(ctx) or DEFAULT_CONFIG_FILE

    if path.exists() and not force:
        if output_json:
            output_result({
                "status": "exists",
                "path": str(path),
                "message": "Config file already exists. Use --force to overwrite.",
            }, as_json=True)
            return
        click.echo(f"Config file already exists: {path}")
        click.echo("Use --force to overwrite")
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_default_config_yaml())

    if output_json:
        output_result({"status": "created", "path": str(path)}, as_json=True)
    else:
        click.echo(f"Wrote example configuration to: {path}")
        click.echo("")
        click.echo("Next steps:")
        click.echo("  1. Edit the saml section with your SP and IdP details")
        click.echo("  2. Run 'samlsp config check' to validate it")


@config.command("check")
@json_option
@click.pass_context
def config_check(ctx: click.Context, output_json: bool) -> None:
    """Validate settings, load the IdP certificate and run pre-flight checks."""
    from samlsp.core.config import ConfigurationError, load_config
    from samlsp.core.crypto.certs import InvalidCertificate, get_certificate_info
    from samlsp.core.saml.sp import ServiceProvider

    try:
        app_config = load_config(_config_path(ctx))
        sp = ServiceProvider.from_settings(app_config.saml)
    except (ConfigurationError, InvalidCertificate) as e:
        error_result(str(e), output_json)

    preflight = sp.run_preflight_checks()
    data: dict[str, Any] = preflight.to_dict()

    if sp.certificate is not None:
        info = get_certificate_info(sp.certificate)
        data["certificate"] = {
            "subject": info.subject,
            "fingerprint_sha256": info.fingerprint_sha256,
            "not_before": info.not_before.isoformat(),
            "not_after": info.not_after.isoformat(),
            "key": f"{info.key_type} {info.key_size}",
        }

    if output_json:
        output_result(data, as_json=True)
    else:
        for check in preflight.checks:
            mark = "OK  " if check.passed else "FAIL"
            click.echo(f"[{mark}] {check.name}: {check.details}")
        if "certificate" in data:
            cert = data["certificate"]
            click.echo("")
            click.echo("IdP certificate:")
            click.echo(f"  Subject: {cert['subject']}")
            click.echo(f"  SHA-256: {cert['fingerprint_sha256']}")
            click.echo(f"  Valid: {cert['not_before']} to {cert['not_after']}")
        for warning in preflight.warnings:
            click.echo(f"Warning: {warning}")

    if not preflight.all_passed:
        sys.exit(1)
