"""Message encoding and decoding CLI commands."""

from __future__ import annotations

from pathlib import Path

import click


@click.command()
@click.argument("value", required=False)
@click.option(
    "--redirect",
    is_flag=True,
    help="Value uses the HTTP-Redirect binding (raw DEFLATE + Base64)",
)
@click.option(
    "--file",
    "-f",
    "input_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),  # type: ignore[type-var]
    help="Read the encoded value from a file",
)
def decode(value: str | None, redirect: bool, input_file: Path | None) -> None:
    """Decode a SAMLRequest or SAMLResponse parameter value to XML.

    The value may be URL-encoded, as copied from a browser address bar.

    Examples:

        samlsp decode PHNhbWxwOlJlc3BvbnNl...

        samlsp decode --redirect 'fZJNT8MwDIbv%2B...'
    """
    from urllib.parse import unquote

    from samlsp.core.saml.codec import Binding, decode_message
    from samlsp.core.saml.errors import MalformedMessage

    if input_file:
        value = input_file.read_text()
    if not value:
        value = click.get_text_stream("stdin").read()
    value = value.strip()
    if "%" in value:
        value = unquote(value)

    binding = Binding.REDIRECT if redirect else Binding.POST
    try:
        click.echo(decode_message(value, binding))
    except MalformedMessage as e:
        raise click.ClickException(str(e)) from None


@click.command()
@click.argument(
    "xml_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),  # type: ignore[type-var]
)
@click.option(
    "--redirect",
    is_flag=True,
    help="Encode for the HTTP-Redirect binding (raw DEFLATE + Base64)",
)
@click.option(
    "--urlencode",
    "url_encode",
    is_flag=True,
    help="URL-encode the result for use in a query string",
)
def encode(xml_file: Path, redirect: bool, url_encode: bool) -> None:
    """Encode an XML file as a SAML binding parameter value.

    Examples:

        samlsp encode response.xml

        samlsp encode --redirect --urlencode logout_request.xml
    """
    from urllib.parse import quote

    from samlsp.core.saml.codec import Binding, encode_message
    from samlsp.core.saml.errors import EncodingFailure

    binding = Binding.REDIRECT if redirect else Binding.POST
    try:
        encoded = encode_message(xml_file.read_text(encoding="utf-8"), binding)
    except EncodingFailure as e:
        raise click.ClickException(str(e)) from None

    click.echo(quote(encoded, safe="") if url_encode else encoded)
