"""Wire encodings for the SAML HTTP bindings.

- HTTP-Redirect: raw DEFLATE (no zlib header) + Base64
- HTTP-POST: Base64 only
"""

from __future__ import annotations

import base64
import binascii
import secrets
import zlib
from enum import StrEnum

from samlsp.core.saml.errors import EncodingFailure, MalformedMessage

# Negative window bits select a raw deflate stream (RFC 1951)
RAW_DEFLATE_WBITS = -15

# Inflated messages larger than this are rejected (decompression bombs)
MAX_INFLATED_SIZE = 1024 * 1024


class Binding(StrEnum):
    """SAML HTTP bindings understood by the codec."""

    POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
    REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"


def generate_id() -> str:
    """Generate a unique protocol message ID.

    XML IDs must not start with a digit, so the random part is prefixed
    with an underscore.
    """
    return f"_{secrets.token_hex(16)}"


def _b64decode(encoded: str) -> bytes:
    # Line breaks are legal in form-posted values
    cleaned = "".join(encoded.split())
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedMessage(f"Invalid Base64 encoding: {e}") from e


def _to_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedMessage(f"Message is not valid UTF-8: {e}") from e


def compress_and_encode(message: str) -> str:
    """Encode a message for the HTTP-Redirect binding (deflate + base64).

    Raises:
        EncodingFailure: If the message cannot be compressed.
    """
    try:
        compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, RAW_DEFLATE_WBITS)
        compressed = compressor.compress(message.encode("utf-8")) + compressor.flush()
    except (zlib.error, UnicodeEncodeError) as e:
        raise EncodingFailure(f"Failed to deflate message: {e}") from e
    return base64.b64encode(compressed).decode("ascii")


def decode_and_decompress(encoded: str) -> str:
    """Decode a message received over the HTTP-Redirect binding.

    Raises:
        MalformedMessage: On invalid Base64, a corrupt or truncated deflate
            stream, trailing data after the stream, or oversized output.
    """
    compressed = _b64decode(encoded)

    decompressor = zlib.decompressobj(RAW_DEFLATE_WBITS)
    try:
        inflated = decompressor.decompress(compressed, MAX_INFLATED_SIZE)
    except zlib.error as e:
        raise MalformedMessage(f"Corrupt deflate stream: {e}") from e

    if decompressor.unconsumed_tail or (not decompressor.eof and len(inflated) >= MAX_INFLATED_SIZE):
        raise MalformedMessage("Inflated message exceeds maximum size")
    if not decompressor.eof:
        raise MalformedMessage("Truncated deflate stream")
    if decompressor.unused_data:
        raise MalformedMessage("Unexpected data after deflate stream")

    return _to_text(inflated)


def encode_base64(message: str) -> str:
    """Encode a message for the HTTP-POST binding (base64 only)."""
    try:
        return base64.b64encode(message.encode("utf-8")).decode("ascii")
    except UnicodeEncodeError as e:
        raise EncodingFailure(f"Failed to encode message: {e}") from e


def decode_base64(encoded: str) -> str:
    """Decode a message received over the HTTP-POST binding.

    Raises:
        MalformedMessage: On invalid Base64 or non-UTF-8 content.
    """
    return _to_text(_b64decode(encoded))


def decode_message(encoded: str, binding: Binding) -> str:
    """Decode an inbound message according to its binding."""
    if binding == Binding.REDIRECT:
        return decode_and_decompress(encoded)
    return decode_base64(encoded)


def encode_message(message: str, binding: Binding) -> str:
    """Encode an outbound message according to its binding."""
    if binding == Binding.REDIRECT:
        return compress_and_encode(message)
    return encode_base64(message)
