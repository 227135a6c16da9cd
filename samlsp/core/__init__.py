"""Core SAML Service Provider implementation."""

from samlsp.core.logging import (
    Direction,
    LogLevel,
    ProtocolLogger,
    ProtocolMessage,
    configure_logging,
    get_protocol_logger,
    redact_sensitive,
    set_protocol_logger,
)

__all__ = [
    "Direction",
    "LogLevel",
    "ProtocolLogger",
    "ProtocolMessage",
    "configure_logging",
    "get_protocol_logger",
    "redact_sensitive",
    "set_protocol_logger",
]
