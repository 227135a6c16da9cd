"""Protocol logging for SAML flows.

Provides message-level logging for debugging SSO and SLO exchanges,
with configurable log levels and sensitive data protection.

Log levels:
- ERROR: Only log errors
- INFO: Log flow milestones (requests issued, responses accepted or rejected)
- DEBUG: Log message details (IDs, issuers, destinations, failing stage)
- TRACE: Log raw protocol XML including personal data (requires explicit enable)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any

# Custom log level for TRACE (below DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Module logger
logger = logging.getLogger("samlsp.protocol")

# Raw XML is cut off after this many characters
MAX_LOGGED_XML = 4000


class LogLevel(IntEnum):
    """Protocol logging levels."""

    ERROR = logging.ERROR  # 40
    INFO = logging.INFO  # 20
    DEBUG = logging.DEBUG  # 10
    TRACE = TRACE  # 5


class Direction(StrEnum):
    """Direction of a protocol message relative to this SP."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


# Patterns for sensitive data redaction
SENSITIVE_PATTERNS = [
    # Binding parameters (query strings and form bodies)
    (re.compile(r"(SAMLRequest=)[^&\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(SAMLResponse=)[^&\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(RelayState=)[^&\s]+"), r"\1[REDACTED]"),
    # Cookies
    (re.compile(r"(Cookie:\s*)[^\r\n]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(Set-Cookie:\s*)[^\r\n]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(samlsp_session=)[^;\s]+"), r"\1[REDACTED]"),
    # Subject identifiers inside XML
    (re.compile(r"(<(?:\w+:)?NameID\b[^>]*>)[^<]*(</)"), r"\1[REDACTED]\2"),
    (re.compile(r"(<(?:\w+:)?AttributeValue\b[^>]*>)[^<]*(</)"), r"\1[REDACTED]\2"),
    # JSON fields
    (re.compile(r'"(nameId)"\s*:\s*"[^"]+"'), r'"\1": "[REDACTED]"'),
    (re.compile(r'"(email)"\s*:\s*"[^"]+"'), r'"\1": "[REDACTED]"'),
]


def redact_sensitive(text: str) -> str:
    """Redact sensitive information from text.

    Args:
        text: Text that may contain sensitive data.

    Returns:
        Text with sensitive data redacted.
    """
    result = text
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


@dataclass
class ProtocolMessage:
    """A single SAML message sent or received by the SP."""

    direction: Direction
    message_type: str
    message_id: str | None = None
    binding: str | None = None
    issuer: str | None = None
    destination: str | None = None
    xml: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        """Convert to dictionary for serialization.

        Args:
            include_sensitive: If True, include the raw XML unredacted.
        """
        xml = self.xml
        if xml is not None and not include_sensitive:
            xml = redact_sensitive(xml)
        return {
            "direction": str(self.direction),
            "message_type": self.message_type,
            "message_id": self.message_id,
            "binding": self.binding,
            "issuer": self.issuer,
            "destination": self.destination,
            "timestamp": self.timestamp.isoformat(),
            "xml": xml,
        }

    def format_log(self, level: LogLevel, include_sensitive: bool = False) -> str:
        """Format the message for logging.

        Args:
            level: Log level determines how much detail to include.
            include_sensitive: If True, include raw XML without redaction.
        """
        arrow = "<-" if self.direction == Direction.INBOUND else "->"
        lines = [f"SAML {arrow} {self.message_type} {self.message_id or '(no id)'}"]

        if level <= LogLevel.DEBUG:
            if self.binding:
                lines.append(f"  Binding: {self.binding}")
            if self.issuer:
                lines.append(f"  Issuer: {self.issuer}")
            if self.destination:
                lines.append(f"  Destination: {self.destination}")

        if level <= LogLevel.TRACE and self.xml:
            body = self.xml if include_sensitive else redact_sensitive(self.xml)
            lines.append("  XML:")
            lines.append(f"    {body[:MAX_LOGGED_XML]}{'...' if len(body) > MAX_LOGGED_XML else ''}")

        return "\n".join(lines)


class ProtocolLogger:
    """Configurable protocol logger for SAML flows.

    Manages log level settings and writes protocol messages and validation
    failures to the ``samlsp.protocol`` logger.
    """

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        trace_enabled: bool = False,
    ) -> None:
        """Initialize the protocol logger.

        Args:
            level: Minimum log level.
            trace_enabled: Whether TRACE level is enabled (for sensitive data).
        """
        self._level = level
        self._trace_enabled = trace_enabled

    @property
    def level(self) -> LogLevel:
        """Get current log level."""
        return self._level

    @level.setter
    def level(self, value: LogLevel) -> None:
        self._level = value

    @property
    def trace_enabled(self) -> bool:
        """Whether TRACE level is enabled."""
        return self._trace_enabled

    @trace_enabled.setter
    def trace_enabled(self, value: bool) -> None:
        self._trace_enabled = value

    @property
    def effective_level(self) -> LogLevel:
        """Get effective log level (TRACE only if explicitly enabled)."""
        if self._level == LogLevel.TRACE and not self._trace_enabled:
            return LogLevel.DEBUG
        return self._level

    def log_message(self, message: ProtocolMessage) -> None:
        """Log an inbound or outbound protocol message."""
        effective = self.effective_level
        include_sensitive = self._trace_enabled and self._level <= LogLevel.TRACE

        if effective <= LogLevel.DEBUG:
            logger.debug(message.format_log(effective, include_sensitive))
        elif effective <= LogLevel.INFO:
            logger.info(message.format_log(effective, include_sensitive))

    def log_validation_failure(
        self,
        message_type: str,
        stage: str,
        detail: str,
        message_id: str | None = None,
    ) -> None:
        """Log why an inbound message was rejected.

        The stage and detail never leave the server; callers only see a
        generic outcome message.

        Args:
            message_type: Kind of message that failed (e.g. "Response").
            stage: Pipeline stage that rejected the message.
            detail: Human-readable reason.
            message_id: Message ID when it was parsed far enough to know it.
        """
        logger.warning(
            "SAML %s %s rejected at %s: %s",
            message_type,
            message_id or "(unparsed)",
            stage,
            redact_sensitive(detail),
        )


# Global protocol logger instance
_global_logger: ProtocolLogger | None = None


def get_protocol_logger() -> ProtocolLogger:
    """Get the global protocol logger instance."""
    global _global_logger
    if _global_logger is None:
        _global_logger = ProtocolLogger()
    return _global_logger


def set_protocol_logger(logger_instance: ProtocolLogger) -> None:
    """Set the global protocol logger instance.

    Args:
        logger_instance: ProtocolLogger to use globally.
    """
    global _global_logger
    _global_logger = logger_instance


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    trace_enabled: bool = False,
    log_file: str | None = None,
) -> ProtocolLogger:
    """Configure protocol logging.

    Args:
        level: Log level (ERROR, INFO, DEBUG, TRACE) or string name.
        trace_enabled: Whether to enable TRACE level (includes personal data).
        log_file: Optional file path to write logs to.

    Returns:
        Configured ProtocolLogger.
    """
    if isinstance(level, str):
        level_map = {
            "ERROR": LogLevel.ERROR,
            "INFO": LogLevel.INFO,
            "DEBUG": LogLevel.DEBUG,
            "TRACE": LogLevel.TRACE,
        }
        level = level_map.get(level.upper(), LogLevel.INFO)

    # Component loggers (samlsp.core.saml.*, samlsp.storage.*) share the handlers
    package_logger = logging.getLogger("samlsp")
    package_logger.setLevel(level)
    package_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    protocol_logger = ProtocolLogger(level=level, trace_enabled=trace_enabled)
    set_protocol_logger(protocol_logger)

    if trace_enabled:
        logger.warning(
            "TRACE logging enabled - raw SAML messages (personal data) will be logged!"
        )

    return protocol_logger
