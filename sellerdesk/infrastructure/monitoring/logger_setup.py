"""Logging configuration for the SellerDesk CLI and library.

Log records go to stderr so command output on stdout (JSON from
``sellerdesk get``) can be piped. An optional log file rotates by size.
Every handler masks bearer tokens, OAuth secrets and the API key before a
record is written.
"""

import logging
import logging.handlers
import re
import sys
from typing import Optional

DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEFAULT_LOG_FILE = None
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("httpx", "httpcore")

REDACTED = "***"
_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(
        r"((?:access_token|refresh_token|code_verifier|client_secret|x-api-key)[\"']?\s*[=:]\s*[\"']?)[^\s&\"',}]+",
        re.IGNORECASE,
    ),
    # Authorization codes in callback URLs
    re.compile(r"([?&]code=)[^\s&#]+"),
)


def redact(message: str) -> str:
    """Masks credential values in ``message``."""
    for pattern in _SECRET_PATTERNS:
        message = pattern.sub(rf"\g<1>{REDACTED}", message)
    return message


class CredentialRedactionFilter(logging.Filter):
    """Rewrites each record's message with credentials masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(
    log_level: int = DEFAULT_LOG_LEVEL,
    log_format: str = DEFAULT_LOG_FORMAT,
    log_file: Optional[str] = DEFAULT_LOG_FILE
) -> None:
    """Configures the root logger for the application.

    Args:
        log_level: The minimum logging level (e.g., logging.DEBUG, logging.INFO).
        log_format: The format string for log messages.
        log_file: Optional path of a size-rotated log file.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(log_format)
    redaction = CredentialRedactionFilter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(redaction)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding='utf-8',
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            file_handler.addFilter(redaction)
            root_logger.addHandler(file_handler)
            logging.info(f"Logging to file: {log_file}")
        except OSError as e:
            logging.error(f"Failed to set up file logging to {log_file}: {e}", exc_info=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    logging.debug(f"Logging configured. Level={logging.getLevelName(log_level)}")
