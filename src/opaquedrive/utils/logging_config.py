import logging
import os
import re
import sys
from typing import Optional

DEFAULT_LOG_LEVEL = "WARNING"
LOG_LEVEL_ENV = "OPAQUEDRIVE_LOG_LEVEL"

MASK = "***MASKED***"


class KeyMaterialFilter(logging.Filter):
    """Masks key material that might reach a log line through an error message.

    Covers the backup and manifest field names that carry secrets and any bare
    run of hex long enough to be a 256-bit key.
    """

    FIELD_RE = re.compile(
        r'("?(?:privateKey|fileKey|ciphertext|salt|nonce|password)"?\s*[:=]\s*"?)([^"\s,}]+)',
        re.IGNORECASE,
    )
    HEX_KEY_RE = re.compile(r"\b[0-9a-fA-F]{64,}\b")

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            # leave malformed records to the handler's own error reporting
            return True
        masked = self.HEX_KEY_RE.sub(MASK, self.FIELD_RE.sub(rf"\1{MASK}", message))
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(component_name: str, log_level: Optional[str] = None) -> logging.Logger:
    """
    Attach a stdout handler to the `component_name` logger.

    Args:
        component_name: Logger name the handler is attached to (e.g. 'opaquedrive')
        log_level: DEBUG, INFO, WARNING or ERROR. Defaults to $OPAQUEDRIVE_LOG_LEVEL, then WARNING

    Returns:
        Configured logger instance
    """
    if log_level is None:
        log_level = os.getenv(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL)

    level = getattr(logging, log_level.upper(), logging.WARNING)

    logger = logging.getLogger(component_name)
    logger.setLevel(level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    handler.addFilter(KeyMaterialFilter())

    logger.addHandler(handler)
    logger.propagate = False

    return logger
