# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Logging setup for relaymail with credential redaction.

Library modules only ever call ``logging.getLogger(__name__)``; handlers are
installed by the embedding application, typically through
``configure_logging``.  Relay passwords and OAuth2 client secrets are
registered with ``SecretFilter`` when a ``ClientConfig`` is built, so they
never reach a handler even if they end up inside an error message.

Usage:
    # In entry points
    from relaymail.logging import configure_logging
    configure_logging(level=logging.DEBUG)

    # In library modules
    import logging
    logger = logging.getLogger(__name__)
    logger.debug("EHLO accepted by %s", host)
"""

import logging
import re
from typing import ClassVar


_REDACTED = "[REDACTED]"


class SecretFilter(logging.Filter):
    """Replace registered credentials in log records with ``[REDACTED]``.

    The registry is shared by every instance, so a secret registered by one
    ``ClientConfig`` is scrubbed from all handlers carrying the filter.
    Records are rewritten in place and never dropped.
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    def filter(self, record: logging.LogRecord) -> bool:
        pattern = self._pattern
        if pattern is None:
            return True

        record.msg = pattern.sub(_REDACTED, str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(
                pattern.sub(_REDACTED, arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        elif isinstance(record.args, dict):
            record.args = {
                key: pattern.sub(_REDACTED, value)
                if isinstance(value, str)
                else value
                for key, value in record.args.items()
            }
        return True

    @classmethod
    def register_secret(cls, secret: str | None) -> None:
        """Add a credential to the redaction set.

        Args:
            secret: Value to hide. Empty and None values are ignored.
        """
        if not secret or secret in cls._secrets:
            return
        cls._secrets.add(secret)
        # Longest first so overlapping secrets are fully masked.
        ordered = sorted(cls._secrets, key=len, reverse=True)
        cls._pattern = re.compile("|".join(re.escape(s) for s in ordered))

    @classmethod
    def clear_secrets(cls) -> None:
        """Forget every registered secret. Intended for tests."""
        cls._secrets.clear()
        cls._pattern = None


def configure_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    add_secret_filter: bool = True,
) -> None:
    """Install a single stream handler on the root logger.

    Existing root handlers are removed first so repeated calls do not
    duplicate output.

    Args:
        level: Root logger level.
        format_string: Record format. Defaults to time, logger, level, message.
        add_secret_filter: Attach ``SecretFilter`` to the handler.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            format_string
            or "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    )
    if add_secret_filter:
        handler.addFilter(SecretFilter())

    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` (usually ``__name__``)."""
    return logging.getLogger(name)
