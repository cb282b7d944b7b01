# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Mail delivery over the cached relay session.

``MailClient`` is safe to share between threads.  Each ``send`` encodes the
message, takes the cached session exclusively, and runs one
MAIL FROM / RCPT TO / DATA transaction on it.
"""

import logging
import smtplib
import time
from collections.abc import Callable
from types import TracebackType

from relaymail.config import ClientConfig
from relaymail.connection import ConnectionManager
from relaymail.errors import DialError, MailClientError, ProtocolError
from relaymail.header import parse_address
from relaymail.message import Envelope, encode_message
from relaymail.oauth2 import OAuth2TokenProvider


logger = logging.getLogger(__name__)

_RCPT_ACCEPTED = (250, 251)


class MailClient:
    """Delivery client for one relay.

    Attributes:
        manager: Owner of the cached session.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        token_provider: OAuth2TokenProvider | None = None,
    ) -> None:
        self.manager = ConnectionManager(
            config, clock=clock, token_provider=token_provider
        )

    @property
    def config(self) -> ClientConfig:
        return self.manager.config

    def send(self, envelope: Envelope, timeout: float | None = None) -> None:
        """Deliver ``envelope`` to every To, Cc and Bcc recipient.

        Args:
            envelope: Message to send.
            timeout: Maximum seconds to wait for a session being built by
                another thread.

        Raises:
            AddressParseError: If the sender or a recipient is malformed.
            EncodingError: If the message cannot be encoded.
            DialError, HandshakeError, AuthError: If no session can be
                established, or the connection drops mid-transaction.
            ProtocolError: If the relay rejects a command.
        """
        message = encode_message(envelope, self.config.sender)
        _, sender = parse_address(envelope.sender or self.config.sender)
        recipients = envelope.recipients()

        try:
            with self.manager.transaction(timeout) as smtp:
                self._transact(
                    smtp,
                    sender,
                    recipients,
                    message.as_bytes(),
                    eight_bit=message.is_8bit,
                )
        except MailClientError as e:
            logger.error(
                "Failed to send mail to %s: %s", ", ".join(recipients), e
            )
            raise

        logger.info(
            "Sent mail to %d recipient(s): %s",
            len(recipients),
            envelope.subject,
        )

    def _transact(
        self,
        smtp: smtplib.SMTP,
        sender: str,
        recipients: list[str],
        data: bytes,
        *,
        eight_bit: bool,
    ) -> None:
        options: list[str] = []
        if eight_bit and smtp.has_extn("8bitmime"):
            options.append("BODY=8BITMIME")

        try:
            code, reply = smtp.mail(sender, options)
            if code != 250:
                raise ProtocolError(code, reply)
            for recipient in recipients:
                code, reply = smtp.rcpt(recipient)
                if code not in _RCPT_ACCEPTED:
                    raise ProtocolError(code, reply)
            code, reply = smtp.data(data)
        except smtplib.SMTPResponseException as e:
            raise ProtocolError(e.smtp_code, e.smtp_error) from e
        except (smtplib.SMTPServerDisconnected, OSError) as e:
            raise DialError(f"Connection lost during delivery: {e}") from e
        if code != 250:
            raise ProtocolError(code, reply)
        logger.debug("Relay accepted message: %d %s", code, reply)

    def close(self) -> None:
        """Close the cached session."""
        self.manager.close()

    def __enter__(self) -> "MailClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
