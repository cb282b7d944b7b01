# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Error kinds raised by the relaymail delivery client.

Every component raises the first fatal error it meets and nothing retries.
``MailClient.send`` surfaces these unchanged, so callers tell failures apart
with ``isinstance`` rather than by matching message text.
"""


class MailClientError(Exception):
    """Base exception for all delivery client failures."""


class DialError(MailClientError):
    """Raised when the relay cannot be reached or the connection drops."""


class HandshakeError(MailClientError):
    """Raised when TLS negotiation fails (direct TLS or STARTTLS)."""


class ProtocolError(MailClientError):
    """Raised when the relay answers with an unexpected SMTP status.

    Attributes:
        code: SMTP reply code.
        text: Reply text as sent by the server.
    """

    def __init__(self, code: int, text: str | bytes) -> None:
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        self.code = code
        self.text = text
        super().__init__(f"SMTP {code}: {text}")


class AuthError(MailClientError):
    """Raised when authentication cannot be negotiated or is rejected.

    Attributes:
        code: SMTP reply code when the failure came from the server, else None.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)


class AddressParseError(MailClientError, ValueError):
    """Raised when an envelope address cannot be parsed."""


class EncodingError(MailClientError):
    """Raised when a MIME part cannot be built."""
