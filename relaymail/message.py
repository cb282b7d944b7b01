# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""MIME message assembly.

``encode_message`` turns an ``Envelope`` into the exact bytes streamed after
``DATA``:

- without attachments, the body is sent as UTF-8 with CRLF line breaks and
  a sniffed (or hinted) ``Content-Type``;
- with attachments, a ``multipart/mixed`` body is built whose first part is
  the body itself (inline, no filename) followed by one base64 part per
  attachment, in the order they were added.

Part payloads are base64 wrapped at 76 characters per CRLF line, and the
boundary is checked against every payload so it can never occur inside one.
"""

import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from email import base64mime
from email.utils import make_msgid

from relaymail.errors import EncodingError
from relaymail.header import HeaderSet, parse_address, parse_address_list
from relaymail.sniff import detect_content_type


logger = logging.getLogger(__name__)

#: Maximum encoded line length for base64 part bodies (RFC 2045).
BASE64_LINE_LENGTH = 76

# RFC 2046 bchars, minus the space which would need trailing-space care.
_BOUNDARY_RE = re.compile(r"[0-9A-Za-z'()+_,\-./:=?]{1,70}")

_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")


@dataclass
class Attachment:
    """A file carried by a message.

    Attributes:
        filename: Name announced to the recipient.
        data: Raw file content.
        inline: Render next to the body (``Content-Disposition: inline``)
            instead of as a discrete attachment.
    """

    filename: str
    data: bytes
    inline: bool = False


@dataclass
class Envelope:
    """Everything needed to send one message.

    Attributes:
        to: Primary recipients; a ``,`` or ``;`` delimited list.
        subject: Subject line.
        body: Message body (plain text or HTML).
        cc: Carbon-copy recipient lists.
        bcc: Blind-copy recipient lists. Delivered, never written to headers.
        reply_to: Reply-To address list.
        content_type: Body media type. Empty means sniff it from the body.
        sender: From address overriding the client's configured sender.
        attachments: Attachments keyed by filename, in insertion order.
    """

    to: str
    subject: str = ""
    body: str = ""
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    reply_to: str = ""
    content_type: str = ""
    sender: str = ""
    attachments: dict[str, Attachment] = field(default_factory=dict)

    def attach(self, attachment: Attachment) -> None:
        """Add an attachment, replacing one with the same filename."""
        self.attachments[attachment.filename] = attachment

    def recipients(self) -> list[str]:
        """All delivery addresses (To, Cc, Bcc), duplicates kept.

        Raises:
            AddressParseError: If any recipient is malformed.
        """
        return [
            address
            for _, address in parse_address_list(
                self.to, *self.cc, *self.bcc
            )
        ]


@dataclass
class EncodedMessage:
    """A fully encoded message.

    Attributes:
        headers: Top-level header fields.
        body: Encoded body bytes (everything after the blank line).
    """

    headers: HeaderSet
    body: bytes

    @property
    def is_8bit(self) -> bool:
        """True when the message holds bytes outside 7-bit ASCII."""
        return not (self.headers.to_bytes() + self.body).isascii()

    def as_bytes(self) -> bytes:
        """Header block, blank line, body."""
        return self.headers.to_bytes() + b"\r\n" + self.body


def encode_base64(data: bytes) -> bytes:
    """Base64-encode ``data`` in CRLF-terminated lines of 76 characters."""
    if not data:
        return b""
    encoded = base64mime.body_encode(
        data, maxlinelen=BASE64_LINE_LENGTH, eol="\r\n"
    )
    return encoded.encode("ascii")


def new_boundary() -> str:
    """Return a random 60-character multipart boundary."""
    return secrets.token_hex(30)


def _build_part(data: bytes, inline: bool, filename: str = "") -> bytes:
    headers = HeaderSet()
    headers.set("Content-Transfer-Encoding", "base64")

    type_params: dict[str, object] = {}
    disposition_params: dict[str, object] = {}
    if filename:
        type_params["name"] = filename
        disposition_params["filename"] = filename

    headers.set_value("Content-Type", detect_content_type(data), type_params)
    headers.set_value(
        "Content-Disposition",
        "inline" if inline else "attachment",
        disposition_params,
    )
    if filename:
        headers.set("Content-Description", filename)

    return headers.to_bytes() + b"\r\n" + encode_base64(data)


def _build_multipart(parts: list[bytes], boundary: str) -> bytes:
    delimiter = f"--{boundary}".encode("ascii")
    body = bytearray()
    for part in parts:
        body += delimiter + b"\r\n" + part
        if not part.endswith(b"\r\n"):
            body += b"\r\n"
    body += delimiter + b"--\r\n"
    return bytes(body)


def encode_message(
    envelope: Envelope,
    sender: str,
    *,
    now: datetime | None = None,
    boundary: str | None = None,
) -> EncodedMessage:
    """Encode an envelope into a MIME message.

    Args:
        envelope: Message to encode.
        sender: From address used when the envelope has none of its own.
        now: Date header value; defaults to the current local time.
        boundary: Fixed multipart boundary (for reproducible output);
            a random one is generated when None.

    Returns:
        The encoded headers and body.

    Raises:
        AddressParseError: If the sender or a header address is malformed.
        EncodingError: If a multipart body cannot be built.
    """
    from_address = envelope.sender or sender
    _, sender_mailbox = parse_address(from_address)

    headers = HeaderSet()
    headers.set("MIME-Version", "1.0")
    headers.set("Subject", envelope.subject)
    headers.set_date("Date", now or datetime.now().astimezone())
    headers.set(
        "Message-ID", make_msgid(domain=sender_mailbox.rpartition("@")[2])
    )
    headers.set_address("From", from_address)
    headers.set_address("To", envelope.to)
    if envelope.cc:
        headers.set_address("Cc", *envelope.cc)
    if envelope.reply_to:
        headers.set_address("Reply-To", envelope.reply_to)

    body = _LINE_BREAK_RE.sub("\r\n", envelope.body).encode("utf-8")

    if not envelope.attachments:
        headers.set(
            "Content-Type", envelope.content_type or detect_content_type(body)
        )
        if not body.isascii():
            headers.set("Content-Transfer-Encoding", "8bit")
        return EncodedMessage(headers=headers, body=body)

    parts = [_build_part(body, inline=True)]
    for name, attachment in envelope.attachments.items():
        parts.append(
            _build_part(
                attachment.data,
                attachment.inline,
                attachment.filename or name,
            )
        )

    if boundary is None:
        boundary = new_boundary()
        while any(boundary.encode("ascii") in part for part in parts):
            boundary = new_boundary()
    elif not _BOUNDARY_RE.fullmatch(boundary):
        raise EncodingError(f"Invalid multipart boundary: {boundary!r}")
    elif any(boundary.encode("ascii") in part for part in parts):
        raise EncodingError("Multipart boundary occurs inside a part")

    headers.set_value("Content-Type", "multipart/mixed", {"boundary": boundary})
    logger.debug(
        "Encoded multipart message with %d attachment(s)",
        len(envelope.attachments),
    )
    return EncodedMessage(
        headers=headers, body=_build_multipart(parts, boundary)
    )
