# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""SMTP relay delivery client.

Provides outbound mail delivery through a single relay via:
- A cached, lifetime-bound session shared by all threads (ConnectionManager)
- AUTH negotiation with XOAUTH2, CRAM-MD5, NTLM and PLAIN
- MIME assembly with content sniffing (Envelope, encode_message)
- Delivery transactions (MailClient)
- Configuration loading
"""

from relaymail.client import MailClient
from relaymail.config import (
    ClientConfig,
    ConfigError,
    TLSMode,
    TLSPolicy,
    load_config,
)
from relaymail.connection import ConnectionManager, Session
from relaymail.errors import (
    AddressParseError,
    AuthError,
    DialError,
    EncodingError,
    HandshakeError,
    MailClientError,
    ProtocolError,
)
from relaymail.message import (
    Attachment,
    EncodedMessage,
    Envelope,
    encode_message,
)
from relaymail.sniff import detect_content_type


__all__ = [
    # client
    "MailClient",
    # config
    "ClientConfig",
    "ConfigError",
    "TLSMode",
    "TLSPolicy",
    "load_config",
    # connection
    "ConnectionManager",
    "Session",
    # errors
    "AddressParseError",
    "AuthError",
    "DialError",
    "EncodingError",
    "HandshakeError",
    "MailClientError",
    "ProtocolError",
    # message
    "Attachment",
    "EncodedMessage",
    "Envelope",
    "encode_message",
    # sniff
    "detect_content_type",
]
