# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""In-process SMTP relay for integration tests.

Runs an aiosmtpd server on localhost that accepts PLAIN/LOGIN with a fixed
credential pair and records every delivered envelope.
"""

import logging
import socket
import threading
from collections.abc import Iterator
from dataclasses import dataclass

import pytest
from aiosmtpd.controller import Controller
from aiosmtpd.smtp import SMTP as SMTPServer
from aiosmtpd.smtp import AuthResult, Envelope, LoginPassword, Session

from relaymail.config import ClientConfig, TLSMode


logger = logging.getLogger(__name__)

RELAY_USER = "relay-user"
RELAY_PASSWORD = "relay-pass"


def find_free_port() -> int:
    """Find a free TCP port on localhost.

    aiosmtpd's Controller cannot be started on port 0, so a port is
    reserved and released first.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


@dataclass
class Delivery:
    """One message accepted by the relay."""

    mail_from: str
    rcpt_tos: list[str]
    content: bytes
    peer: tuple[str, int]
    mail_options: list[str]


class RecordingHandler:
    """aiosmtpd handler that stores every delivered envelope."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.deliveries: list[Delivery] = []

    async def handle_DATA(
        self, server: SMTPServer, session: Session, envelope: Envelope
    ) -> str:
        delivery = Delivery(
            mail_from=envelope.mail_from or "",
            rcpt_tos=list(envelope.rcpt_tos),
            content=bytes(envelope.original_content or b""),
            peer=session.peer,
            mail_options=list(envelope.mail_options),
        )
        with self._lock:
            self.deliveries.append(delivery)
        logger.info(
            "Relay received mail from %s to %s",
            delivery.mail_from,
            delivery.rcpt_tos,
        )
        return "250 Message accepted for delivery"


def _authenticator(
    server: SMTPServer,
    session: Session,
    envelope: Envelope,
    mechanism: str,
    auth_data: object,
) -> AuthResult:
    if not isinstance(auth_data, LoginPassword):
        return AuthResult(success=False, handled=False)
    ok = (
        auth_data.login == RELAY_USER.encode()
        and auth_data.password == RELAY_PASSWORD.encode()
    )
    return AuthResult(success=ok, handled=False)


@pytest.fixture
def relay() -> Iterator[tuple[Controller, RecordingHandler]]:
    """Start the relay and stop it after the test."""
    handler = RecordingHandler()
    controller = Controller(
        handler,
        hostname="127.0.0.1",
        port=find_free_port(),
        authenticator=_authenticator,
        auth_require_tls=False,
    )
    controller.start()
    logger.info("SMTP relay started on port %d", controller.port)
    try:
        yield controller, handler
    finally:
        controller.stop()


@pytest.fixture
def relay_config(
    relay: tuple[Controller, RecordingHandler],
) -> ClientConfig:
    """Client configuration pointing at the local relay."""
    controller, _ = relay
    return ClientConfig(
        host="127.0.0.1",
        port=controller.port,
        user=RELAY_USER,
        password=RELAY_PASSWORD,
        sender="Reports <reports@example.com>",
        tls_mode=TLSMode.STARTTLS,
        command_timeout=10,
    )
