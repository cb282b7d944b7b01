# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""NTLM authentication over SMTP ``AUTH``.

Exchange-style relays run NTLM as a three-message SASL exchange::

    C: AUTH NTLM
    S: 334 NTLM supported
    C: <base64 negotiate message>
    S: 334 <base64 challenge message>
    C: <base64 authenticate message>
    S: 235 2.7.0 Authentication successful

``smtplib.SMTP.auth`` cannot drive this: it base64-decodes every 334 payload,
and the first one here is the plain-text ``NTLM supported`` token.
``run_ntlm_exchange`` therefore speaks the exchange itself and hands 334
payloads to ``NTLMAuthState.next`` undecoded.  The 235 status text is not
base64 either and is passed through as-is.

The NTLM messages themselves are produced by pyspnego.
"""

import base64
import binascii
import contextlib
import logging
import os
import smtplib
import struct
import threading
from collections.abc import Iterator
from dataclasses import dataclass

import spnego
from spnego.exceptions import SpnegoError

from relaymail.errors import AuthError


logger = logging.getLogger(__name__)

#: Token some servers send in place of an empty first challenge.
NTLM_SUPPORTED = b"NTLM supported"

# pyspnego reads the workstation for the authenticate message from this
# variable; it is process-wide, so overrides are serialized.
_WORKSTATION_ENV = "NETBIOS_COMPUTER_NAME"
_workstation_lock = threading.Lock()


@dataclass(frozen=True)
class ServerInfo:
    """What the client knows about the relay when AUTH starts.

    Attributes:
        name: Host name the session was opened against.
        tls: Whether the channel is TLS-protected.
        auth: Mechanisms advertised in the EHLO ``AUTH`` line.
    """

    name: str
    tls: bool
    auth: tuple[str, ...]


@contextlib.contextmanager
def _announced_workstation(name: str) -> Iterator[None]:
    if not name:
        yield
        return
    with _workstation_lock:
        previous = os.environ.get(_WORKSTATION_ENV)
        os.environ[_WORKSTATION_ENV] = name
        try:
            yield
        finally:
            if previous is None:
                os.environ.pop(_WORKSTATION_ENV, None)
            else:
                os.environ[_WORKSTATION_ENV] = previous


def split_domain_user(user: str) -> tuple[str, str]:
    """Split ``domain\\username``.

    Raises:
        AuthError: If ``user`` has no backslash separator.
    """
    domain, separator, username = user.partition("\\")
    if not separator:
        raise AuthError(
            "Wrong format of username. The required format is "
            "'domain\\username'"
        )
    return domain, username


class NTLMAuthState:
    """State of one NTLM authentication attempt.

    Created per attempt and discarded afterwards, whatever the outcome.

    Attributes:
        host: Relay host the credentials are meant for.
        domain: Windows domain.
        username: Account name within the domain.
        workstation: Workstation announced in the authenticate message.
    """

    def __init__(
        self, host: str, user: str, password: str, workstation: str = ""
    ) -> None:
        self.host = host
        self.domain, self.username = split_domain_user(user)
        self.password = password
        self.workstation = workstation
        self._context: spnego.ContextProxy | None = None

    def start(self, server: ServerInfo) -> tuple[str, bytes | None]:
        """Check the server and name the mechanism.

        Returns:
            ``("NTLM", None)``: NTLM sends no initial response.

        Raises:
            AuthError: If NTLM is not advertised on a plaintext channel, or
                the session belongs to a different host.
        """
        if not server.tls and "NTLM" not in server.auth:
            raise AuthError(
                f"mail: unknown authentication type: {list(server.auth)}"
            )
        if server.name != self.host:
            raise AuthError("mail: wrong host name")
        return "NTLM", None

    def next(self, from_server: bytes, more: bool) -> bytes | None:
        """Answer one server message.

        Args:
            from_server: Raw 334/235 payload (not base64-decoded).
            more: True for a 334 continuation, False for the final status.

        Returns:
            The next client message, or None when the exchange is over.

        Raises:
            AuthError: If the challenge is malformed.
        """
        if not more:
            return None
        if from_server in (NTLM_SUPPORTED, b""):
            return self._negotiate()

        try:
            challenge = base64.b64decode(from_server, validate=True)
        except binascii.Error as e:
            raise AuthError(f"Decode base64 error: {e}") from e
        return self._authenticate(challenge)

    def _negotiate(self) -> bytes:
        try:
            self._context = spnego.client(
                f"{self.domain}\\{self.username}",
                self.password,
                hostname=self.host,
                service="SMTP",
                protocol="ntlm",
            )
            token = self._context.step()
        except SpnegoError as e:
            raise AuthError(f"Cannot build NTLM negotiate message: {e}") from e
        if not token:
            raise AuthError("NTLM negotiate message is empty")
        return token

    def _authenticate(self, challenge: bytes) -> bytes:
        if self._context is None:
            raise AuthError("NTLM challenge received before negotiation")
        try:
            with _announced_workstation(self.workstation):
                token = self._context.step(challenge)
        except (SpnegoError, ValueError, IndexError, struct.error) as e:
            raise AuthError(f"Invalid NTLM challenge: {e}") from e
        if not token:
            raise AuthError("NTLM authenticate message is empty")
        return token


def _encode(token: bytes) -> str:
    return base64.b64encode(token).decode("ascii")


def _terminate(smtp: smtplib.SMTP, *, cancel: bool) -> None:
    """End the session, first cancelling an open AUTH with ``*``."""
    try:
        if cancel:
            smtp.docmd("*")
        smtp.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.debug("Error while aborting NTLM exchange: %s", e)
        smtp.close()


def run_ntlm_exchange(
    smtp: smtplib.SMTP,
    state: NTLMAuthState,
    *,
    host: str,
    tls_active: bool,
) -> None:
    """Authenticate ``smtp`` with NTLM.

    Args:
        smtp: Connected client that has completed EHLO.
        state: Fresh state for this attempt.
        host: Host the session was opened against.
        tls_active: Whether the channel is TLS-protected.

    Raises:
        AuthError: If the exchange fails; the session has been terminated.
    """
    advertised = tuple(smtp.esmtp_features.get("auth", "").upper().split())
    try:
        mechanism, response = state.start(
            ServerInfo(name=host, tls=tls_active, auth=advertised)
        )
    except AuthError:
        _terminate(smtp, cancel=False)
        raise

    command = f"AUTH {mechanism}"
    if response:
        command = f"{command} {_encode(response)}"
    code, reply = smtp.docmd(command)

    while True:
        try:
            if code not in (334, 235):
                raise AuthError(
                    f"NTLM authentication failed: {code} "
                    f"{reply.decode('utf-8', errors='replace')}",
                    code=code,
                )
            response = state.next(reply, more=code == 334)
        except AuthError:
            _terminate(smtp, cancel=True)
            raise

        if response is None:
            logger.debug("NTLM authentication accepted for %s", state.username)
            return
        code, reply = smtp.docmd(_encode(response))
