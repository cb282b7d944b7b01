# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Cached, lifetime-bound SMTP sessions.

``ConnectionManager`` hands out one authenticated ``smtplib.SMTP`` session
that is shared by every thread of the process until it reaches the
configured lifetime.  The next caller after that closes it and builds a
replacement:

1. decide between direct TLS and STARTTLS (``TLSMode``; ``AUTO`` probes)
2. dial with a 10 second timeout, wrapping in TLS for direct mode
3. read the greeting and EHLO
4. upgrade with STARTTLS when the relay offers it
5. authenticate when a user is configured and AUTH is advertised

Only one thread builds at a time.  Others that need a session while a build
is running wait for the same ``Future`` instead of dialling themselves.

Transactions are serialized per session by ``Session.lock``: one SMTP
connection cannot interleave two MAIL/RCPT/DATA sequences.
"""

import contextlib
import logging
import smtplib
import socket
import ssl
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future
from dataclasses import dataclass, field
from types import TracebackType

from relaymail.auth import authenticate, parse_advertised, select_mechanism
from relaymail.config import ClientConfig, TLSMode, TLSPolicy
from relaymail.errors import (
    DialError,
    HandshakeError,
    MailClientError,
    ProtocolError,
)
from relaymail.oauth2 import OAuth2TokenProvider


logger = logging.getLogger(__name__)

#: Timeout for the TCP dial, TLS handshake and greeting (seconds).
CONNECT_TIMEOUT = 10.0

_PROBE_REQUEST = b"GET / HTTP/1.0\r\n\r\n"


def probe_direct_tls(
    host: str,
    port: int,
    server_name: str | None = None,
    timeout: float = CONNECT_TIMEOUT,
) -> bool:
    """Guess whether ``host:port`` expects TLS from the first byte.

    Opens a throwaway connection, completes a TLS handshake without
    certificate checks, writes a dummy HTTP request and reads one line.
    A relay speaking TLS answers (usually with an SMTP error line); a
    plaintext relay fails the handshake.

    Returns:
        True if the exchange succeeded, False on any error.
    """
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    try:
        with socket.create_connection((host, port), timeout) as raw:
            with context.wrap_socket(
                raw, server_hostname=server_name or host
            ) as tls:
                tls.sendall(_PROBE_REQUEST)
                with tls.makefile("rb") as reader:
                    line = reader.readline()
    except OSError as e:
        logger.debug("TLS probe of %s:%d failed: %s", host, port, e)
        return False
    return line.endswith(b"\n")


class _SMTPTransport(smtplib.SMTP):
    """``smtplib.SMTP`` with direct TLS, SNI override and typed dial errors."""

    def __init__(
        self,
        policy: TLSPolicy,
        *,
        direct_tls: bool,
        command_timeout: float | None,
    ) -> None:
        self._policy = policy
        self._direct_tls = direct_tls
        self._command_timeout = command_timeout
        super().__init__(timeout=CONNECT_TIMEOUT)

    def _get_socket(
        self, host: str, port: int, timeout: float
    ) -> socket.socket:
        try:
            sock = socket.create_connection(
                (host, port), timeout, self.source_address
            )
        except OSError as e:
            raise DialError(f"Cannot connect to {host}:{port}: {e}") from e
        if not self._direct_tls:
            return sock

        try:
            return self._policy.context().wrap_socket(
                sock, server_hostname=self._policy.server_name
            )
        except OSError as e:
            sock.close()
            raise HandshakeError(
                f"TLS handshake with {host}:{port} failed: {e}"
            ) from e

    def connect(
        self,
        host: str = "localhost",
        port: int = 0,
        source_address: tuple[str, int] | None = None,
    ) -> tuple[int, bytes]:
        code, message = super().connect(host, port, source_address)
        # STARTTLS takes its SNI name from _host.
        self._host = self._policy.server_name or host
        if self.sock is not None:
            self.sock.settimeout(self._command_timeout)
        return code, message


@dataclass(eq=False)
class Session:
    """One live SMTP session.

    Attributes:
        smtp: The connected client.
        created_at: Clock reading when the session was established.
        tls: Whether the channel is TLS-protected.
        mechanism: AUTH mechanism used, or None if unauthenticated.
        lock: Held for the duration of a transaction and while closing.
        closed: Set once the session has been closed.
    """

    smtp: smtplib.SMTP
    created_at: float
    tls: bool
    mechanism: str | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    closed: bool = False

    def is_expired(self, lifetime: float, now: float) -> bool:
        """True once ``lifetime`` seconds have elapsed since creation."""
        return now - self.created_at >= lifetime

    def close(self) -> None:
        """QUIT and close, waiting for a running transaction to finish."""
        with self.lock:
            if self.closed:
                return
            self.closed = True
            try:
                self.smtp.quit()
            except (smtplib.SMTPException, OSError) as e:
                logger.warning("QUIT failed, closing transport: %s", e)
                self.smtp.close()


class ConnectionManager:
    """Thread-safe owner of the cached session.

    Attributes:
        config: Configuration with lazily-defaulted fields filled in.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        token_provider: OAuth2TokenProvider | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Relay configuration.
            clock: Monotonic clock used for session expiry.
            token_provider: XOAUTH2 token source. Built from ``config`` when
                None and OAuth2 is configured.
        """
        self.config = config.with_defaults()
        self._clock = clock
        self._token_provider = (
            token_provider
            if token_provider is not None
            else OAuth2TokenProvider.from_config(self.config)
        )
        self._lock = threading.Lock()
        self._session: Session | None = None
        self._rebuild: Future[Session] | None = None
        # Bumped by close(); a build started before it is not cached.
        self._generation = 0

    @property
    def _lifetime(self) -> float:
        assert self.config.max_lifetime is not None
        return self.config.max_lifetime

    def connection(self, timeout: float | None = None) -> Session:
        """Return the cached session, building a new one if needed.

        Args:
            timeout: Maximum seconds to wait for a build started by another
                thread. None waits indefinitely.

        Returns:
            A live session.

        Raises:
            DialError, HandshakeError, ProtocolError, AuthError: If the
                build fails. Waiting threads receive the same error.
            DialError: If ``close`` ran while this session was being built.
            TimeoutError: If ``timeout`` elapses while waiting.
        """
        stale: Session | None = None
        with self._lock:
            session = self._session
            if (
                session is not None
                and not session.closed
                and not session.is_expired(self._lifetime, self._clock())
            ):
                return session
            future = self._rebuild
            if future is None:
                future = Future()
                self._rebuild = future
                stale, self._session = session, None
                generation = self._generation
                owner = True
            else:
                owner = False

        if not owner:
            return future.result(timeout=timeout)

        if stale is not None:
            logger.debug(
                "Session to %s expired, reconnecting", self.config.host
            )
            stale.close()

        try:
            session = self._build()
        except BaseException as e:
            with self._lock:
                self._rebuild = None
            future.set_exception(e)
            raise

        with self._lock:
            self._rebuild = None
            current = self._generation == generation
            if current:
                self._session = session
        if not current:
            session.close()
            error = DialError(
                f"Session to {self.config.host} closed while connecting"
            )
            future.set_exception(error)
            raise error
        future.set_result(session)
        return session

    @contextlib.contextmanager
    def transaction(
        self, timeout: float | None = None
    ) -> Iterator[smtplib.SMTP]:
        """Hold a live session exclusively for one mail transaction.

        If the block raises, the session is discarded so the next
        transaction starts from a fresh SMTP state.

        Args:
            timeout: Passed to ``connection``.

        Yields:
            The session's SMTP client.
        """
        while True:
            session = self.connection(timeout)
            session.lock.acquire()
            if not session.closed:
                break
            # Closed between lookup and locking.
            session.lock.release()

        failed = False
        try:
            yield session.smtp
        except BaseException:
            failed = True
            raise
        finally:
            session.lock.release()
            if failed:
                self.discard(session)

    def discard(self, session: Session) -> None:
        """Close ``session`` and forget it if it is still cached."""
        with self._lock:
            if self._session is session:
                self._session = None
        session.close()

    def close(self) -> None:
        """Close the cached session, if any.

        A session still being built is closed once its build finishes.
        The manager stays usable; the next ``connection`` reconnects.
        """
        with self._lock:
            self._generation += 1
            session, self._session = self._session, None
        if session is not None:
            session.close()
            logger.debug("Closed session to %s", self.config.host)

    def __enter__(self) -> "ConnectionManager":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def _use_direct_tls(self) -> bool:
        config = self.config
        if config.tls_mode is TLSMode.IMPLICIT:
            return True
        if config.tls_mode is TLSMode.STARTTLS:
            return False
        assert config.tls_policy is not None
        direct = probe_direct_tls(
            config.host, config.port, config.tls_policy.server_name
        )
        logger.debug(
            "Probed %s:%d: %s",
            config.host,
            config.port,
            "direct TLS" if direct else "plaintext",
        )
        return direct

    def _build(self) -> Session:
        config = self.config
        assert config.tls_policy is not None
        direct_tls = self._use_direct_tls()
        smtp = _SMTPTransport(
            config.tls_policy,
            direct_tls=direct_tls,
            command_timeout=config.command_timeout,
        )
        try:
            return self._open(smtp, direct_tls)
        except MailClientError:
            smtp.close()
            raise
        except smtplib.SMTPResponseException as e:
            smtp.close()
            raise ProtocolError(e.smtp_code, e.smtp_error) from e
        except (smtplib.SMTPServerDisconnected, OSError) as e:
            smtp.close()
            raise DialError(
                f"Connection to {config.host}:{config.port} lost: {e}"
            ) from e
        except BaseException:
            smtp.close()
            raise

    def _open(self, smtp: _SMTPTransport, direct_tls: bool) -> Session:
        config = self.config
        assert config.tls_policy is not None

        code, message = smtp.connect(config.host, config.port)
        if code != 220:
            raise ProtocolError(code, message)
        smtp.ehlo_or_helo_if_needed()

        tls_active = direct_tls
        if not direct_tls and smtp.has_extn("starttls"):
            try:
                smtp.starttls(context=config.tls_policy.context())
            except (smtplib.SMTPException, OSError) as e:
                raise HandshakeError(f"STARTTLS failed: {e}") from e
            smtp.ehlo_or_helo_if_needed()
            tls_active = True

        mechanism_name = None
        if config.user and smtp.has_extn("auth"):
            mechanism = select_mechanism(
                parse_advertised(smtp.esmtp_features["auth"]),
                config,
                self._token_provider,
            )
            authenticate(
                smtp, mechanism, host=config.host, tls_active=tls_active
            )
            mechanism_name = mechanism.name

        logger.info(
            "Connected to %s:%d (tls=%s, auth=%s)",
            config.host,
            config.port,
            tls_active,
            mechanism_name or "none",
        )
        return Session(
            smtp=smtp,
            created_at=self._clock(),
            tls=tls_active,
            mechanism=mechanism_name,
        )
