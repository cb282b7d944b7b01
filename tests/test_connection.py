# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for the cached session manager."""

import io
import smtplib
import socket
import ssl
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from relaymail.config import ClientConfig, TLSMode, TLSPolicy
from relaymail.connection import (
    CONNECT_TIMEOUT,
    ConnectionManager,
    Session,
    _SMTPTransport,
    probe_direct_tls,
)
from relaymail.errors import (
    AuthError,
    DialError,
    HandshakeError,
    ProtocolError,
)


class TestBuild:
    """Tests for session construction."""

    def test_starttls_and_auth(
        self, auth_config: ClientConfig, transports, clock
    ) -> None:
        """STARTTLS is negotiated and CRAM-MD5 is run."""
        manager = ConnectionManager(auth_config, clock=clock)
        session = manager.connection()

        smtp = transports.created[0]
        smtp.connect.assert_called_once_with("mail.example.com", 587)
        smtp.starttls.assert_called_once()
        smtp.auth.assert_called_once_with("CRAM-MD5", smtp.auth_cram_md5)
        assert session.smtp is smtp
        assert session.tls is True
        assert session.mechanism == "CRAM-MD5"
        assert session.created_at == clock.now
        transports.probe.assert_not_called()

    def test_defaults_applied_once(
        self, client_config: ClientConfig, transports
    ) -> None:
        """The manager works on a defaulted copy of the config."""
        manager = ConnectionManager(client_config)
        assert manager.config.max_lifetime == 60.0
        assert manager.config.tls_policy == TLSPolicy(
            verify=False, server_name="mail.example.com"
        )
        manager.connection()
        assert transports.calls[0]["policy"] == manager.config.tls_policy
        assert transports.calls[0]["command_timeout"] is None

    def test_command_timeout_passed(self, transports) -> None:
        config = ClientConfig(
            host="mail.example.com",
            port=587,
            tls_mode=TLSMode.STARTTLS,
            command_timeout=30,
        )
        ConnectionManager(config).connection()
        assert transports.calls[0]["command_timeout"] == 30

    def test_no_starttls_when_not_offered(
        self, client_config: ClientConfig, transports
    ) -> None:
        """Without STARTTLS advertised the session stays plaintext."""
        transports.features = {}
        session = ConnectionManager(client_config).connection()
        transports.created[0].starttls.assert_not_called()
        assert session.tls is False

    def test_no_auth_without_user(
        self, client_config: ClientConfig, transports
    ) -> None:
        """AUTH is skipped when no user is configured."""
        session = ConnectionManager(client_config).connection()
        transports.created[0].auth.assert_not_called()
        assert session.mechanism is None

    def test_no_auth_when_not_advertised(
        self, auth_config: ClientConfig, transports
    ) -> None:
        """AUTH is skipped when the relay does not offer it."""
        transports.features = {"starttls": ""}
        session = ConnectionManager(auth_config).connection()
        transports.created[0].auth.assert_not_called()
        assert session.mechanism is None

    def test_auto_mode_probes(self, transports) -> None:
        """AUTO probes and dials direct TLS when the probe succeeds."""
        transports.probe.return_value = True
        config = ClientConfig(host="mail.example.com", port=465)

        session = ConnectionManager(config).connection()

        transports.probe.assert_called_once_with(
            "mail.example.com", 465, "mail.example.com"
        )
        assert transports.calls[0]["direct_tls"] is True
        transports.created[0].starttls.assert_not_called()
        assert session.tls is True

    def test_auto_mode_falls_back_to_starttls(
        self, transports
    ) -> None:
        config = ClientConfig(host="mail.example.com", port=25)
        session = ConnectionManager(config).connection()
        assert transports.calls[0]["direct_tls"] is False
        transports.created[0].starttls.assert_called_once()
        assert session.tls is True

    def test_implicit_mode_skips_probe(
        self, transports
    ) -> None:
        config = ClientConfig(
            host="mail.example.com", port=465, tls_mode=TLSMode.IMPLICIT
        )
        ConnectionManager(config).connection()
        transports.probe.assert_not_called()
        assert transports.calls[0]["direct_tls"] is True

    def test_bad_greeting(
        self, client_config: ClientConfig, transports
    ) -> None:
        """A non-220 greeting is a ProtocolError and nothing is cached."""
        transports.greeting = (554, b"5.3.2 Service unavailable")
        manager = ConnectionManager(client_config)

        with pytest.raises(ProtocolError) as exc_info:
            manager.connection()

        assert exc_info.value.code == 554
        transports.created[0].close.assert_called_once()
        with pytest.raises(ProtocolError):
            manager.connection()
        assert len(transports.created) == 2

    def test_starttls_failure(
        self, client_config: ClientConfig, transports
    ) -> None:
        """A failed STARTTLS is fatal and closes the transport."""
        transports.hook = lambda smtp: setattr(
            smtp.starttls, "side_effect", ssl.SSLError("handshake failure")
        )

        with pytest.raises(HandshakeError, match="STARTTLS failed"):
            ConnectionManager(client_config).connection()

        transports.created[0].close.assert_called_once()

    def test_starttls_refused(
        self, client_config: ClientConfig, transports
    ) -> None:
        """A STARTTLS error reply is a handshake failure too."""
        transports.hook = lambda smtp: setattr(
            smtp.starttls,
            "side_effect",
            smtplib.SMTPResponseException(454, b"TLS not available"),
        )
        with pytest.raises(HandshakeError):
            ConnectionManager(client_config).connection()

    def test_auth_failure_closes(
        self, auth_config: ClientConfig, transports
    ) -> None:
        """A rejected login closes the transport and propagates."""
        transports.hook = lambda smtp: setattr(
            smtp.auth,
            "side_effect",
            smtplib.SMTPAuthenticationError(535, b"bad credentials"),
        )

        with pytest.raises(AuthError) as exc_info:
            ConnectionManager(auth_config).connection()

        assert exc_info.value.code == 535
        transports.created[0].close.assert_called_once()

    def test_ehlo_rejected(
        self, client_config: ClientConfig, transports
    ) -> None:
        """A refused EHLO/HELO becomes a ProtocolError."""
        transports.hook = lambda smtp: setattr(
            smtp.ehlo_or_helo_if_needed,
            "side_effect",
            smtplib.SMTPHeloError(501, b"bad hostname"),
        )
        with pytest.raises(ProtocolError) as exc_info:
            ConnectionManager(client_config).connection()
        assert exc_info.value.code == 501

    def test_disconnect_is_dial_error(
        self, client_config: ClientConfig, transports
    ) -> None:
        """A dropped connection during the greeting is a DialError."""
        transports.hook = lambda smtp: setattr(
            smtp.connect,
            "side_effect",
            smtplib.SMTPServerDisconnected("Connection unexpectedly closed"),
        )
        with pytest.raises(DialError):
            ConnectionManager(client_config).connection()
        transports.created[0].close.assert_called_once()


class TestLifetime:
    """Tests for session caching and expiry."""

    def test_cached_within_lifetime(
        self, client_config: ClientConfig, transports, clock
    ) -> None:
        manager = ConnectionManager(client_config, clock=clock)
        first = manager.connection()
        clock.advance(59.999)
        assert manager.connection() is first
        assert len(transports.created) == 1

    def test_rebuilt_at_exact_lifetime(
        self, client_config: ClientConfig, transports, clock
    ) -> None:
        """Elapsed time equal to the lifetime already counts as expired."""
        manager = ConnectionManager(client_config, clock=clock)
        first = manager.connection()
        clock.advance(60.0)

        second = manager.connection()

        assert second is not first
        assert first.closed
        first.smtp.quit.assert_called_once()
        assert len(transports.created) == 2

    def test_rebuilt_after_lifetime(
        self, client_config: ClientConfig, transports, clock
    ) -> None:
        """Sessions past their lifetime are replaced, not kept forever."""
        manager = ConnectionManager(client_config, clock=clock)
        first = manager.connection()
        clock.advance(3600)
        assert manager.connection() is not first

    def test_custom_lifetime(
        self, transports, clock
    ) -> None:
        config = ClientConfig(
            host="mail.example.com",
            port=587,
            tls_mode=TLSMode.STARTTLS,
            max_lifetime=5,
        )
        manager = ConnectionManager(config, clock=clock)
        first = manager.connection()
        clock.advance(4)
        assert manager.connection() is first
        clock.advance(1)
        assert manager.connection() is not first

    def test_failed_rebuild_not_cached(
        self, client_config: ClientConfig, transports, clock
    ) -> None:
        """After a failed rebuild the next call tries again."""
        manager = ConnectionManager(client_config, clock=clock)
        manager.connection()
        clock.advance(60)
        transports.greeting = (421, b"busy")

        with pytest.raises(ProtocolError):
            manager.connection()

        transports.greeting = (220, b"ready")
        assert manager.connection().smtp is transports.created[-1]
        assert len(transports.created) == 3


class TestConcurrency:
    """Tests for single-flight rebuilds."""

    def test_single_flight(
        self, client_config: ClientConfig, transports
    ) -> None:
        """Concurrent callers share one build."""
        building = threading.Event()
        release = threading.Event()

        def block(smtp: MagicMock) -> None:
            building.set()
            assert release.wait(5)

        transports.hook = block
        manager = ConnectionManager(client_config)
        results: list[Session] = []
        lock = threading.Lock()

        def worker() -> None:
            session = manager.connection(timeout=5)
            with lock:
                results.append(session)

        owner = threading.Thread(target=worker)
        owner.start()
        assert building.wait(5)
        waiters = [threading.Thread(target=worker) for _ in range(4)]
        for thread in waiters:
            thread.start()
        time.sleep(0.05)
        release.set()
        for thread in [owner, *waiters]:
            thread.join(5)

        assert len(transports.created) == 1
        assert len(results) == 5
        assert all(session is results[0] for session in results)

    def test_waiters_receive_build_error(
        self, client_config: ClientConfig, transports
    ) -> None:
        """A failed build fails everyone waiting on it."""
        building = threading.Event()
        release = threading.Event()

        def block(smtp: MagicMock) -> None:
            building.set()
            release.wait(5)
            smtp.connect.side_effect = smtplib.SMTPServerDisconnected("gone")

        transports.hook = block
        manager = ConnectionManager(client_config)
        errors: list[BaseException] = []

        def worker() -> None:
            try:
                manager.connection(timeout=5)
            except DialError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker)]
        threads[0].start()
        assert building.wait(5)
        threads.append(threading.Thread(target=worker))
        threads[1].start()
        time.sleep(0.05)
        release.set()
        for thread in threads:
            thread.join(5)

        assert len(errors) == 2

    def test_close_during_build(
        self, client_config: ClientConfig, transports
    ) -> None:
        """A session finished after close() is closed, not cached."""
        building = threading.Event()
        release = threading.Event()

        def block(smtp: MagicMock) -> None:
            building.set()
            assert release.wait(5)

        transports.hook = block
        manager = ConnectionManager(client_config)
        errors: list[BaseException] = []

        def worker() -> None:
            try:
                manager.connection(timeout=5)
            except DialError as e:
                errors.append(e)

        thread = threading.Thread(target=worker)
        thread.start()
        assert building.wait(5)
        manager.close()
        release.set()
        thread.join(5)

        assert len(errors) == 1
        assert "closed while connecting" in str(errors[0])
        assert manager._session is None
        transports.created[0].quit.assert_called_once()

        transports.hook = None
        session = manager.connection()
        assert session.smtp is transports.created[1]
        assert manager._session is session

    def test_wait_timeout(
        self, client_config: ClientConfig, transports
    ) -> None:
        """Waiting for another thread's build honours the timeout."""
        building = threading.Event()
        release = threading.Event()

        def block(smtp: MagicMock) -> None:
            building.set()
            release.wait(5)

        transports.hook = block
        manager = ConnectionManager(client_config)
        owner = threading.Thread(target=manager.connection)
        owner.start()
        try:
            assert building.wait(5)
            with pytest.raises(TimeoutError):
                manager.connection(timeout=0.05)
        finally:
            release.set()
            owner.join(5)


class TestTransaction:
    """Tests for transaction, discard and close."""

    def test_holds_session_lock(
        self, client_config: ClientConfig, transports
    ) -> None:
        manager = ConnectionManager(client_config)
        with manager.transaction() as smtp:
            session = manager.connection()
            assert smtp is session.smtp
            assert session.lock.locked()
        assert not session.lock.locked()
        assert not session.closed

    def test_failure_discards_session(
        self, client_config: ClientConfig, transports
    ) -> None:
        """An exception inside the block discards the session."""
        manager = ConnectionManager(client_config)

        with pytest.raises(ProtocolError):
            with manager.transaction():
                raise ProtocolError(550, "rejected")

        first = transports.created[0]
        first.quit.assert_called_once()
        assert manager.connection().smtp is not first

    def test_skips_closed_session(
        self, client_config: ClientConfig, transports
    ) -> None:
        """A session closed between lookup and locking is not used."""
        manager = ConnectionManager(client_config)
        closed = Session(smtp=MagicMock(), created_at=0.0, tls=False)
        closed.closed = True
        live = Session(smtp=MagicMock(), created_at=0.0, tls=False)

        with patch.object(
            manager, "connection", side_effect=[closed, live]
        ):
            with manager.transaction() as smtp:
                assert smtp is live.smtp

    def test_discard_only_forgets_current(
        self, client_config: ClientConfig, transports
    ) -> None:
        """Discarding a stale session leaves the cached one alone."""
        manager = ConnectionManager(client_config)
        current = manager.connection()
        stale = Session(smtp=MagicMock(), created_at=0.0, tls=False)

        manager.discard(stale)

        assert stale.closed
        assert manager.connection() is current

    def test_close_quits_and_reconnects_later(
        self, client_config: ClientConfig, transports
    ) -> None:
        manager = ConnectionManager(client_config)
        first = manager.connection()

        manager.close()

        first.smtp.quit.assert_called_once()
        assert manager.connection() is not first

    def test_close_without_session(self, client_config: ClientConfig) -> None:
        """Closing an unused manager is a no-op."""
        ConnectionManager(client_config).close()

    def test_context_manager(
        self, client_config: ClientConfig, transports
    ) -> None:
        with ConnectionManager(client_config) as manager:
            session = manager.connection()
        assert session.closed


class TestSession:
    """Tests for Session."""

    def test_is_expired_boundary(self) -> None:
        session = Session(smtp=MagicMock(), created_at=100.0, tls=False)
        assert not session.is_expired(60, 159.9)
        assert session.is_expired(60, 160.0)
        assert session.is_expired(60, 500.0)

    def test_close_idempotent(self) -> None:
        smtp = MagicMock()
        session = Session(smtp=smtp, created_at=0.0, tls=False)
        session.close()
        session.close()
        smtp.quit.assert_called_once()

    def test_close_falls_back_on_quit_error(self) -> None:
        """If QUIT fails the socket is closed anyway."""
        smtp = MagicMock()
        smtp.quit.side_effect = smtplib.SMTPServerDisconnected("gone")
        session = Session(smtp=smtp, created_at=0.0, tls=False)

        session.close()

        smtp.close.assert_called_once()
        assert session.closed


class TestTransport:
    """Tests for the smtplib.SMTP subclass."""

    def test_dial_failure(self) -> None:
        transport = _SMTPTransport(
            TLSPolicy(server_name="mail.example.com"),
            direct_tls=False,
            command_timeout=None,
        )
        with patch(
            "relaymail.connection.socket.create_connection",
            side_effect=ConnectionRefusedError("refused"),
        ):
            with pytest.raises(DialError, match="Cannot connect"):
                transport.connect("mail.example.com", 25)

    def test_connect_applies_server_name_and_timeout(self) -> None:
        """STARTTLS will use the policy's server name."""
        sock = MagicMock()
        sock.makefile.return_value = io.BytesIO(b"220 ready\r\n")
        transport = _SMTPTransport(
            TLSPolicy(server_name="relay.example.com"),
            direct_tls=False,
            command_timeout=30.0,
        )
        with patch(
            "relaymail.connection.socket.create_connection", return_value=sock
        ) as mock_dial:
            code, message = transport.connect("10.0.0.5", 25)

        assert (code, message) == (220, b"ready")
        mock_dial.assert_called_once_with(
            ("10.0.0.5", 25), CONNECT_TIMEOUT, None
        )
        assert transport._host == "relay.example.com"
        sock.settimeout.assert_called_once_with(30.0)

    def test_direct_tls_wraps_with_server_name(self) -> None:
        sock = MagicMock()
        context = MagicMock()
        tls_sock = context.wrap_socket.return_value
        tls_sock.makefile.return_value = io.BytesIO(b"220 ready\r\n")
        policy = TLSPolicy(server_name="relay.example.com")
        transport = _SMTPTransport(
            policy, direct_tls=True, command_timeout=None
        )

        with (
            patch(
                "relaymail.connection.socket.create_connection",
                return_value=sock,
            ),
            patch.object(TLSPolicy, "context", return_value=context),
        ):
            transport.connect("10.0.0.5", 465)

        context.wrap_socket.assert_called_once_with(
            sock, server_hostname="relay.example.com"
        )
        assert transport.sock is tls_sock

    def test_direct_tls_handshake_failure(self) -> None:
        sock = MagicMock()
        context = MagicMock()
        context.wrap_socket.side_effect = ssl.SSLError("bad record")
        transport = _SMTPTransport(
            TLSPolicy(server_name="mail.example.com"),
            direct_tls=True,
            command_timeout=None,
        )

        with (
            patch(
                "relaymail.connection.socket.create_connection",
                return_value=sock,
            ),
            patch.object(TLSPolicy, "context", return_value=context),
        ):
            with pytest.raises(HandshakeError, match="TLS handshake"):
                transport.connect("mail.example.com", 465)

        sock.close.assert_called_once()


class TestProbe:
    """Tests for probe_direct_tls."""

    def test_plaintext_server(self) -> None:
        """A failed handshake means plaintext."""
        with (
            patch("relaymail.connection.socket.create_connection") as dial,
            patch("relaymail.connection.ssl.create_default_context") as ctx,
        ):
            ctx.return_value.wrap_socket.side_effect = ssl.SSLError(
                "wrong version number"
            )
            assert probe_direct_tls("mail.example.com", 25) is False
        dial.assert_called_once_with(
            ("mail.example.com", 25), CONNECT_TIMEOUT
        )

    def test_unreachable(self) -> None:
        with patch(
            "relaymail.connection.socket.create_connection",
            side_effect=socket.timeout("timed out"),
        ):
            assert probe_direct_tls("mail.example.com", 465) is False

    def test_tls_server(self) -> None:
        """A line back over TLS means direct TLS."""
        with (
            patch("relaymail.connection.socket.create_connection"),
            patch("relaymail.connection.ssl.create_default_context") as ctx,
        ):
            wrapped = ctx.return_value.wrap_socket.return_value
            tls = wrapped.__enter__.return_value
            tls.makefile.return_value = io.BytesIO(b"500 5.5.1 Unknown\r\n")

            assert probe_direct_tls("mail.example.com", 465, "relay") is True

        tls.sendall.assert_called_once_with(b"GET / HTTP/1.0\r\n\r\n")
        ctx.return_value.wrap_socket.assert_called_once()
        assert (
            ctx.return_value.wrap_socket.call_args.kwargs["server_hostname"]
            == "relay"
        )
        assert ctx.return_value.verify_mode == ssl.CERT_NONE

    def test_connection_closed_without_line(self) -> None:
        """EOF before a newline is not a TLS endpoint."""
        with (
            patch("relaymail.connection.socket.create_connection"),
            patch("relaymail.connection.ssl.create_default_context") as ctx,
        ):
            wrapped = ctx.return_value.wrap_socket.return_value
            tls = wrapped.__enter__.return_value
            tls.makefile.return_value = io.BytesIO(b"")
            assert probe_direct_tls("mail.example.com", 465) is False
