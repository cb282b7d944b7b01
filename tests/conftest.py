# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test modules."""

from collections.abc import Callable, Iterator
from unittest.mock import MagicMock, patch

import pytest

from relaymail.config import ClientConfig, TLSMode, TLSPolicy
from relaymail.logging import SecretFilter


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _clear_secrets() -> Iterator[None]:
    """Keep the process-wide secret registry isolated per test."""
    SecretFilter.clear_secrets()
    yield
    SecretFilter.clear_secrets()


@pytest.fixture
def clock() -> FakeClock:
    """A fake clock starting at t=1000."""
    return FakeClock()


@pytest.fixture
def client_config() -> ClientConfig:
    """Plain STARTTLS-mode config without credentials."""
    return ClientConfig(
        host="mail.example.com",
        port=587,
        sender="Reports <reports@example.com>",
        tls_mode=TLSMode.STARTTLS,
    )


@pytest.fixture
def auth_config() -> ClientConfig:
    """Config with a login, as used for AUTH tests."""
    return ClientConfig(
        host="mail.example.com",
        port=587,
        user="CORP\\alice",
        password="s3cret-pass",
        workstation="WS01",
        sender="alice@example.com",
        tls_mode=TLSMode.STARTTLS,
    )


def _make_smtp(
    features: dict[str, str] | None = None,
    greeting: tuple[int, bytes] = (220, b"mail.example.com ESMTP"),
) -> MagicMock:
    """Create a MagicMock standing in for a connected ``smtplib.SMTP``."""
    smtp = MagicMock()
    smtp.esmtp_features = dict(features or {})
    smtp.has_extn.side_effect = lambda name: (
        name.lower() in smtp.esmtp_features
    )
    smtp.connect.return_value = greeting
    smtp.mail.return_value = (250, b"2.1.0 Sender OK")
    smtp.rcpt.return_value = (250, b"2.1.5 Recipient OK")
    smtp.data.return_value = (250, b"2.0.0 Queued")
    return smtp


class TransportFactory:
    """Stand-in for ``_SMTPTransport`` that records what it builds."""

    def __init__(self, make_smtp: Callable[..., MagicMock]) -> None:
        self.make_smtp = make_smtp
        self.features: dict[str, str] = {"starttls": "", "auth": "CRAM-MD5"}
        self.greeting = (220, b"mail.example.com ESMTP")
        self.created: list[MagicMock] = []
        self.calls: list[dict[str, object]] = []
        self.hook: Callable[[MagicMock], None] | None = None

    def __call__(
        self,
        policy: TLSPolicy,
        *,
        direct_tls: bool,
        command_timeout: float | None,
    ) -> MagicMock:
        self.calls.append(
            {
                "policy": policy,
                "direct_tls": direct_tls,
                "command_timeout": command_timeout,
            }
        )
        smtp = self.make_smtp(self.features, self.greeting)
        self.created.append(smtp)
        if self.hook is not None:
            self.hook(smtp)
        return smtp


@pytest.fixture
def transports() -> Iterator[TransportFactory]:
    """Patch the SMTP transport with a recording factory."""
    factory = TransportFactory(_make_smtp)
    with (
        patch("relaymail.connection._SMTPTransport", side_effect=factory),
        patch(
            "relaymail.connection.probe_direct_tls", return_value=False
        ) as probe,
    ):
        factory.probe = probe  # type: ignore[attr-defined]
        yield factory
