# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""SMTP AUTH mechanism selection and execution.

Selection is a pure function of what the relay advertises and what the
client is configured with; it returns one of the mechanism variants below.
``authenticate`` then runs exactly that mechanism on a connected client.

Preference order:

1. XOAUTH2, only when a token provider is configured and it is advertised
2. CRAM-MD5
3. NTLM (requires a ``domain\\username`` login)
4. PLAIN, refused on an unencrypted channel to anything but localhost

XOAUTH2 is opt-in: without a token provider the order is exactly
CRAM-MD5, NTLM, PLAIN.
"""

import logging
import smtplib
from dataclasses import dataclass, field

from relaymail.config import ClientConfig
from relaymail.errors import AuthError
from relaymail.ntlm import NTLMAuthState, run_ntlm_exchange, split_domain_user
from relaymail.oauth2 import OAuth2TokenProvider


logger = logging.getLogger(__name__)

_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


@dataclass(frozen=True)
class PlainMechanism:
    """RFC 4616 PLAIN."""

    user: str
    password: str = field(repr=False)
    name: str = field(default="PLAIN", init=False)


@dataclass(frozen=True)
class CramMD5Mechanism:
    """RFC 2195 CRAM-MD5 keyed-hash challenge response."""

    user: str
    password: str = field(repr=False)
    name: str = field(default="CRAM-MD5", init=False)


@dataclass(frozen=True)
class NTLMMechanism:
    """Three-message NTLM exchange.

    Attributes:
        host: Relay the credentials are bound to.
        user: Login in ``domain\\username`` form.
        password: Account password.
        workstation: Workstation announced to the server.
    """

    host: str
    user: str
    password: str = field(repr=False)
    workstation: str = ""
    name: str = field(default="NTLM", init=False)


@dataclass(frozen=True)
class XOAuth2Mechanism:
    """XOAUTH2 bearer token (Microsoft 365)."""

    user: str
    token_provider: OAuth2TokenProvider = field(repr=False)
    name: str = field(default="XOAUTH2", init=False)


AuthMechanism = (
    PlainMechanism | CramMD5Mechanism | NTLMMechanism | XOAuth2Mechanism
)


def parse_advertised(auth_extension: str) -> frozenset[str]:
    """Parse the EHLO ``AUTH`` parameter into upper-cased mechanism names."""
    return frozenset(auth_extension.upper().split())


def select_mechanism(
    advertised: frozenset[str],
    config: ClientConfig,
    token_provider: OAuth2TokenProvider | None = None,
) -> AuthMechanism:
    """Choose the mechanism to authenticate with.

    Args:
        advertised: Mechanisms from ``parse_advertised``.
        config: Relay configuration holding the credentials.
        token_provider: XOAUTH2 token source, if configured.

    Returns:
        The selected mechanism, carrying the data it needs.

    Raises:
        AuthError: If NTLM is selected and the login is not
            ``domain\\username``.
    """
    if token_provider is not None and "XOAUTH2" in advertised:
        return XOAuth2Mechanism(user=config.user, token_provider=token_provider)
    if "CRAM-MD5" in advertised:
        return CramMD5Mechanism(user=config.user, password=config.password)
    if "NTLM" in advertised:
        split_domain_user(config.user)
        return NTLMMechanism(
            host=config.host,
            user=config.user,
            password=config.password,
            workstation=config.workstation,
        )
    return PlainMechanism(user=config.user, password=config.password)


def authenticate(
    smtp: smtplib.SMTP,
    mechanism: AuthMechanism,
    *,
    host: str,
    tls_active: bool,
) -> None:
    """Run ``mechanism`` on a connected client that has completed EHLO.

    Args:
        smtp: Connected client.
        mechanism: Mechanism from ``select_mechanism``.
        host: Host the session was opened against.
        tls_active: Whether the channel is TLS-protected.

    Raises:
        AuthError: If the mechanism is refused locally or by the server.
    """
    logger.debug("Authenticating as %s with %s", mechanism.user, mechanism.name)

    if isinstance(mechanism, NTLMMechanism):
        state = NTLMAuthState(
            mechanism.host,
            mechanism.user,
            mechanism.password,
            mechanism.workstation,
        )
        run_ntlm_exchange(smtp, state, host=host, tls_active=tls_active)
        return

    try:
        match mechanism:
            case PlainMechanism():
                if not tls_active and host not in _LOCAL_HOSTS:
                    raise AuthError("unencrypted connection")
                smtp.user, smtp.password = mechanism.user, mechanism.password
                smtp.auth("PLAIN", smtp.auth_plain)
            case CramMD5Mechanism():
                smtp.user, smtp.password = mechanism.user, mechanism.password
                smtp.auth("CRAM-MD5", smtp.auth_cram_md5)
            case XOAuth2Mechanism():
                auth_string = mechanism.token_provider.xoauth2_string(
                    mechanism.user
                )

                def _xoauth2_authobject(
                    _challenge: bytes | None = None,
                ) -> str:
                    return auth_string

                smtp.auth("XOAUTH2", _xoauth2_authobject)
    except smtplib.SMTPAuthenticationError as e:
        raise AuthError(
            f"{mechanism.name} authentication rejected: {e.smtp_code} "
            f"{_decode(e.smtp_error)}",
            code=e.smtp_code,
        ) from e
    except smtplib.SMTPResponseException as e:
        raise AuthError(
            f"{mechanism.name} authentication failed: {e.smtp_code} "
            f"{_decode(e.smtp_error)}",
            code=e.smtp_code,
        ) from e
    except smtplib.SMTPException as e:
        raise AuthError(f"{mechanism.name} authentication failed: {e}") from e


def _decode(text: bytes | str) -> str:
    if isinstance(text, bytes):
        return text.decode("utf-8", errors="replace")
    return text
