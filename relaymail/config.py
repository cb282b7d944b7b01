# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Connection settings for the relay client.

``ClientConfig`` is the immutable description of one relay: where it lives,
how to authenticate, and how to negotiate TLS.  It can be built directly or
loaded from YAML with ``load_config``; YAML values may use ``!env VAR`` tags
that resolve from the environment (after a one-shot ``.env`` load).

Two fields are defaulted lazily rather than at construction:
``max_lifetime`` and ``tls_policy``.  ``with_defaults()`` fills them in and is
called exactly once by ``ConnectionManager`` before the instance is shared
between threads.  The default TLS policy does NOT verify certificates; this
matches relays with self-signed certificates common on internal networks and
must be overridden (``tls.verify: true``) where that is not acceptable.
"""

import dataclasses
import logging
import os
import ssl
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar, overload

import yaml

from relaymail.dotenv_loader import load_dotenv_once
from relaymail.logging import SecretFilter


logger = logging.getLogger(__name__)

#: Session lifetime applied when none is configured (seconds).
DEFAULT_MAX_LIFETIME = 60.0

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})


class ConfigError(Exception):
    """Raised when relay configuration is missing or invalid."""


class TLSMode(Enum):
    """How the transport is secured.

    AUTO probes the endpoint for direct TLS and falls back to STARTTLS.
    """

    AUTO = "auto"
    IMPLICIT = "implicit"
    STARTTLS = "starttls"


@dataclass(frozen=True)
class TLSPolicy:
    """Certificate handling for TLS connections to the relay.

    Attributes:
        verify: Verify the certificate chain and hostname.
        server_name: Name sent in SNI and checked against the certificate.
            None means the configured host.
    """

    verify: bool = True
    server_name: str | None = None

    def context(self) -> ssl.SSLContext:
        """Build an ``SSLContext`` implementing this policy."""
        context = ssl.create_default_context()
        if not self.verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context


@dataclass(frozen=True)
class ClientConfig:
    """Relay connection configuration.

    Attributes:
        host: Relay hostname or IP address.
        port: Relay TCP port.
        user: Login name. NTLM expects ``domain\\username``. Empty disables
            authentication.
        password: Login password (auto-redacted in logs).
        workstation: Workstation name announced during NTLM authentication.
        sender: Default From address for outgoing mail.
        max_lifetime: Seconds a session is reused before it is rebuilt.
            None until ``with_defaults()`` applies ``DEFAULT_MAX_LIFETIME``.
        tls_policy: Certificate handling. None until ``with_defaults()``
            applies the unverified default for ``host``.
        tls_mode: Direct TLS, STARTTLS, or probe (``AUTO``).
        command_timeout: Socket timeout in seconds for SMTP commands after
            the dial. None leaves commands blocking without a limit.
        microsoft_oauth2_tenant_id: Azure AD tenant for XOAUTH2.
        microsoft_oauth2_client_id: Azure AD application ID for XOAUTH2.
        microsoft_oauth2_client_secret: Azure AD client secret for XOAUTH2.
    """

    host: str
    port: int
    user: str = ""
    password: str = ""
    workstation: str = ""
    sender: str = ""
    max_lifetime: float | None = None
    tls_policy: TLSPolicy | None = None
    tls_mode: TLSMode = TLSMode.AUTO
    command_timeout: float | None = None
    microsoft_oauth2_tenant_id: str | None = None
    microsoft_oauth2_client_id: str | None = None
    microsoft_oauth2_client_secret: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration and register secrets.

        Raises:
            ValueError: If configuration is invalid.
        """
        SecretFilter.register_secret(self.password)
        SecretFilter.register_secret(self.microsoft_oauth2_client_secret)

        if not self.host:
            raise ValueError("SMTP host cannot be empty")
        if not (1 <= self.port <= 65535):
            raise ValueError(f"Invalid SMTP port: {self.port}")
        if self.max_lifetime is not None and self.max_lifetime <= 0:
            raise ValueError(
                f"Session lifetime must be > 0s: {self.max_lifetime}"
            )
        if self.command_timeout is not None and self.command_timeout <= 0:
            raise ValueError(
                f"Command timeout must be > 0s: {self.command_timeout}"
            )
        oauth2 = (
            self.microsoft_oauth2_tenant_id,
            self.microsoft_oauth2_client_id,
            self.microsoft_oauth2_client_secret,
        )
        if any(oauth2) and not all(oauth2):
            raise ValueError(
                "Microsoft OAuth2 requires tenant_id, client_id and "
                "client_secret together"
            )

    @property
    def uses_oauth2(self) -> bool:
        """True when XOAUTH2 credentials are configured."""
        return bool(self.microsoft_oauth2_tenant_id)

    def with_defaults(self) -> "ClientConfig":
        """Return a copy with the lazily-defaulted fields filled in."""
        changes: dict[str, Any] = {}
        if self.max_lifetime is None:
            changes["max_lifetime"] = DEFAULT_MAX_LIFETIME
        if self.tls_policy is None:
            changes["tls_policy"] = TLSPolicy(
                verify=False, server_name=self.host
            )
        elif self.tls_policy.server_name is None:
            changes["tls_policy"] = dataclasses.replace(
                self.tls_policy, server_name=self.host
            )
        if not changes:
            return self
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ClientConfig":
        """Build a config from the ``smtp`` mapping of a YAML document.

        Args:
            raw: Mapping as parsed by the ``!env``-aware loader.

        Returns:
            Validated configuration.

        Raises:
            ConfigError: If a required value is missing or invalid.
        """
        tls_raw = raw.get("tls") or {}
        oauth_raw = raw.get("microsoft_oauth2") or {}

        mode_value = _resolve(tls_raw.get("mode"), str, default="auto")
        try:
            tls_mode = TLSMode(mode_value.lower())
        except ValueError:
            raise ConfigError(
                f"Invalid tls.mode {mode_value!r} "
                f"(expected one of: auto, implicit, starttls)"
            ) from None

        tls_policy = None
        if "verify" in tls_raw or "server_name" in tls_raw:
            tls_policy = TLSPolicy(
                verify=_resolve(tls_raw.get("verify"), bool, default=False),
                server_name=_resolve(tls_raw.get("server_name"), str),
            )

        try:
            return cls(
                host=_resolve(raw.get("host"), str, required="smtp.host"),
                port=_resolve(raw.get("port"), int, required="smtp.port"),
                user=_resolve(raw.get("user"), str, default=""),
                password=_resolve(raw.get("password"), str, default=""),
                workstation=_resolve(raw.get("workstation"), str, default=""),
                sender=_resolve(raw.get("from"), str, default=""),
                max_lifetime=_resolve(raw.get("max_lifetime_seconds"), float),
                tls_policy=tls_policy,
                tls_mode=tls_mode,
                command_timeout=_resolve(
                    raw.get("command_timeout_seconds"), float
                ),
                microsoft_oauth2_tenant_id=_resolve(
                    oauth_raw.get("tenant_id"), str
                ),
                microsoft_oauth2_client_id=_resolve(
                    oauth_raw.get("client_id"), str
                ),
                microsoft_oauth2_client_secret=_resolve(
                    oauth_raw.get("client_secret"), str
                ),
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    return _EnvVar(str(loader.construct_scalar(node)))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


def _coerce_bool(value: object) -> bool:
    """Coerce a value to bool, handling string representations."""
    if isinstance(value, bool):
        return value
    text = str(value).lower().strip()
    if text in _BOOL_TRUTHY:
        return True
    if text in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


_MISSING = object()

T = TypeVar("T")


@overload
def _resolve(value: object, coerce: type[T], *, default: T) -> T: ...


@overload
def _resolve(value: object, coerce: type[T], *, required: str) -> T: ...


@overload
def _resolve(value: object, coerce: type[T]) -> T | None: ...


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
    required: str = "",
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (``_EnvVar``, None, or a literal).
        coerce: Target type (``str``, ``int``, ``float``, ``bool``).
        default: Returned when the value is absent.
        required: Field name; when set, an absent value is an error.

    Returns:
        The coerced value, or None when optional and absent.

    Raises:
        ConfigError: If a required value is absent or coercion fails.
    """
    if isinstance(value, _EnvVar):
        resolved: object = os.environ.get(value.var_name) or None
        if resolved is None and required:
            raise ConfigError(
                f"Required config '{required}': environment variable "
                f"'{value.var_name}' is not set"
            )
    else:
        resolved = value

    if resolved is None:
        if required:
            raise ConfigError(f"Required config '{required}' is missing")
        if default is not _MISSING:
            return default
        return None

    if coerce is bool:
        return _coerce_bool(resolved)
    if isinstance(resolved, coerce) and not isinstance(resolved, bool):
        return resolved
    try:
        return coerce(resolved)
    except (TypeError, ValueError) as e:
        raise ConfigError(
            f"Cannot convert {resolved!r} to {coerce.__name__}"
        ) from e


def load_config(
    config_path: Path, env_path: Path | None = None
) -> ClientConfig:
    """Load a relay configuration file.

    Args:
        config_path: YAML file with a top-level ``smtp`` mapping.
        env_path: Optional ``.env`` file consulted for ``!env`` values.

    Returns:
        Validated configuration.

    Raises:
        ConfigError: If the file is missing, malformed or incomplete.
    """
    load_dotenv_once(env_path)

    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open() as f:
            document = yaml.load(f, Loader=_make_loader())  # noqa: S506
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(document, dict) or not isinstance(
        document.get("smtp"), dict
    ):
        raise ConfigError(f"{config_path}: missing 'smtp' section")

    config = ClientConfig.from_dict(document["smtp"])
    logger.debug(
        "Loaded relay config for %s:%d from %s",
        config.host,
        config.port,
        config_path,
    )
    return config
