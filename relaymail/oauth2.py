# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""XOAUTH2 credentials for Microsoft 365 relays.

Exchange Online accepts SMTP AUTH with the XOAUTH2 SASL mechanism when the
client presents an Entra ID access token.  ``OAuth2TokenProvider`` obtains
that token through MSAL's client credentials flow; MSAL caches it and only
goes back to Entra ID once it expires.
"""

import logging

from msal import ConfidentialClientApplication

from relaymail.config import ClientConfig
from relaymail.errors import AuthError


logger = logging.getLogger(__name__)

#: The only scope Exchange Online accepts for client-credential SMTP.
DEFAULT_SCOPES = ("https://outlook.office365.com/.default",)


class OAuth2TokenError(AuthError):
    """Raised when an access token cannot be acquired."""


class OAuth2TokenProvider:
    """Client-credentials token source for XOAUTH2.

    Attributes:
        tenant_id: Entra ID tenant.
        client_id: Application (client) ID of the app registration.
        scopes: Scopes requested for the token.
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        scopes: tuple[str, ...] = DEFAULT_SCOPES,
    ) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.scopes = scopes
        self._app = ConfidentialClientApplication(
            client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            client_credential=client_secret,
        )

    @classmethod
    def from_config(
        cls, config: ClientConfig
    ) -> "OAuth2TokenProvider | None":
        """Build a provider from ``ClientConfig``, or None if not configured."""
        if not config.uses_oauth2:
            return None
        assert config.microsoft_oauth2_client_id
        assert config.microsoft_oauth2_client_secret
        return cls(
            tenant_id=config.microsoft_oauth2_tenant_id,
            client_id=config.microsoft_oauth2_client_id,
            client_secret=config.microsoft_oauth2_client_secret,
        )

    def access_token(self) -> str:
        """Return a cached or freshly acquired access token.

        Raises:
            OAuth2TokenError: If Entra ID refuses the request.
        """
        result = self._app.acquire_token_for_client(scopes=list(self.scopes))
        token = result.get("access_token")
        if token:
            logger.debug("Acquired OAuth2 token for client %s", self.client_id)
            return token

        error = result.get("error", "unknown_error")
        description = result.get("error_description", "No description")
        raise OAuth2TokenError(
            f"Failed to acquire token: {error}: {description}"
        )

    def xoauth2_string(self, user: str) -> str:
        r"""Build the XOAUTH2 initial response for ``user``.

        Format: ``user={user}\x01auth=Bearer {token}\x01\x01``
        """
        return f"user={user}\x01auth=Bearer {self.access_token()}\x01\x01"
