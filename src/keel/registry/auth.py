"""Authentication providers for registry operations.

Supported Authentication Types:
- AnonymousAuthProvider: No credentials (public registries, local registries)
- BasicAuthProvider: Username/password (Harbor, self-hosted)
- TokenAuthProvider: Personal access token (GitHub Packages, GitLab)
- IRSAAuthProvider: AWS IAM role via ECR authorization token (Amazon ECR)

Credentials are only ever read from the process environment:

    KEEL_REGISTRY_USERNAME   basic auth username (optional for token auth)
    KEEL_REGISTRY_PASSWORD   basic auth password
    KEEL_REGISTRY_TOKEN      token auth

Example:
    >>> import os
    >>> from keel.registry.auth import create_auth_provider
    >>> provider = create_auth_provider(registry_config, os.environ)
    >>> creds = provider.get_credentials()
"""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog
from pydantic import SecretStr

from keel.errors import AuthenticationError, ConfigurationError
from keel.schemas.pipeline import AuthType, RegistryConfig

logger = structlog.get_logger(__name__)

ENV_USERNAME = "KEEL_REGISTRY_USERNAME"
ENV_PASSWORD = "KEEL_REGISTRY_PASSWORD"  # pragma: allowlist secret
ENV_TOKEN = "KEEL_REGISTRY_TOKEN"  # pragma: allowlist secret

TOKEN_USERNAME = "keel"
"""Username sent with a bare token; registries accepting PATs ignore it."""


@dataclass(frozen=True)
class Credentials:
    """Container for registry credentials.

    Attributes:
        username: Username for basic auth or token exchange.
        password: Password or token (never logged).
        expires_at: Expiry time for token-based credentials (None if non-expiring).
    """

    username: str
    password: SecretStr = field(repr=False)
    expires_at: datetime | None = None

    @property
    def is_expired(self) -> bool:
        """Check if credentials have expired."""
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) > self.expires_at

    def basic_auth(self) -> tuple[str, str]:
        """Credentials as an httpx basic auth tuple."""
        return self.username, self.password.get_secret_value()


class AuthProvider(ABC):
    """Abstract base class for registry authentication providers.

    Subclasses must implement:
        - get_credentials(): Current credentials, or None for anonymous access
        - refresh_if_needed(): Refresh credentials if expired/expiring
    """

    @abstractmethod
    def get_credentials(self) -> Credentials | None:
        """Retrieve current credentials.

        Raises:
            AuthenticationError: If credentials cannot be retrieved.
        """
        ...

    @abstractmethod
    def refresh_if_needed(self) -> bool:
        """Refresh credentials if expired or about to expire.

        Returns:
            True if credentials were refreshed, False otherwise.
        """
        ...

    @property
    @abstractmethod
    def auth_type(self) -> AuthType:
        """Return the authentication type."""
        ...


class AnonymousAuthProvider(AuthProvider):
    """No credentials. Bearer challenges are answered with anonymous tokens."""

    @property
    def auth_type(self) -> AuthType:
        return AuthType.ANONYMOUS

    def get_credentials(self) -> Credentials | None:
        return None

    def refresh_if_needed(self) -> bool:
        return False


class BasicAuthProvider(AuthProvider):
    """Static username/password credentials."""

    def __init__(self, registry: str, username: str, password: SecretStr) -> None:
        self._registry = registry
        self._credentials = Credentials(username=username, password=password)

    @property
    def auth_type(self) -> AuthType:
        return AuthType.BASIC

    def get_credentials(self) -> Credentials:
        return self._credentials

    def refresh_if_needed(self) -> bool:
        """Refresh not needed for basic auth (non-expiring)."""
        return False


class TokenAuthProvider(AuthProvider):
    """Personal access token, exchanged at the registry's token endpoint.

    Example:
        >>> provider = TokenAuthProvider("ghcr.io", SecretStr("ghp_..."))
        >>> provider.get_credentials().username
        'keel'
    """

    def __init__(
        self,
        registry: str,
        token: SecretStr,
        username: str | None = None,
    ) -> None:
        self._registry = registry
        self._credentials = Credentials(username=username or TOKEN_USERNAME, password=token)

    @property
    def auth_type(self) -> AuthType:
        return AuthType.TOKEN

    def get_credentials(self) -> Credentials:
        return self._credentials

    def refresh_if_needed(self) -> bool:
        return False


class IRSAAuthProvider(AuthProvider):
    """Amazon ECR credentials from the ambient AWS identity.

    Uses boto3 to get an ECR authorization token with the IAM role attached
    to the runner (IRSA, instance profile or OIDC-assumed role).

    Example:
        >>> provider = IRSAAuthProvider("123456789012.dkr.ecr.eu-west-1.amazonaws.com")
        >>> provider.get_credentials().username
        'AWS'
    """

    # Refresh 30 minutes before the 12h ECR token expiry
    REFRESH_BUFFER_MINUTES = 30

    def __init__(self, registry: str, region: str | None = None) -> None:
        self._registry = registry
        self._region = region
        self._credentials: Credentials | None = None

    @property
    def auth_type(self) -> AuthType:
        return AuthType.AWS_IRSA

    def get_credentials(self) -> Credentials:
        """Retrieve an ECR auth token.

        Raises:
            AuthenticationError: If token retrieval fails.
        """
        if self._credentials is not None and not self._should_refresh():
            return self._credentials

        import boto3
        from botocore.config import Config

        try:
            region = self._region or self._extract_region()
            ecr_client = boto3.client(
                "ecr",
                region_name=region,
                config=Config(connect_timeout=10, read_timeout=30, retries={"max_attempts": 3}),
            )
            response = ecr_client.get_authorization_token()

            auth_data = response["authorizationData"][0]
            # Token is base64 encoded "username:password"
            token = base64.b64decode(auth_data["authorizationToken"]).decode("utf-8")
            username, password = token.split(":", 1)

            expires_at = auth_data.get("expiresAt")
            if isinstance(expires_at, datetime) and expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)

            self._credentials = Credentials(
                username=username,
                password=SecretStr(password),
                expires_at=expires_at,
            )

            logger.debug(
                "irsa_credentials_obtained",
                registry=self._registry,
                expires_at=expires_at.isoformat() if expires_at else None,
            )
            return self._credentials

        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(
                self._registry,
                f"Failed to get ECR authorization token: {e}",
            ) from e

    def refresh_if_needed(self) -> bool:
        """Refresh credentials if within REFRESH_BUFFER_MINUTES of expiry."""
        if not self._should_refresh():
            return False

        self._credentials = None
        self.get_credentials()
        return True

    def _should_refresh(self) -> bool:
        if self._credentials is None:
            return True
        if self._credentials.expires_at is None:
            return False

        buffer = timedelta(minutes=self.REFRESH_BUFFER_MINUTES)
        return datetime.now(timezone.utc) > (self._credentials.expires_at - buffer)

    def _extract_region(self) -> str:
        """Extract the AWS region from an ECR host.

        ECR host format: 123456789012.dkr.ecr.REGION.amazonaws.com
        """
        parts = self._registry.split(".")
        if len(parts) >= 4 and parts[1] == "dkr" and parts[2] == "ecr":
            return parts[3]
        raise AuthenticationError(
            self._registry,
            "Cannot extract AWS region from ECR host; set registry.aws_region",
        )


def create_auth_provider(
    config: RegistryConfig,
    environ: Mapping[str, str],
) -> AuthProvider:
    """Create the auth provider configured for a registry.

    Args:
        config: Registry configuration (selects the auth type).
        environ: Environment to read secrets from.

    Raises:
        ConfigurationError: If the auth type requires secrets that are unset.
    """
    auth_type = config.auth

    if auth_type == AuthType.ANONYMOUS:
        return AnonymousAuthProvider()

    if auth_type == AuthType.BASIC:
        username = environ.get(ENV_USERNAME, "").strip()
        password = environ.get(ENV_PASSWORD, "")
        if not username or not password:
            raise ConfigurationError(
                f"registry auth 'basic' requires {ENV_USERNAME} and {ENV_PASSWORD}"
            )
        return BasicAuthProvider(config.host, username, SecretStr(password))

    if auth_type == AuthType.TOKEN:
        token = environ.get(ENV_TOKEN, "")
        if not token:
            raise ConfigurationError(f"registry auth 'token' requires {ENV_TOKEN}")
        return TokenAuthProvider(
            config.host,
            SecretStr(token),
            username=environ.get(ENV_USERNAME, "").strip() or None,
        )

    if auth_type == AuthType.AWS_IRSA:
        return IRSAAuthProvider(config.host, region=config.aws_region)

    raise ConfigurationError(f"Unknown registry auth type: {auth_type}")


__all__ = [
    "AnonymousAuthProvider",
    "AuthProvider",
    "BasicAuthProvider",
    "Credentials",
    "IRSAAuthProvider",
    "TokenAuthProvider",
    "create_auth_provider",
]
