"""Registry access: auth providers, OCI layout reader and HTTP client.

Example:
    >>> from keel.registry import RegistryClient, OCILayout
    >>> client = RegistryClient.from_config(config, os.environ)
    >>> digest = client.publish(OCILayout(layout_dir), "ghcr.io/acme/shop", "sha-1a2b3c4")
"""

from __future__ import annotations

from keel.registry.auth import (
    AnonymousAuthProvider,
    AuthProvider,
    BasicAuthProvider,
    Credentials,
    IRSAAuthProvider,
    TokenAuthProvider,
    create_auth_provider,
)
from keel.registry.client import RegistryClient
from keel.registry.layout import OCILayout, sha256_digest
from keel.registry.resilience import RetryPolicy

__all__ = [
    "AnonymousAuthProvider",
    "AuthProvider",
    "BasicAuthProvider",
    "Credentials",
    "IRSAAuthProvider",
    "OCILayout",
    "RegistryClient",
    "RetryPolicy",
    "TokenAuthProvider",
    "create_auth_provider",
    "sha256_digest",
]
