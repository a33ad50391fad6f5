"""Registry client over the OCI distribution HTTP API.

Key Features:
    - Publish an OCI image layout (blobs, child manifests, root under a tag)
    - Check digest existence and resolve tags without downloading content
    - Copy a tag by digest: the exact manifest bytes are re-PUT under the new
      tag, so the digest never changes and no layer is fetched
    - Bearer-token challenge handling (``WWW-Authenticate``) and Basic auth
    - Retry with exponential backoff for transient failures
    - Every request bounded by an ``httpx.Timeout``

Example:
    >>> from keel.registry import RegistryClient
    >>> from keel.schemas.pipeline import RegistryConfig
    >>> with RegistryClient.from_config(RegistryConfig(host="ghcr.io"), os.environ) as client:
    ...     digest = client.resolve_tag("acme/shop", "staging")
"""

from __future__ import annotations

import base64
import re
import threading
from collections.abc import Mapping
from types import TracebackType

import httpx
import structlog

from keel.errors import (
    AuthenticationError,
    DigestMismatchError,
    ReferenceNotFound,
    RegistryError,
    RegistryUnavailableError,
)
from keel.registry.auth import AuthProvider, Credentials, create_auth_provider
from keel.registry.layout import ACCEPT_MANIFEST_TYPES, OCILayout, sha256_digest
from keel.registry.resilience import RetryPolicy
from keel.schemas.pipeline import RegistryConfig
from keel.schemas.reference import CanonicalReference, split_location
from keel.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

DOCKER_HUB_API_HOST = "registry-1.docker.io"

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Parse a ``WWW-Authenticate`` header into (scheme, params).

    Examples:
        >>> parse_challenge('Bearer realm="https://ghcr.io/token",service="ghcr.io"')
        ('bearer', {'realm': 'https://ghcr.io/token', 'service': 'ghcr.io'})
    """
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(rest))


class RegistryClient:
    """Client for one registry host.

    Thread-safe: a single client may be shared by concurrent promote workers.

    Attributes:
        host: Registry host as it appears in references (e.g. ``ghcr.io``).
    """

    def __init__(
        self,
        host: str,
        *,
        auth_provider: AuthProvider | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float = 30.0,
        tls_verify: bool = True,
        insecure_http: bool = False,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize RegistryClient.

        Args:
            host: Registry host (optionally with port).
            auth_provider: Credentials source. Anonymous if None.
            retry_policy: Retry policy for transient failures.
            timeout: Per-request timeout in seconds.
            tls_verify: Verify TLS certificates.
            insecure_http: Use plain HTTP (local registries only).
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.host = host
        self._auth_provider = auth_provider
        self._retry_policy = retry_policy or RetryPolicy()
        api_host = DOCKER_HUB_API_HOST if host == "docker.io" else host
        scheme = "http" if insecure_http else "https"
        self._base_url = f"{scheme}://{api_host}"
        self._http = httpx.Client(
            timeout=httpx.Timeout(timeout),
            verify=tls_verify,
            transport=transport,
            follow_redirects=True,
        )
        self._tokens: dict[str, str] = {}
        self._basic = False
        self._lock = threading.Lock()

        logger.debug("registry_client_initialized", registry=host, timeout=timeout)

    @classmethod
    def from_config(
        cls,
        config: RegistryConfig,
        environ: Mapping[str, str],
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> RegistryClient:
        """Create a client from RegistryConfig, reading secrets from ``environ``."""
        return cls(
            config.host,
            auth_provider=create_auth_provider(config, environ),
            retry_policy=RetryPolicy(config.retry),
            timeout=config.timeout_seconds,
            tls_verify=config.tls_verify,
            insecure_http=config.insecure_http,
            transport=transport,
        )

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._http.close()
        logger.debug("registry_client_closed", registry=self.host)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def repository_of(self, location: str) -> str:
        """Repository path of a registry location on this host.

        Raises:
            RegistryError: If the location belongs to another registry.
        """
        host, repository = split_location(location)
        if host != self.host:
            raise RegistryError(f"{location} is not on registry {self.host}")
        return repository

    def publish(self, layout: OCILayout, location: str, tag: str) -> str:
        """Push an image layout and point ``tag`` at its root.

        Blobs already present are skipped. Child manifests are pushed by
        digest before the root manifest or index is pushed under ``tag``.

        Returns:
            The root digest, equal to the SHA-256 of the root manifest bytes.

        Raises:
            DigestMismatchError: If the registry reports a different digest.
            AuthenticationError, RegistryUnavailableError: On registry failures.
        """
        repository = self.repository_of(location)
        plan = layout.publish_plan()
        assert plan.root is not None
        log = logger.bind(registry=self.host, repository=repository, tag=tag)

        with create_span(
            "keel.registry.publish",
            attributes={"keel.registry": self.host, "keel.repository": repository, "keel.tag": tag},
        ) as span:
            uploaded = 0
            for blob in plan.blobs:
                if self.blob_exists(repository, blob.digest):
                    continue
                self.upload_blob(repository, blob.digest, layout.read_blob(blob.digest))
                uploaded += 1

            for child in plan.children:
                self.put_manifest(
                    repository, child.descriptor.digest, child.content, child.descriptor.media_type
                )

            root = plan.root
            digest = self.put_manifest(repository, tag, root.content, root.descriptor.media_type)
            if digest != root.descriptor.digest:
                raise DigestMismatchError(root.descriptor.digest, digest, f"{location}:{tag}")

            span.set_attribute("keel.digest", digest)
            log.info(
                "image_published",
                digest=digest,
                blobs=len(plan.blobs),
                blobs_uploaded=uploaded,
                manifests=len(plan.children) + 1,
            )
            return digest

    def digest_exists(self, reference: CanonicalReference) -> bool:
        """Return True if the registry holds the referenced manifest."""
        repository = self.repository_of(reference.registry_location)
        return self.manifest_digest(repository, reference.content_digest) is not None

    def resolve_tag(self, repository: str, tag: str) -> str | None:
        """Current digest of ``tag``, or None if the tag does not exist."""
        return self.manifest_digest(repository, tag)

    def copy_tag(self, reference: CanonicalReference, tag: str) -> str:
        """Point ``tag`` at the referenced digest.

        Fetches the manifest bytes by digest and PUTs them unchanged under
        ``tag``, then re-resolves the tag to verify it.

        Returns:
            The digest ``tag`` now points at (always the requested digest).

        Raises:
            ReferenceNotFound: If the digest does not exist.
            DigestMismatchError: If the registry reports another digest.
        """
        repository = self.repository_of(reference.registry_location)
        expected = reference.content_digest

        with create_span(
            "keel.registry.copy_tag",
            attributes={"keel.repository": repository, "keel.tag": tag, "keel.digest": expected},
        ):
            content, media_type = self.get_manifest(repository, expected)
            actual = sha256_digest(content)
            if actual != expected:
                raise DigestMismatchError(expected, actual, str(reference))

            pushed = self.put_manifest(repository, tag, content, media_type)
            if pushed != expected:
                raise DigestMismatchError(expected, pushed, f"{reference.registry_location}:{tag}")

            resolved = self.resolve_tag(repository, tag)
            if resolved != expected:
                raise DigestMismatchError(
                    expected, resolved or "<missing>", f"{reference.registry_location}:{tag}"
                )

            logger.debug("tag_copied", repository=repository, tag=tag, digest=expected)
            return expected

    # ------------------------------------------------------------------
    # Distribution API primitives
    # ------------------------------------------------------------------

    def manifest_digest(self, repository: str, reference: str) -> str | None:
        """HEAD a manifest by tag or digest; None if absent."""
        response = self._request(
            "HEAD",
            repository,
            f"manifests/{reference}",
            headers={"Accept": ACCEPT_MANIFEST_TYPES},
        )
        if response.status_code == 404:
            return None
        self._expect(response, 200, f"HEAD manifest {repository}:{reference}")

        digest = response.headers.get("Docker-Content-Digest")
        if digest:
            return digest
        # Registry omitted the header; hash the body instead
        content, _ = self.get_manifest(repository, reference)
        return sha256_digest(content)

    def get_manifest(self, repository: str, reference: str) -> tuple[bytes, str]:
        """Fetch raw manifest bytes and media type.

        Raises:
            ReferenceNotFound: If the manifest does not exist.
        """
        response = self._request(
            "GET",
            repository,
            f"manifests/{reference}",
            headers={"Accept": ACCEPT_MANIFEST_TYPES},
        )
        if response.status_code == 404:
            raise ReferenceNotFound(f"{self.host}/{repository}@{reference}")
        self._expect(response, 200, f"GET manifest {repository}:{reference}")
        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        return response.content, media_type

    def put_manifest(self, repository: str, reference: str, content: bytes, media_type: str) -> str:
        """PUT manifest bytes under a tag or digest.

        Returns:
            SHA-256 of ``content``.

        Raises:
            DigestMismatchError: If the registry reports a different digest.
        """
        response = self._request(
            "PUT",
            repository,
            f"manifests/{reference}",
            headers={"Content-Type": media_type},
            content=content,
            push=True,
        )
        self._expect(response, (200, 201), f"PUT manifest {repository}:{reference}")

        expected = sha256_digest(content)
        reported = response.headers.get("Docker-Content-Digest")
        if reported and reported != expected:
            raise DigestMismatchError(expected, reported, f"{self.host}/{repository}:{reference}")
        return expected

    def blob_exists(self, repository: str, digest: str) -> bool:
        response = self._request("HEAD", repository, f"blobs/{digest}")
        if response.status_code == 404:
            return False
        self._expect(response, 200, f"HEAD blob {digest}")
        return True

    def upload_blob(self, repository: str, digest: str, data: bytes) -> None:
        """Monolithic blob upload (POST session, then PUT with ``?digest=``)."""
        started = self._request("POST", repository, "blobs/uploads/", push=True)
        self._expect(started, 202, f"start upload {digest}")

        location = started.headers.get("Location")
        if not location:
            raise RegistryError(f"registry {self.host} returned no upload location")
        upload_url = httpx.URL(self._base_url).join(location).copy_merge_params({"digest": digest})

        response = self._request(
            "PUT",
            repository,
            url=upload_url,
            headers={"Content-Type": "application/octet-stream"},
            content=data,
            push=True,
        )
        self._expect(response, (200, 201), f"upload blob {digest}")
        logger.debug("blob_uploaded", repository=repository, digest=digest, size=len(data))

    # ------------------------------------------------------------------
    # Transport, auth and retries
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        repository: str,
        path: str = "",
        *,
        url: httpx.URL | None = None,
        headers: dict[str, str] | None = None,
        content: bytes | None = None,
        push: bool = False,
    ) -> httpx.Response:
        target = url or httpx.URL(f"{self._base_url}/v2/{repository}/{path}")
        scope = f"repository:{repository}:{'pull,push' if push else 'pull'}"
        return self._retry_policy.call(
            self._send, method, target, scope, dict(headers or {}), content
        )

    def _send(
        self,
        method: str,
        url: httpx.URL,
        scope: str,
        headers: dict[str, str],
        content: bytes | None,
    ) -> httpx.Response:
        response = self._transmit(method, url, self._auth_headers(scope, headers), content)

        if response.status_code == 401:
            self._answer_challenge(response.headers.get("WWW-Authenticate", ""), scope)
            response = self._transmit(method, url, self._auth_headers(scope, headers), content)

        if response.status_code in (401, 403):
            raise AuthenticationError(
                self.host, f"{method} {url.path} rejected with HTTP {response.status_code}"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise RegistryUnavailableError(
                self.host, f"{method} {url.path} returned HTTP {response.status_code}"
            )
        return response

    def _transmit(
        self,
        method: str,
        url: httpx.URL,
        headers: dict[str, str],
        content: bytes | None,
    ) -> httpx.Response:
        try:
            return self._http.request(method, url, headers=headers, content=content)
        except httpx.TimeoutException as e:
            raise RegistryUnavailableError(self.host, f"timeout on {method} {url.path}") from e
        except httpx.TransportError as e:
            raise RegistryUnavailableError(self.host, f"{type(e).__name__} on {method} {url.path}") from e

    def _auth_headers(self, scope: str, headers: dict[str, str]) -> dict[str, str]:
        with self._lock:
            token = self._tokens.get(scope)
            basic = self._basic
        if token:
            return {**headers, "Authorization": f"Bearer {token}"}
        if basic:
            credentials = self._credentials()
            if credentials is not None:
                username, password = credentials.basic_auth()
                encoded = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
                return {**headers, "Authorization": f"Basic {encoded}"}
        return headers

    def _credentials(self) -> Credentials | None:
        if self._auth_provider is None:
            return None
        self._auth_provider.refresh_if_needed()
        return self._auth_provider.get_credentials()

    def _answer_challenge(self, header: str, scope: str) -> None:
        scheme, params = parse_challenge(header)

        if scheme == "basic":
            if self._credentials() is None:
                raise AuthenticationError(self.host, "registry requires credentials")
            with self._lock:
                self._basic = True
            return

        if scheme != "bearer" or "realm" not in params:
            raise AuthenticationError(self.host, f"unsupported auth challenge {scheme or 'none'!r}")

        query = {"scope": params.get("scope") or scope}
        if "service" in params:
            query["service"] = params["service"]

        credentials = self._credentials()
        auth = httpx.BasicAuth(*credentials.basic_auth()) if credentials else None

        try:
            response = self._http.get(params["realm"], params=query, auth=auth)
        except httpx.TransportError as e:
            raise RegistryUnavailableError(self.host, f"token endpoint unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(self.host, f"token endpoint returned HTTP {response.status_code}")
        if response.status_code >= 500:
            raise RegistryUnavailableError(self.host, f"token endpoint returned HTTP {response.status_code}")
        if response.status_code != 200:
            raise AuthenticationError(self.host, f"token endpoint returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise AuthenticationError(self.host, "token endpoint returned invalid JSON") from e

        token = body.get("token") or body.get("access_token")
        if not token:
            raise AuthenticationError(self.host, "token endpoint returned no token")

        with self._lock:
            self._tokens[scope] = token
        logger.debug("registry_token_acquired", registry=self.host, scope=query["scope"])

    def _expect(self, response: httpx.Response, status: int | tuple[int, ...], what: str) -> None:
        expected = status if isinstance(status, tuple) else (status,)
        if response.status_code not in expected:
            raise RegistryError(
                f"{what} on {self.host} failed: HTTP {response.status_code} {response.text[:200]}"
            )


__all__ = ["RegistryClient", "parse_challenge"]
