"""Shared pytest fixtures for keel tests.

Key Fixtures:
- fake_registry: In-memory OCI distribution registry served through
  ``httpx.MockTransport`` (optional Bearer token auth, per-tag failures)
- registry_client: RegistryClient wired to the fake registry, with a retry
  policy that never sleeps
- write_layout: Factory writing an OCI image layout to disk, as the build
  toolchain would

NOTE: Do NOT add __init__.py to test directories - pytest uses importlib mode
which can cause namespace collisions with __init__.py files.
"""

from __future__ import annotations

import hashlib
import itertools
import json
import re
from collections.abc import Callable, Generator, Sequence
from pathlib import Path

import httpx
import pytest

from keel.registry.client import RegistryClient
from keel.registry.layout import OCI_INDEX, OCI_MANIFEST
from keel.registry.resilience import RetryPolicy
from keel.schemas.pipeline import RetryConfig
from keel.schemas.reference import CanonicalReference

REGISTRY_HOST = "registry.test"
REPOSITORY = "acme/shop"
LOCATION = f"{REGISTRY_HOST}/{REPOSITORY}"

_MANIFEST_PATH = re.compile(r"^/v2/(?P<repo>.+)/manifests/(?P<ref>[^/]+)$")
_BLOB_PATH = re.compile(r"^/v2/(?P<repo>.+)/blobs/(?P<digest>sha256:[a-f0-9]{64})$")
_UPLOAD_START_PATH = re.compile(r"^/v2/(?P<repo>.+)/blobs/uploads/$")
_UPLOAD_PATH = re.compile(r"^/v2/(?P<repo>.+)/blobs/uploads/(?P<upload>[^/]+)$")
_REPO_PATH = re.compile(r"^/v2/(?P<repo>.+)/(manifests|blobs)/")


def digest_of(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def _image_manifest(payload: str, platform: str = "linux/amd64") -> tuple[bytes, dict[str, bytes]]:
    """Manifest bytes plus the blobs it references."""
    os_name, _, arch = platform.partition("/")
    config = json.dumps({"architecture": arch, "os": os_name, "payload": payload}).encode()
    layer = f"layer:{payload}:{platform}".encode()
    manifest = {
        "schemaVersion": 2,
        "mediaType": OCI_MANIFEST,
        "config": {
            "mediaType": "application/vnd.oci.image.config.v1+json",
            "digest": digest_of(config),
            "size": len(config),
        },
        "layers": [
            {
                "mediaType": "application/vnd.oci.image.layer.v1.tar+gzip",
                "digest": digest_of(layer),
                "size": len(layer),
            }
        ],
    }
    return json.dumps(manifest, sort_keys=True).encode(), {
        digest_of(config): config,
        digest_of(layer): layer,
    }


class FakeRegistry:
    """In-memory OCI distribution API.

    Attributes:
        require_token: Answer unauthenticated requests with a Bearer challenge.
        deny_tags: Tags whose manifest PUT returns 403.
        failing_tags: Tags whose manifest PUT returns 503.
        requests: ``(method, path)`` of every registry request.
        token_requests: Query params of every token endpoint request.
    """

    HOST = REGISTRY_HOST
    TOKEN_REALM = "https://auth.test/token"

    def __init__(self, *, require_token: bool = False) -> None:
        self.require_token = require_token
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.manifests: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.tags: dict[tuple[str, str], str] = {}
        self.deny_tags: set[str] = set()
        self.failing_tags: set[str] = set()
        self.requests: list[tuple[str, str]] = []
        self.token_requests: list[dict[str, str]] = []
        self._uploads: dict[str, str] = {}
        self._upload_ids = itertools.count(1)
        self._issued: set[str] = set()

    # -- seeding -----------------------------------------------------------

    def seed_image(self, repository: str = REPOSITORY, *, tag: str | None = None, payload: str = "app") -> str:
        """Store a single-platform image directly; returns its digest."""
        content, blobs = _image_manifest(payload)
        for digest, data in blobs.items():
            self.blobs[(repository, digest)] = data
        digest = digest_of(content)
        self.manifests[(repository, digest)] = (content, OCI_MANIFEST)
        if tag:
            self.tags[(repository, tag)] = digest
        return digest

    def tag_digest(self, tag: str, repository: str = REPOSITORY) -> str | None:
        return self.tags.get((repository, tag))

    # -- transport ---------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.test":
            return self._issue_token(request)

        path = request.url.path
        self.requests.append((request.method, path))

        if self.require_token and not self._authorized(request):
            match = _REPO_PATH.match(path)
            repo = match.group("repo") if match else ""
            actions = "pull,push" if request.method in ("PUT", "POST") else "pull"
            challenge = (
                f'Bearer realm="{self.TOKEN_REALM}",service="{self.HOST}",'
                f'scope="repository:{repo}:{actions}"'
            )
            return httpx.Response(401, headers={"WWW-Authenticate": challenge})

        if match := _UPLOAD_START_PATH.match(path):
            return self._start_upload(match.group("repo"))
        if match := _UPLOAD_PATH.match(path):
            return self._finish_upload(request, match.group("repo"), match.group("upload"))
        if match := _BLOB_PATH.match(path):
            return self._blob(request, match.group("repo"), match.group("digest"))
        if match := _MANIFEST_PATH.match(path):
            return self._manifest(request, match.group("repo"), match.group("ref"))
        return httpx.Response(404)

    def _issue_token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests.append(dict(request.url.params))
        token = f"token-{len(self.token_requests)}"
        self._issued.add(token)
        return httpx.Response(200, json={"token": token})

    def _authorized(self, request: httpx.Request) -> bool:
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        return scheme == "Bearer" and token in self._issued

    def _start_upload(self, repo: str) -> httpx.Response:
        upload = str(next(self._upload_ids))
        self._uploads[upload] = repo
        return httpx.Response(202, headers={"Location": f"/v2/{repo}/blobs/uploads/{upload}"})

    def _finish_upload(self, request: httpx.Request, repo: str, upload: str) -> httpx.Response:
        if request.method != "PUT" or self._uploads.pop(upload, None) != repo:
            return httpx.Response(404)
        digest = request.url.params.get("digest", "")
        data = request.content
        if digest != digest_of(data):
            return httpx.Response(400, json={"errors": [{"code": "DIGEST_INVALID"}]})
        self.blobs[(repo, digest)] = data
        return httpx.Response(201, headers={"Docker-Content-Digest": digest})

    def _blob(self, request: httpx.Request, repo: str, digest: str) -> httpx.Response:
        data = self.blobs.get((repo, digest))
        if data is None:
            return httpx.Response(404)
        if request.method == "HEAD":
            return httpx.Response(200, headers={"Docker-Content-Digest": digest})
        return httpx.Response(200, content=data)

    def _manifest(self, request: httpx.Request, repo: str, ref: str) -> httpx.Response:
        if request.method == "PUT":
            return self._put_manifest(request, repo, ref)

        digest = ref if ref.startswith("sha256:") else self.tags.get((repo, ref))
        stored = self.manifests.get((repo, digest)) if digest else None
        if stored is None:
            return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})

        content, media_type = stored
        headers = {"Docker-Content-Digest": digest, "Content-Type": media_type}
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, headers=headers, content=content)

    def _put_manifest(self, request: httpx.Request, repo: str, ref: str) -> httpx.Response:
        if ref in self.deny_tags:
            return httpx.Response(403, json={"errors": [{"code": "DENIED"}]})
        if ref in self.failing_tags:
            return httpx.Response(503)

        content = request.content
        digest = digest_of(content)
        if ref.startswith("sha256:") and ref != digest:
            return httpx.Response(400, json={"errors": [{"code": "DIGEST_INVALID"}]})

        self.manifests[(repo, digest)] = (content, request.headers.get("Content-Type", ""))
        if not ref.startswith("sha256:"):
            self.tags[(repo, ref)] = digest
        return httpx.Response(201, headers={"Docker-Content-Digest": digest})


@pytest.fixture
def fake_registry() -> FakeRegistry:
    """Empty in-memory registry."""
    return FakeRegistry()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Two attempts, no real sleeping."""
    return RetryPolicy(
        RetryConfig(max_attempts=2, initial_delay_ms=10, jitter=False),
        sleep=lambda _seconds: None,
    )


@pytest.fixture
def registry_client(
    fake_registry: FakeRegistry, retry_policy: RetryPolicy
) -> Generator[RegistryClient, None, None]:
    """RegistryClient talking to ``fake_registry``."""
    client = RegistryClient(
        REGISTRY_HOST,
        retry_policy=retry_policy,
        transport=httpx.MockTransport(fake_registry.handler),
    )
    yield client
    client.close()


@pytest.fixture
def seeded_reference(fake_registry: FakeRegistry) -> CanonicalReference:
    """Canonical reference of an image already present in ``fake_registry``."""
    digest = fake_registry.seed_image(tag="sha-1a2b3c4")
    return CanonicalReference.from_parts(LOCATION, digest)


def _write_blob(layout: Path, data: bytes) -> dict[str, object]:
    digest = digest_of(data)
    blob = layout / "blobs" / "sha256" / digest.split(":", 1)[1]
    blob.parent.mkdir(parents=True, exist_ok=True)
    blob.write_bytes(data)
    return {"digest": digest, "size": len(data)}


def write_oci_layout(
    layout: Path,
    *,
    platforms: Sequence[str] = ("linux/amd64",),
    payload: str = "app",
) -> str:
    """Write an OCI image layout and return its root digest.

    One platform yields a single image manifest; several yield an index.
    """
    layout.mkdir(parents=True, exist_ok=True)
    (layout / "oci-layout").write_text(json.dumps({"imageLayoutVersion": "1.0.0"}))

    children = []
    for platform in platforms:
        content, blobs = _image_manifest(payload, platform)
        for data in blobs.values():
            _write_blob(layout, data)
        descriptor = _write_blob(layout, content)
        os_name, _, arch = platform.partition("/")
        children.append(
            {"mediaType": OCI_MANIFEST, **descriptor, "platform": {"os": os_name, "architecture": arch}}
        )

    if len(children) == 1:
        root = {"mediaType": OCI_MANIFEST, "digest": children[0]["digest"], "size": children[0]["size"]}
    else:
        index = json.dumps(
            {"schemaVersion": 2, "mediaType": OCI_INDEX, "manifests": children}, sort_keys=True
        ).encode()
        root = {"mediaType": OCI_INDEX, **_write_blob(layout, index)}

    (layout / "index.json").write_text(
        json.dumps({"schemaVersion": 2, "mediaType": OCI_INDEX, "manifests": [root]})
    )
    return str(root["digest"])


@pytest.fixture
def write_layout() -> Callable[..., str]:
    """Factory fixture for ``write_oci_layout``."""
    return write_oci_layout


@pytest.fixture
def location() -> str:
    """Registry location (host and repository) served by ``fake_registry``."""
    return LOCATION
