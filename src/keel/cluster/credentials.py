"""Cluster credential selection and resolution.

Exactly one method is active per deploy invocation:

- federated: assume an AWS role with STS (short session), describe the EKS
  cluster and mint a presigned ``GetCallerIdentity`` bearer token.
  Selected when role, region and cluster are all declared and
  ``generate_kubeconfig`` is true.
- static: a kubeconfig supplied through ``KUBE_CONFIG`` (base64 or raw YAML).

Both produce an in-memory kubeconfig dict. Nothing is written to a persistent
location; the dict is dropped when the deploy stage ends.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from typing import Any

import structlog
import yaml
from pydantic import SecretStr

from keel.errors import CredentialResolutionFailure, NoCredentialAvailable
from keel.schemas.deploy import (
    ClusterCredential,
    DeployRequest,
    FederatedCredential,
    StaticCredential,
)
from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

ENV_KUBE_CONFIG = "KUBE_CONFIG"

EKS_TOKEN_PREFIX = "k8s-aws-v1."
EKS_TOKEN_EXPIRES_SECONDS = 60

_BOTO_CONNECT_TIMEOUT = 10
_BOTO_READ_TIMEOUT = 30


def static_kubeconfig_from_env(environ: Mapping[str, str]) -> SecretStr | None:
    """Static kubeconfig secret from ``KUBE_CONFIG``, or None if unset/blank."""
    value = environ.get(ENV_KUBE_CONFIG, "")
    return SecretStr(value) if value.strip() else None


def select_credential(request: DeployRequest) -> ClusterCredential:
    """Choose the credential method for a deploy.

    Raises:
        NoCredentialAvailable: If neither method is usable.
    """
    if (
        request.generate_kubeconfig
        and request.aws_role_to_assume
        and request.aws_region
        and request.cluster_name
    ):
        return FederatedCredential(
            role_arn=request.aws_role_to_assume,
            region=request.aws_region,
            cluster_name=request.cluster_name,
        )
    if request.kubeconfig is not None:
        return StaticCredential(kubeconfig=request.kubeconfig)
    raise NoCredentialAvailable(request.environment)


def _boto_config() -> Any:
    from botocore.config import Config

    return Config(
        connect_timeout=_BOTO_CONNECT_TIMEOUT,
        read_timeout=_BOTO_READ_TIMEOUT,
        retries={"max_attempts": 3, "mode": "standard"},
    )


class CredentialProvider:
    """Resolve a ClusterCredential into an in-memory kubeconfig dict."""

    def __init__(self, *, session_name: str = "keel-deploy") -> None:
        self._session_name = session_name

    def resolve(self, credential: ClusterCredential) -> dict[str, Any]:
        """Resolve ``credential``.

        Raises:
            CredentialResolutionFailure: If the exchange or parse fails.
        """
        with create_span("keel.deploy.credentials", attributes={"keel.method": credential.method}):
            if isinstance(credential, FederatedCredential):
                return self.assume_federated_role(credential)
            return self.static_config(credential.kubeconfig)

    def assume_federated_role(self, credential: FederatedCredential) -> dict[str, Any]:
        """Exchange the ambient AWS identity for cluster access."""
        import boto3

        log = logger.bind(
            role_arn=credential.role_arn,
            region=credential.region,
            cluster=credential.cluster_name,
        )
        try:
            sts = boto3.client("sts", region_name=credential.region, config=_boto_config())
            assumed = sts.assume_role(
                RoleArn=credential.role_arn,
                RoleSessionName=self._session_name,
                DurationSeconds=credential.session_seconds,
            )["Credentials"]

            session = boto3.session.Session(
                aws_access_key_id=assumed["AccessKeyId"],
                aws_secret_access_key=assumed["SecretAccessKey"],
                aws_session_token=assumed["SessionToken"],
                region_name=credential.region,
            )
            cluster = session.client("eks", config=_boto_config()).describe_cluster(
                name=credential.cluster_name
            )["cluster"]
            endpoint = cluster["endpoint"]
            ca_data = cluster["certificateAuthority"]["data"]

            token = self._eks_token(session, credential.cluster_name, credential.region)
        except CredentialResolutionFailure:
            raise
        except Exception as e:
            log.error("federated_credential_failed", error=sanitize_error_message(str(e)))
            raise CredentialResolutionFailure(
                "federated", sanitize_error_message(f"{type(e).__name__}: {e}")
            ) from e

        log.info("federated_credential_resolved", endpoint=endpoint)
        return build_kubeconfig(credential.cluster_name, endpoint, ca_data, token)

    @staticmethod
    def _eks_token(session: Any, cluster_name: str, region: str) -> str:
        """Presigned STS GetCallerIdentity URL encoded as an EKS bearer token."""
        from botocore.signers import RequestSigner

        sts = session.client("sts", region_name=region, config=_boto_config())
        signer = RequestSigner(
            sts.meta.service_model.service_id,
            region,
            "sts",
            "v4",
            session.get_credentials(),
            session.events,
        )
        params = {
            "method": "GET",
            "url": f"https://sts.{region}.amazonaws.com/?Action=GetCallerIdentity&Version=2011-06-15",
            "body": {},
            "headers": {"x-k8s-aws-id": cluster_name},
            "context": {},
        }
        signed_url = signer.generate_presigned_url(
            params,
            region_name=region,
            expires_in=EKS_TOKEN_EXPIRES_SECONDS,
            operation_name="",
        )
        encoded = base64.urlsafe_b64encode(signed_url.encode("utf-8")).decode("utf-8")
        return EKS_TOKEN_PREFIX + encoded.rstrip("=")

    @staticmethod
    def static_config(secret: SecretStr) -> dict[str, Any]:
        """Parse a static kubeconfig given as base64 or raw YAML."""
        raw = secret.get_secret_value().strip()
        text = raw
        try:
            # base64 output is commonly wrapped at 76 columns
            text = base64.b64decode("".join(raw.split()), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            pass  # not base64: raw YAML

        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise CredentialResolutionFailure("static", "KUBE_CONFIG is not valid YAML") from e

        if not isinstance(document, dict) or not document.get("clusters"):
            raise CredentialResolutionFailure("static", "KUBE_CONFIG has no clusters")

        logger.info("static_credential_resolved", contexts=len(document.get("contexts") or []))
        return document


def build_kubeconfig(cluster_name: str, endpoint: str, ca_data: str, token: str) -> dict[str, Any]:
    """Kubeconfig dict with a single bearer-token user."""
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": cluster_name,
                "cluster": {"server": endpoint, "certificate-authority-data": ca_data},
            }
        ],
        "users": [{"name": "keel", "user": {"token": token}}],
        "contexts": [{"name": cluster_name, "context": {"cluster": cluster_name, "user": "keel"}}],
        "current-context": cluster_name,
    }


__all__ = [
    "CredentialProvider",
    "ENV_KUBE_CONFIG",
    "build_kubeconfig",
    "select_credential",
    "static_kubeconfig_from_env",
]
