"""``keel deploy``: run a canonical digest reference on a cluster.

Example:
    $ keel deploy --image-ref ghcr.io/acme/shop@sha256:... --environment staging \\
        --namespace shop --deployment shop --container app

Cluster credentials: federated (``--aws-role-to-assume``, ``--aws-region``,
``--cluster-name``) or a static kubeconfig in ``KUBE_CONFIG``.
"""

from __future__ import annotations

import os
from typing import Any

import click

from keel.cli.utils import (
    config_option,
    drop_unset,
    handle_keel_errors,
    info,
    load_config,
    output_option,
    success,
    validate,
)
from keel.cluster.credentials import static_kubeconfig_from_env
from keel.schemas.deploy import DeployRequest, DeployResult
from keel.schemas.pipeline import PipelineConfig
from keel.schemas.reference import CanonicalReference
from keel.stages.deploy import DeployStage

_ENVIRONMENT_KEYS = {"name", "promote_to", "deploy"}


def resolve_deploy_request(
    config: PipelineConfig | None,
    environment: str,
    image: CanonicalReference,
    overrides: dict[str, Any],
) -> DeployRequest:
    """DeployRequest from the keel.yaml environment (if declared) plus CLI options.

    ``deployment`` and ``container`` fall back to the application name.
    """
    app_name = overrides.pop("app_name", None) or (config.app_name if config else None)

    data: dict[str, Any] = {}
    if config is not None and any(e.name == environment for e in config.environments):
        data.update(config.environment(environment).model_dump(exclude=_ENVIRONMENT_KEYS))
    data.update(drop_unset(overrides))
    data["environment"] = environment
    data["image"] = image
    data["kubeconfig"] = static_kubeconfig_from_env(os.environ)
    for key in ("deployment", "container"):
        if not data.get(key):
            data[key] = app_name
    return validate(DeployRequest, data, "deploy settings")


def format_deploy(result: DeployResult, output_format: str) -> str:
    """Render a deploy result for stdout."""
    if output_format == "json":
        return result.model_dump_json(indent=2)

    rollout = result.rollout
    lines = [
        f"Environment: {result.environment}",
        f"Deployment:  {rollout.deployment_id} (container {result.container})",
        f"Image:       {result.image}",
        f"Credential:  {result.credential_method}",
        f"Applied:     {', '.join(result.applied) or 'none'}",
        f"Rollout:     {rollout.status.value} "
        f"({rollout.observed_replicas_ready}/{rollout.desired_replicas} ready, {rollout.polls} polls)",
        f"Phases:      {' -> '.join(p.value for p in result.phase_history)}",
    ]
    return "\n".join(lines)


@click.command(
    name="deploy",
    help="""\b
Apply the environment's manifests, pin the container to the digest
reference and wait for the rollout. There is no automatic rollback.
""",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option(
    "--image-ref",
    "-r",
    type=str,
    required=True,
    help="Canonical reference (<registry>/<repo>@sha256:<digest>).",
)
@click.option("--environment", "-e", type=str, required=True, help="Target environment.")
@config_option
@click.option("--app-name", type=str, default=None, help="Default deployment/container name.")
@click.option("--namespace", type=str, default=None, help="Target namespace.")
@click.option("--manifest-path", type=click.Path(file_okay=False), default=None)
@click.option("--deployment", type=str, default=None, help="Deployment name.")
@click.option("--container", type=str, default=None, help="Container name.")
@click.option("--aws-region", type=str, default=None)
@click.option("--aws-role-to-assume", type=str, default=None)
@click.option("--cluster-name", type=str, default=None)
@click.option("--generate-kubeconfig/--no-generate-kubeconfig", default=None)
@click.option("--use-overlay-tool/--no-use-overlay-tool", default=None, help="Render with kustomize.")
@click.option("--rollout-timeout", type=float, default=None, help="Seconds (default 300).")
@click.option("--poll-interval", type=float, default=None, help="Seconds (default 5).")
@output_option
@handle_keel_errors
def deploy_command(
    image_ref: str,
    environment: str,
    config_path: str | None,
    output_format: str,
    **options: Any,
) -> None:
    """Run the deploy stage."""
    image = CanonicalReference.parse(image_ref)
    config = load_config(config_path)
    request = resolve_deploy_request(config, environment, image, dict(options))

    info(f"Deploying {image} to {request.environment} ({request.deployment_id})...")
    result = DeployStage().run(request)
    success(format_deploy(result, output_format))


__all__: list[str] = ["deploy_command", "format_deploy", "resolve_deploy_request"]
