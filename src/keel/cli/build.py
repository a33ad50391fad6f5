"""``keel build``: build, verify, publish and emit the canonical reference.

Example:
    $ keel build --app-name shop --owner acme --test-command "pytest -q"
    image=ghcr.io/acme/shop@sha256:...
    image_tag=sha-1a2b3c4

Options override ``keel.yaml`` when both are present.
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
    registry_auth_option,
    resolve_registry_config,
    success,
    validate,
    warn,
    write_outputs,
)
from keel.registry.client import RegistryClient
from keel.schemas.build import BuildConfig
from keel.schemas.pipeline import PipelineConfig, RegistryConfig
from keel.stages.build import BuildStage


def resolve_build_config(
    config: PipelineConfig | None,
    registry: RegistryConfig,
    overrides: dict[str, Any],
) -> BuildConfig:
    """BuildConfig from keel.yaml (if any) with CLI overrides applied."""
    data = config.build.model_dump() if config is not None else {}
    data["registry"] = registry.host
    if registry.owner:
        data["owner"] = registry.owner

    scan_mode = overrides.pop("scan_mode", None)
    data.update(drop_unset(overrides))
    if scan_mode:
        data["scan_policy"] = {**(data.get("scan_policy") or {}), "mode": scan_mode}
    return validate(BuildConfig, data, "build settings")


@click.command(
    name="build",
    help="""\b
Build the image once, run the tests, publish it under sha-<revision>
and print the canonical digest reference.

Outputs (stdout and $GITHUB_OUTPUT):
  image=<registry>/<owner>/<app>@sha256:<digest>
  image_tag=sha-<short revision>
""",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@config_option
@click.option("--app-name", type=str, default=None, help="Application name.")
@click.option("--registry", "registry_host", type=str, default=None, help="Registry host.")
@click.option("--owner", type=str, default=None, help="Registry namespace/owner.")
@registry_auth_option
@click.option("--image-name", type=str, default=None, help="Explicit image location.")
@click.option("--context", type=click.Path(file_okay=False), default=None, help="Build context.")
@click.option("--dockerfile", type=str, default=None, help="Dockerfile, relative to the context.")
@click.option("--platform", "platforms", multiple=True, help="Target platform (repeatable).")
@click.option("--build-arg", "build_args", multiple=True, help="KEY=VALUE build argument.")
@click.option("--test-command", type=str, default=None, help='Test command ("" disables tests).')
@click.option("--runtime-version", type=str, default=None, help="Required interpreter version.")
@click.option("--push-latest/--no-push-latest", default=None, help="Tag latest on the primary branch.")
@click.option("--run-security-scan/--no-run-security-scan", default=None, help="Scan after publish.")
@click.option("--scan-mode", type=click.Choice(["block", "warn"]), default=None, help="Scan policy.")
@output_option
@handle_keel_errors
def build_command(
    config_path: str | None,
    app_name: str | None,
    registry_host: str | None,
    owner: str | None,
    registry_auth: str | None,
    image_name: str | None,
    context: str | None,
    dockerfile: str | None,
    platforms: tuple[str, ...],
    build_args: tuple[str, ...],
    test_command: str | None,
    runtime_version: str | None,
    push_latest: bool | None,
    run_security_scan: bool | None,
    scan_mode: str | None,
    output_format: str,
) -> None:
    """Run the build-and-publish stage."""
    config = load_config(config_path)
    registry = resolve_registry_config(config, host=registry_host, owner=owner, auth=registry_auth)
    build_config = resolve_build_config(
        config,
        registry,
        {
            "app_name": app_name,
            "image_name": image_name,
            "context": context,
            "dockerfile": dockerfile,
            "platforms": list(platforms) or None,
            "build_args": list(build_args) or None,
            "test_command": test_command,
            "runtime_version": runtime_version,
            "push_latest": push_latest,
            "run_security_scan": run_security_scan,
            "scan_mode": scan_mode,
        },
    )

    info(f"Building {build_config.image}...")
    with RegistryClient.from_config(registry, os.environ) as client:
        result = BuildStage(build_config, client).run()

    for message in result.warnings:
        warn(message)

    if output_format == "json":
        success(result.model_dump_json(indent=2))
        write_outputs(result.outputs(), echo=False)
    else:
        write_outputs(result.outputs())


__all__: list[str] = ["build_command", "resolve_build_config"]
