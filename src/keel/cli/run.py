"""``keel run``: the full pipeline from keel.yaml.

Builds once (unless ``--image-ref`` is given), then promotes and deploys
every environment concurrently.
"""

from __future__ import annotations

import os
import sys

import click

from keel.cli.utils import (
    config_option,
    error,
    handle_keel_errors,
    info,
    load_config,
    output_option,
    success,
    write_outputs,
)
from keel.pipeline import PipelineResult, PipelineRunner
from keel.registry.client import RegistryClient
from keel.schemas.reference import CanonicalReference


def format_pipeline(result: PipelineResult, output_format: str) -> str:
    """Render a pipeline result for stdout."""
    if output_format == "json":
        return result.model_dump_json(indent=2)

    lines = [f"Reference: {result.reference}"]
    for outcome in result.environments:
        if outcome.ok:
            detail = "deployed" if outcome.deploy else "promoted"
            lines.append(f"  ✓ {outcome.environment}: {detail}")
        else:
            lines.append(f"  ✗ {outcome.environment}: {outcome.error_kind}")
            lines.append(f"      Error: {outcome.error}")
    return "\n".join(lines)


@click.command(
    name="run",
    help="Build once, then promote and deploy every environment in keel.yaml.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@config_option
@click.option(
    "--image-ref",
    "-r",
    type=str,
    default=None,
    help="Existing canonical reference; skips the build stage.",
)
@click.option(
    "--environment",
    "-e",
    "environments",
    multiple=True,
    help="Limit to these environments (repeatable).",
)
@output_option
@handle_keel_errors
def run_command(
    config_path: str | None,
    image_ref: str | None,
    environments: tuple[str, ...],
    output_format: str,
) -> None:
    """Run the pipeline."""
    reference = CanonicalReference.parse(image_ref) if image_ref else None
    config = load_config(config_path, required=True)
    assert config is not None

    info(f"Running pipeline for {config.app_name}...")
    with RegistryClient.from_config(config.registry, os.environ) as client:
        result = PipelineRunner(config, client).run(reference, list(environments) or None)

    if result.build is not None:
        write_outputs(result.build.outputs(), echo=False)
    success(format_pipeline(result, output_format))

    if not result.succeeded:
        failed = [o for o in result.environments if not o.ok]
        error(
            f"{len(failed)} environment(s) failed: {', '.join(o.environment for o in failed)}",
            kind=failed[0].error_kind,
        )
        sys.exit(result.exit_code)


__all__: list[str] = ["format_pipeline", "run_command"]
