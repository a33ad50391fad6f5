"""``keel promote``: point tags at an existing digest.

Example:
    $ keel promote --image-digest-ref ghcr.io/acme/shop@sha256:... --promote-to dev,staging
    dev        created
    staging    moved    (was sha256:0f3e...)
"""

from __future__ import annotations

import os

import click

from keel.cli.utils import (
    config_option,
    handle_keel_errors,
    info,
    load_config,
    output_option,
    registry_auth_option,
    resolve_registry_config,
    success,
)
from keel.registry.client import RegistryClient
from keel.schemas.promotion import PromotionResult
from keel.schemas.reference import CanonicalReference
from keel.stages.promote import PromoteStage


def format_promotion(result: PromotionResult, output_format: str) -> str:
    """Render a promotion result for stdout."""
    if output_format == "json":
        return result.model_dump_json(indent=2)

    lines = [f"Reference: {result.reference}"]
    for outcome in result.outcomes:
        line = f"  {outcome.tag:<20} {outcome.status.value}"
        if outcome.previous_digest:
            line += f" (was {outcome.previous_digest[:19]}...)"
        lines.append(line)
    return "\n".join(lines)


@click.command(
    name="promote",
    help="""\b
Point each target tag at exactly the given digest.

Tags already applied stay applied when a later tag fails; the failed
tags are reported so they can be retried.
""",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option(
    "--image-digest-ref",
    "-r",
    type=str,
    required=True,
    help="Canonical reference (<registry>/<repo>@sha256:<digest>).",
)
@click.option(
    "--promote-to",
    "-t",
    type=str,
    required=True,
    help="Comma-separated target tags (e.g. dev,staging).",
)
@config_option
@registry_auth_option
@output_option
@handle_keel_errors
def promote_command(
    image_digest_ref: str,
    promote_to: str,
    config_path: str | None,
    registry_auth: str | None,
    output_format: str,
) -> None:
    """Run the promote stage."""
    reference = CanonicalReference.parse(image_digest_ref)
    config = load_config(config_path)
    registry = resolve_registry_config(config, host=reference.host, auth=registry_auth)

    info(f"Promoting {reference} to {promote_to}...")
    with RegistryClient.from_config(registry, os.environ) as client:
        result = PromoteStage(client).run(reference, promote_to)

    success(format_promotion(result, output_format))


__all__: list[str] = ["format_promotion", "promote_command"]
