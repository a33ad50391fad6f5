"""Main entry point for the keel CLI.

Commands:
    keel build: Build, test, publish; print the canonical reference
    keel promote: Point tags at an existing digest
    keel deploy: Apply manifests, pin the digest, await rollout
    keel run: Full pipeline from keel.yaml

Example:
    $ keel --help
    $ keel --log-format json build --config keel.yaml
    $ keel promote -r ghcr.io/acme/shop@sha256:... -t dev,staging
"""

from __future__ import annotations

import sys
from importlib.metadata import version as get_version

import click

from keel.cli.build import build_command
from keel.cli.deploy import deploy_command
from keel.cli.promote import promote_command
from keel.cli.run import run_command
from keel.cli.utils import error
from keel.errors import KeelError
from keel.telemetry.logging import configure_logging


def _get_version() -> str:
    """Installed package version, or 'unknown' if not installed."""
    try:
        return get_version("keel")
    except Exception:
        return "unknown"


@click.group(
    name="keel",
    help="keel - build once, promote by digest, deploy.",
    epilog="Use 'keel <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="keel",
    message="%(prog)s %(version)s",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    envvar="KEEL_LOG_LEVEL",
    help="Log level (logs go to stderr).",
)
@click.option(
    "--log-format",
    type=click.Choice(["console", "json"], case_sensitive=False),
    default="console",
    show_default=True,
    envvar="KEEL_LOG_FORMAT",
    help="Log rendering.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, log_format: str) -> None:
    """Root command group for the keel CLI."""
    ctx.ensure_object(dict)
    configure_logging(log_level.upper(), json_output=log_format.lower() == "json")


cli.add_command(build_command)
cli.add_command(promote_command)
cli.add_command(deploy_command)
cli.add_command(run_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the keel CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except KeelError as e:
        error(str(e), kind=e.kind)
        sys.exit(e.exit_code)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
