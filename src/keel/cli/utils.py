"""CLI utility functions and error handling.

Shared helpers for the keel CLI:
- Error formatting (``Error: <message> (kind=...)`` on stderr)
- KeelError to exit code mapping
- Output helpers for stdout/stderr and ``$GITHUB_OUTPUT``
- Config loading shared by every command

Example:
    from keel.cli.utils import handle_keel_errors, write_outputs

    @click.command()
    @handle_keel_errors
    def build_command() -> None:
        ...
        write_outputs(result.outputs())
"""

from __future__ import annotations

import functools
import os
import sys
from collections.abc import Callable, Mapping
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click
from pydantic import ValidationError

from keel.errors import ConfigurationError, KeelError
from keel.schemas.pipeline import AuthType, PipelineConfig, RegistryConfig

if TYPE_CHECKING:
    from typing import NoReturn

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_CONFIG = "keel.yaml"
ENV_GITHUB_OUTPUT = "GITHUB_OUTPUT"


class ExitCode(IntEnum):
    """Exit codes not tied to a KeelError subclass.

    Stage failures exit with ``KeelError.exit_code``.
    """

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    USAGE_ERROR = 2
    """Invalid usage or configuration."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Rollout timed out", kind="rollout_timed_out")
        # Output: Error: Rollout timed out (kind=rollout_timed_out)
    """
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"

    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code."""
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Warning: {message} ({context_str})"
    else:
        full_message = f"Warning: {message}"

    click.echo(full_message, err=True)


def success(message: str) -> None:
    """Print a result line to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print a progress message to stderr (not captured by stdout redirection)."""
    click.echo(message, err=True)


def handle_keel_errors(func: F) -> F:
    """Turn KeelError into ``Error: ... (kind=...)`` and the error's exit code."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except KeelError as e:
            error_exit(str(e), exit_code=e.exit_code, kind=e.kind)

    return wrapper  # type: ignore[return-value]


def load_config(path: str | None, *, required: bool = False) -> PipelineConfig | None:
    """Load ``keel.yaml``.

    An explicit ``path`` must exist. Without one, ``./keel.yaml`` is used when
    present.

    Raises:
        ConfigurationError: If the file is required but missing, or invalid.
    """
    if path is None:
        default = Path(DEFAULT_CONFIG)
        if not default.exists():
            if required:
                raise ConfigurationError(f"No {DEFAULT_CONFIG} found; pass --config")
            return None
        path = str(default)
    return PipelineConfig.from_yaml(path)


def validate(model: Any, data: Mapping[str, Any], what: str) -> Any:
    """Validate ``data`` into ``model``, raising ConfigurationError."""
    try:
        return model.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {what}: {e}") from e


def drop_unset(options: Mapping[str, Any]) -> dict[str, Any]:
    """CLI options that were actually given."""
    return {k: v for k, v in options.items() if v is not None and v != ()}


def resolve_registry_config(
    config: PipelineConfig | None,
    *,
    host: str | None = None,
    owner: str | None = None,
    auth: str | None = None,
) -> RegistryConfig:
    """Registry settings from keel.yaml with CLI overrides applied."""
    base = config.registry.model_dump() if config is not None else {}
    overrides = drop_unset({"host": host, "owner": owner, "auth": auth})
    if not overrides and config is not None:
        return config.registry
    return validate(RegistryConfig, {**base, **overrides}, "registry settings")


def write_outputs(
    outputs: Mapping[str, str],
    *,
    environ: Mapping[str, str] | None = None,
    echo: bool = True,
) -> None:
    """Print ``key=value`` lines and append them to ``$GITHUB_OUTPUT`` if set.

    Raises:
        ConfigurationError: If ``$GITHUB_OUTPUT`` cannot be written.
    """
    lines = [f"{key}={value}" for key, value in outputs.items()]
    if echo:
        for line in lines:
            success(line)

    env = os.environ if environ is None else environ
    output_file = env.get(ENV_GITHUB_OUTPUT)
    if not output_file:
        return
    try:
        with open(output_file, "a", encoding="utf-8") as f:
            f.write("".join(f"{line}\n" for line in lines))
    except OSError as e:
        raise ConfigurationError(f"Cannot write {ENV_GITHUB_OUTPUT} ({output_file}): {e}") from e


output_option = click.option(
    "--output",
    "-o",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Result format on stdout.",
)

registry_auth_option = click.option(
    "--registry-auth",
    type=click.Choice([a.value for a in AuthType]),
    default=None,
    help="Registry auth type (secrets come from KEEL_REGISTRY_* variables).",
)

config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help=f"Pipeline config file (default: ./{DEFAULT_CONFIG} if present).",
)


__all__ = [
    "DEFAULT_CONFIG",
    "ExitCode",
    "config_option",
    "drop_unset",
    "error",
    "error_exit",
    "handle_keel_errors",
    "info",
    "load_config",
    "output_option",
    "registry_auth_option",
    "resolve_registry_config",
    "success",
    "validate",
    "warn",
    "write_outputs",
]
