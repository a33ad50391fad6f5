"""Image build toolchain adapter (``docker buildx``).

All target platforms are built in one invocation and exported as an OCI
image layout directory, which the registry client then publishes.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path

import structlog

from keel.errors import BuildFailure
from keel.schemas.build import BuildContent
from keel.telemetry.tracing import create_span
from keel.toolchain._process import CommandResult, run_command

logger = structlog.get_logger(__name__)

Runner = Callable[..., CommandResult]


class DockerBuildxToolchain:
    """Build images with ``docker buildx build --output type=oci``.

    Example:
        >>> toolchain = DockerBuildxToolchain()
        >>> content = toolchain.build(
        ...     context=Path("."),
        ...     dockerfile=Path("Dockerfile"),
        ...     platforms=["linux/amd64", "linux/arm64"],
        ...     build_args={"REVISION": "1a2b3c4d"},
        ...     labels={"org.opencontainers.image.revision": "1a2b3c4d"},
        ...     output_dir=Path("/tmp/keel-layout"),
        ... )
    """

    def __init__(
        self,
        binary: str = "docker",
        *,
        timeout_seconds: float = 3600,
        runner: Runner = run_command,
    ) -> None:
        self._binary = binary
        self._timeout = timeout_seconds
        self._runner = runner

    def command(
        self,
        *,
        context: Path,
        dockerfile: Path,
        platforms: list[str],
        build_args: Mapping[str, str],
        labels: Mapping[str, str],
        output_dir: Path,
        cache_from: str | None = None,
        cache_to: str | None = None,
    ) -> list[str]:
        """Argument vector for one build."""
        argv = [
            self._binary,
            "buildx",
            "build",
            "--file",
            str(dockerfile),
            "--platform",
            ",".join(platforms),
            "--output",
            f"type=oci,dest={output_dir},tar=false",
        ]
        for key, value in build_args.items():
            argv += ["--build-arg", f"{key}={value}"]
        for key, value in labels.items():
            argv += ["--label", f"{key}={value}"]
        if cache_from:
            argv += ["--cache-from", cache_from]
        if cache_to:
            argv += ["--cache-to", cache_to]
        argv.append(str(context))
        return argv

    def build(
        self,
        *,
        context: Path,
        dockerfile: Path,
        platforms: list[str],
        build_args: Mapping[str, str],
        labels: Mapping[str, str],
        output_dir: Path,
        cache_from: str | None = None,
        cache_to: str | None = None,
    ) -> BuildContent:
        """Build and export an OCI image layout into ``output_dir``.

        Raises:
            BuildFailure: If the toolchain exits non-zero, times out or
                produces no layout.
        """
        if not dockerfile.is_file():
            raise BuildFailure(f"build instructions not found: {dockerfile}")

        argv = self.command(
            context=context,
            dockerfile=dockerfile,
            platforms=platforms,
            build_args=build_args,
            labels=labels,
            output_dir=output_dir,
            cache_from=cache_from,
            cache_to=cache_to,
        )
        log = logger.bind(context=str(context), platforms=platforms)
        log.info("image_build_started")

        with create_span(
            "keel.build.image",
            attributes={"keel.platforms": ",".join(platforms)},
        ) as span:
            result = self._runner(argv, timeout=self._timeout)
            span.set_attribute("duration_ms", result.duration_ms)

            if not result.ok:
                log.error("image_build_failed", reason=result.failure_reason())
                raise BuildFailure(result.failure_reason())

            if not (output_dir / "index.json").is_file():
                raise BuildFailure(f"toolchain produced no OCI layout in {output_dir}")

        log.info("image_build_completed", duration_ms=result.duration_ms)
        return BuildContent(layout_path=output_dir, platforms=list(platforms))


__all__ = ["DockerBuildxToolchain"]
