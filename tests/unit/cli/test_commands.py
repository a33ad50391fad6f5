"""Unit tests for the keel CLI commands (stages mocked)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from keel.cli.main import cli, main
from keel.errors import NoCredentialAvailable, PartialPromotionFailure
from keel.pipeline import EnvironmentOutcome, PipelineResult
from keel.schemas.build import BuildMetadata, BuildResult
from keel.schemas.deploy import DeployPhase, DeployResult, RolloutRecord, RolloutState
from keel.schemas.promotion import PromotionResult, TagOutcome, TagStatus
from keel.schemas.reference import Artifact, CanonicalReference

DIGEST = "sha256:" + "a" * 64
REFERENCE = CanonicalReference.parse(f"ghcr.io/acme/shop@{DIGEST}")

KEEL_YAML = """\
app_name: shop
registry:
  host: ghcr.io
  owner: acme
build:
  test_command: make test
environments:
  - name: staging
    promote_to: staging
    namespace: shop-staging
    container: web
"""


def build_result() -> BuildResult:
    return BuildResult(
        artifact=Artifact(name="shop", content_digest=DIGEST, registry_location="ghcr.io/acme/shop"),
        image=REFERENCE,
        image_tag="sha-1a2b3c4",
        metadata=BuildMetadata(revision="1a2b3c4d", branch="main", built_at=datetime.now(timezone.utc)),
        tested=True,
        warnings=["could not tag latest: denied"],
    )


def deploy_result(request) -> DeployResult:
    record = RolloutRecord(deployment_id=request.deployment_id, desired_image_ref=str(request.image))
    record.finish(RolloutState.SUCCEEDED)
    return DeployResult(
        environment=request.environment,
        deployment=request.deployment,
        container=request.container,
        image=request.image,
        credential_method="static",
        phase_history=[DeployPhase.RESOLVING_CREDENTIALS, DeployPhase.SUCCEEDED],
        applied=["Deployment/shop"],
        rollout=record,
    )


@pytest.fixture
def registry_client_cls() -> MagicMock:
    """Patched RegistryClient class whose context manager yields a mock."""
    cls = MagicMock()
    cls.from_config.return_value.__enter__.return_value = MagicMock(name="client")
    return cls


class TestMain:
    """Tests for the root group."""

    def test_help_lists_commands(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("build", "promote", "deploy", "run"):
            assert command in result.output

    def test_unknown_command_exit_code(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["explode"])
        assert exc_info.value.code == 2


class TestPromoteCommand:
    """Tests for ``keel promote``."""

    def test_promote(self, cli_runner: CliRunner, registry_client_cls: MagicMock) -> None:
        stage_cls = MagicMock()
        stage_cls.return_value.run.return_value = PromotionResult(
            reference=REFERENCE,
            outcomes=[
                TagOutcome(tag="dev", status=TagStatus.CREATED),
                TagOutcome(tag="staging", status=TagStatus.MOVED, previous_digest="sha256:" + "b" * 64),
            ],
        )

        with cli_runner.isolated_filesystem(), patch(
            "keel.cli.promote.RegistryClient", registry_client_cls
        ), patch("keel.cli.promote.PromoteStage", stage_cls):
            result = cli_runner.invoke(cli, ["promote", "-r", str(REFERENCE), "-t", "dev,staging"])

        assert result.exit_code == 0, result.output
        assert "created" in result.output
        assert "(was sha256:bbbbbbbbbbbb...)" in result.output
        stage_cls.return_value.run.assert_called_once_with(REFERENCE, "dev,staging")
        registry = registry_client_cls.from_config.call_args.args[0]
        assert registry.host == "ghcr.io"

    def test_tag_reference_rejected(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["promote", "-r", "ghcr.io/acme/shop:latest", "-t", "dev"])

        assert result.exit_code == 23
        assert "kind=invalid_reference" in result.output

    def test_partial_failure_exit_code(self, cli_runner: CliRunner, registry_client_cls: MagicMock) -> None:
        stage_cls = MagicMock()
        stage_cls.return_value.run.side_effect = PartialPromotionFailure(
            str(REFERENCE), ["dev"], {"staging": "Authentication failed"}
        )

        with cli_runner.isolated_filesystem(), patch(
            "keel.cli.promote.RegistryClient", registry_client_cls
        ), patch("keel.cli.promote.PromoteStage", stage_cls):
            result = cli_runner.invoke(cli, ["promote", "-r", str(REFERENCE), "-t", "dev,staging"])

        assert result.exit_code == 22
        assert "kind=partial_promotion_failure" in result.output
        assert "failed=[staging]" in result.output


class TestBuildCommand:
    """Tests for ``keel build``."""

    def test_build_writes_outputs(
        self, cli_runner: CliRunner, registry_client_cls: MagicMock, tmp_path: Path
    ) -> None:
        github_output = tmp_path / "github_output"
        stage_cls = MagicMock()
        stage_cls.return_value.run.return_value = build_result()

        with cli_runner.isolated_filesystem(), patch(
            "keel.cli.build.RegistryClient", registry_client_cls
        ), patch("keel.cli.build.BuildStage", stage_cls):
            result = cli_runner.invoke(
                cli,
                ["build", "--app-name", "shop", "--owner", "acme", "--platform", "linux/arm64"],
                env={"GITHUB_OUTPUT": str(github_output)},
            )

        assert result.exit_code == 0, result.output
        assert f"image={REFERENCE}" in result.output
        assert "Warning: could not tag latest: denied" in result.output
        assert github_output.read_text() == f"image={REFERENCE}\nimage_tag=sha-1a2b3c4\n"

        config = stage_cls.call_args.args[0]
        assert config.image == "ghcr.io/acme/shop"
        assert config.platforms == ["linux/arm64"]
        assert config.test_command == "pytest -q"

    def test_empty_test_command_disables_tests(
        self, cli_runner: CliRunner, registry_client_cls: MagicMock
    ) -> None:
        stage_cls = MagicMock()
        stage_cls.return_value.run.return_value = build_result()

        with cli_runner.isolated_filesystem(), patch(
            "keel.cli.build.RegistryClient", registry_client_cls
        ), patch("keel.cli.build.BuildStage", stage_cls):
            result = cli_runner.invoke(
                cli, ["build", "--app-name", "shop", "--owner", "acme", "--test-command", ""]
            )

        assert result.exit_code == 0, result.output
        assert stage_cls.call_args.args[0].test_command is None

    def test_config_file_with_overrides(
        self, cli_runner: CliRunner, registry_client_cls: MagicMock
    ) -> None:
        stage_cls = MagicMock()
        stage_cls.return_value.run.return_value = build_result()

        with cli_runner.isolated_filesystem(), patch(
            "keel.cli.build.RegistryClient", registry_client_cls
        ), patch("keel.cli.build.BuildStage", stage_cls):
            Path("keel.yaml").write_text(KEEL_YAML)
            result = cli_runner.invoke(cli, ["build", "--scan-mode", "warn", "--run-security-scan"])

        assert result.exit_code == 0, result.output
        config = stage_cls.call_args.args[0]
        assert config.test_command == "make test"
        assert config.run_security_scan is True
        assert config.scan_policy.mode == "warn"

    def test_json_output(self, cli_runner: CliRunner, registry_client_cls: MagicMock) -> None:
        stage_cls = MagicMock()
        stage_cls.return_value.run.return_value = build_result()

        with cli_runner.isolated_filesystem(), patch(
            "keel.cli.build.RegistryClient", registry_client_cls
        ), patch("keel.cli.build.BuildStage", stage_cls):
            result = cli_runner.invoke(
                cli, ["build", "--app-name", "shop", "--owner", "acme", "--output", "json"]
            )

        assert result.exit_code == 0, result.output
        assert '"image_tag": "sha-1a2b3c4"' in result.output

    def test_missing_owner_is_configuration_error(self, cli_runner: CliRunner) -> None:
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(cli, ["build", "--app-name", "shop"])

        assert result.exit_code == 2
        assert "kind=configuration" in result.output


class TestDeployCommand:
    """Tests for ``keel deploy``."""

    def test_deploy_from_config_environment(self, cli_runner: CliRunner) -> None:
        stage_cls = MagicMock()
        stage_cls.return_value.run.side_effect = deploy_result

        with cli_runner.isolated_filesystem(), patch("keel.cli.deploy.DeployStage", stage_cls):
            Path("keel.yaml").write_text(KEEL_YAML)
            result = cli_runner.invoke(
                cli,
                ["deploy", "-r", str(REFERENCE), "-e", "staging", "--rollout-timeout", "60"],
                env={"KUBE_CONFIG": "PLACEHOLDER_KUBECONFIG"},
            )

        assert result.exit_code == 0, result.output
        request = stage_cls.return_value.run.call_args.args[0]
        assert request.namespace == "shop-staging"
        assert request.deployment == "shop"
        assert request.container == "web"
        assert request.rollout_timeout == 60
        assert request.image == REFERENCE
        assert request.kubeconfig.get_secret_value() == "PLACEHOLDER_KUBECONFIG"
        assert "succeeded" in result.output

    def test_no_credential_exit_code(self, cli_runner: CliRunner) -> None:
        stage_cls = MagicMock()
        stage_cls.return_value.run.side_effect = NoCredentialAvailable("staging")

        with cli_runner.isolated_filesystem(), patch("keel.cli.deploy.DeployStage", stage_cls):
            result = cli_runner.invoke(
                cli,
                ["deploy", "-r", str(REFERENCE), "-e", "staging", "--app-name", "shop", "--no-generate-kubeconfig"],
                env={"KUBE_CONFIG": ""},
            )

        assert result.exit_code == 30
        assert "kind=no_credential_available" in result.output
        request = stage_cls.return_value.run.call_args.args[0]
        assert request.generate_kubeconfig is False
        assert request.kubeconfig is None


class TestRunCommand:
    """Tests for ``keel run``."""

    def test_requires_config(self, cli_runner: CliRunner) -> None:
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(cli, ["run"])

        assert result.exit_code == 2
        assert "No keel.yaml found" in result.output

    def test_failed_environment_sets_exit_code(
        self, cli_runner: CliRunner, registry_client_cls: MagicMock
    ) -> None:
        runner_cls = MagicMock()
        runner_cls.return_value.run.return_value = PipelineResult(
            reference=REFERENCE,
            environments=[
                EnvironmentOutcome(
                    environment="staging",
                    error_kind="rollout_timed_out",
                    error="Rollout of shop-staging/shop timed out after 300s",
                    exit_code=35,
                )
            ],
        )

        with cli_runner.isolated_filesystem(), patch(
            "keel.cli.run.RegistryClient", registry_client_cls
        ), patch("keel.cli.run.PipelineRunner", runner_cls):
            Path("keel.yaml").write_text(KEEL_YAML)
            result = cli_runner.invoke(cli, ["run", "--image-ref", str(REFERENCE), "-e", "staging"])

        assert result.exit_code == 35
        assert "staging: rollout_timed_out" in result.output
        runner_cls.return_value.run.assert_called_once_with(REFERENCE, ["staging"])

    def test_json_output(self, cli_runner: CliRunner, registry_client_cls: MagicMock) -> None:
        runner_cls = MagicMock()
        runner_cls.return_value.run.return_value = PipelineResult(
            reference=REFERENCE,
            build=build_result(),
            environments=[EnvironmentOutcome(environment="staging")],
        )

        with cli_runner.isolated_filesystem(), patch(
            "keel.cli.run.RegistryClient", registry_client_cls
        ), patch("keel.cli.run.PipelineRunner", runner_cls):
            Path("keel.yaml").write_text(KEEL_YAML)
            result = cli_runner.invoke(cli, ["run", "--output", "json"], env={"GITHUB_OUTPUT": ""})

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output[result.output.index("{") :])
        assert payload["reference"]["content_digest"] == DIGEST
