"""Unit tests for the build-and-publish stage."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from keel.errors import BlockingScanFailure, BuildFailure, PublishFailure, TestFailure
from keel.registry.client import RegistryClient
from keel.schemas.build import BuildConfig, BuildContent, ScanEvaluation
from keel.stages.build import LATEST_TAG, BuildStage
from keel.toolchain._process import CommandResult
from keel.toolchain.verification import VerificationResult

REVISION = "1a2b3c4d5e6f7a8b9c0d"


@pytest.fixture
def toolchain(write_layout) -> MagicMock:
    """Toolchain mock that exports a real OCI layout into ``output_dir``."""

    def build(**kwargs) -> BuildContent:
        write_layout(kwargs["output_dir"], platforms=tuple(kwargs["platforms"]))
        return BuildContent(layout_path=kwargs["output_dir"], platforms=list(kwargs["platforms"]))

    mock = MagicMock()
    mock.build.side_effect = build
    return mock


@pytest.fixture
def verifier() -> MagicMock:
    mock = MagicMock()
    mock.run_tests.return_value = VerificationResult(passed=True, duration_ms=10)
    return mock


@pytest.fixture
def scanner() -> MagicMock:
    mock = MagicMock()
    mock.scan.return_value = ScanEvaluation(passed=True, blocking=False)
    return mock


def make_config(tmp_path: Path, **overrides) -> BuildConfig:
    fields = {
        "app_name": "shop",
        "image_name": "registry.test/acme/shop",
        "context": tmp_path,
        "revision": REVISION,
        "branch": "main",
    }
    return BuildConfig(**{**fields, **overrides})


def make_stage(
    config: BuildConfig,
    registry: RegistryClient,
    toolchain: MagicMock,
    verifier: MagicMock,
    scanner: MagicMock,
) -> BuildStage:
    return BuildStage(
        config, registry, toolchain=toolchain, verifier=verifier, scanner=scanner, environ={}
    )


class TestBuildStage:
    """Tests for BuildStage.run."""

    def test_publishes_revision_tag_and_returns_digest_reference(
        self, tmp_path, registry_client, fake_registry, toolchain, verifier, scanner
    ) -> None:
        result = make_stage(make_config(tmp_path), registry_client, toolchain, verifier, scanner).run()

        assert result.image_tag == "sha-1a2b3c4"
        assert result.image.registry_location == "registry.test/acme/shop"
        assert fake_registry.tag_digest("sha-1a2b3c4") == result.image.content_digest
        assert result.tested is True
        assert result.outputs() == {"image": str(result.image), "image_tag": "sha-1a2b3c4"}
        assert result.artifact.tags == frozenset({"sha-1a2b3c4"})
        verifier.run_tests.assert_called_once_with("pytest -q", None)

    def test_build_args_and_labels(
        self, tmp_path, registry_client, toolchain, verifier, scanner
    ) -> None:
        config = make_config(tmp_path, build_args=["PIP_INDEX=https://pypi.test", "REVISION=override-me"])

        make_stage(config, registry_client, toolchain, verifier, scanner).run()

        kwargs = toolchain.build.call_args.kwargs
        assert kwargs["build_args"]["PIP_INDEX"] == "https://pypi.test"
        assert kwargs["build_args"]["REVISION"] == REVISION
        assert kwargs["labels"]["org.opencontainers.image.revision"] == REVISION
        assert kwargs["dockerfile"] == tmp_path / "Dockerfile"

    def test_verification_skipped_without_test_command(
        self, tmp_path, registry_client, fake_registry, toolchain, verifier, scanner
    ) -> None:
        """Verification is optional: an unset test command still publishes."""
        config = make_config(tmp_path, test_command=None)

        result = make_stage(config, registry_client, toolchain, verifier, scanner).run()

        verifier.run_tests.assert_not_called()
        assert result.tested is False
        assert fake_registry.tag_digest("sha-1a2b3c4") == result.image.content_digest

    def test_test_failure_publishes_nothing(
        self, tmp_path, registry_client, fake_registry, toolchain, verifier, scanner
    ) -> None:
        verifier.run_tests.return_value = VerificationResult(passed=False, reason="exit code 1")

        with pytest.raises(TestFailure, match="exit code 1"):
            make_stage(make_config(tmp_path), registry_client, toolchain, verifier, scanner).run()

        assert fake_registry.tags == {}
        assert fake_registry.blobs == {}

    def test_build_failure(self, tmp_path, registry_client, toolchain, verifier, scanner) -> None:
        toolchain.build.side_effect = BuildFailure("exit code 1: failed to solve")

        with pytest.raises(BuildFailure):
            make_stage(make_config(tmp_path), registry_client, toolchain, verifier, scanner).run()

        verifier.run_tests.assert_not_called()

    def test_registry_failure_is_publish_failure(
        self, tmp_path, registry_client, fake_registry, toolchain, verifier, scanner
    ) -> None:
        fake_registry.deny_tags.add("sha-1a2b3c4")

        with pytest.raises(PublishFailure, match="registry.test/acme/shop:sha-1a2b3c4"):
            make_stage(make_config(tmp_path), registry_client, toolchain, verifier, scanner).run()


class TestLatestTag:
    """Tests for the best-effort ``latest`` tag."""

    def test_latest_on_primary_branch(
        self, tmp_path, registry_client, fake_registry, toolchain, verifier, scanner
    ) -> None:
        config = make_config(tmp_path, push_latest=True)

        result = make_stage(config, registry_client, toolchain, verifier, scanner).run()

        assert result.latest_tagged is True
        assert fake_registry.tag_digest(LATEST_TAG) == result.image.content_digest
        assert LATEST_TAG in result.artifact.tags
        assert str(result.image).endswith(result.image.content_digest)

    def test_no_latest_on_other_branch(
        self, tmp_path, registry_client, fake_registry, toolchain, verifier, scanner
    ) -> None:
        config = make_config(tmp_path, push_latest=True, branch="feature/x")

        result = make_stage(config, registry_client, toolchain, verifier, scanner).run()

        assert result.latest_tagged is False
        assert fake_registry.tag_digest(LATEST_TAG) is None

    def test_latest_failure_is_a_warning(
        self, tmp_path, registry_client, fake_registry, toolchain, verifier, scanner
    ) -> None:
        fake_registry.deny_tags.add(LATEST_TAG)
        config = make_config(tmp_path, push_latest=True)

        result = make_stage(config, registry_client, toolchain, verifier, scanner).run()

        assert result.latest_tagged is False
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("could not tag latest")
        assert fake_registry.tag_digest("sha-1a2b3c4") == result.image.content_digest


class TestSecurityScan:
    """Tests for the post-publish scan."""

    def test_scan_receives_digest_reference(
        self, tmp_path, registry_client, toolchain, verifier, scanner
    ) -> None:
        config = make_config(tmp_path, run_security_scan=True)

        result = make_stage(config, registry_client, toolchain, verifier, scanner).run()

        assert scanner.scan.call_args.args[0] == result.image
        assert result.scan is not None
        assert result.scan.passed is True

    def test_blocking_scan_fails_after_publish(
        self, tmp_path, registry_client, fake_registry, toolchain, verifier, scanner
    ) -> None:
        scanner.scan.return_value = ScanEvaluation(
            passed=False, blocking=True, blocking_cves=["CVE-2024-0001"], reason="1 blocking vulnerabilities"
        )
        config = make_config(tmp_path, run_security_scan=True)

        with pytest.raises(BlockingScanFailure) as exc_info:
            make_stage(config, registry_client, toolchain, verifier, scanner).run()

        assert exc_info.value.blocking_cves == ["CVE-2024-0001"]
        assert fake_registry.tag_digest("sha-1a2b3c4") is not None

    def test_blocked_image_never_gets_latest(
        self, tmp_path, registry_client, fake_registry, toolchain, verifier, scanner
    ) -> None:
        scanner.scan.return_value = ScanEvaluation(
            passed=False, blocking=True, blocking_cves=["CVE-2024-0001"], reason="1 blocking vulnerabilities"
        )
        config = make_config(tmp_path, run_security_scan=True, push_latest=True)

        with pytest.raises(BlockingScanFailure):
            make_stage(config, registry_client, toolchain, verifier, scanner).run()

        assert fake_registry.tag_digest(LATEST_TAG) is None

    def test_latest_follows_passing_scan(
        self, tmp_path, registry_client, fake_registry, toolchain, verifier, scanner
    ) -> None:
        config = make_config(tmp_path, run_security_scan=True, push_latest=True)

        result = make_stage(config, registry_client, toolchain, verifier, scanner).run()

        assert result.latest_tagged is True
        assert fake_registry.tag_digest(LATEST_TAG) == result.image.content_digest

    def test_warn_policy_records_warning(
        self, tmp_path, registry_client, toolchain, verifier, scanner
    ) -> None:
        scanner.scan.return_value = ScanEvaluation(
            passed=False, blocking=False, blocking_cves=["CVE-2024-0001"], reason="1 blocking vulnerabilities"
        )
        config = make_config(tmp_path, run_security_scan=True)

        result = make_stage(config, registry_client, toolchain, verifier, scanner).run()

        assert result.warnings == ["security scan: 1 blocking vulnerabilities"]


class TestResolveMetadata:
    """Tests for BuildStage.resolve_metadata."""

    def test_ci_environment(self, tmp_path, registry_client) -> None:
        config = make_config(tmp_path, revision=None, branch=None)
        stage = BuildStage(
            config, registry_client, environ={"GITHUB_SHA": "abcdef1234567", "GITHUB_REF_NAME": "release"}
        )

        metadata = stage.resolve_metadata()

        assert metadata.image_tag == "sha-abcdef1"
        assert metadata.branch == "release"
        assert metadata.built_at.microsecond == 0

    def test_git_fallback(self, tmp_path, registry_client) -> None:
        runner = MagicMock(
            side_effect=[CommandResult(0, "0123456789abcdef\n", "", 1), CommandResult(0, "main\n", "", 1)]
        )
        config = make_config(tmp_path, revision=None, branch=None)

        metadata = BuildStage(config, registry_client, environ={}, runner=runner).resolve_metadata()

        assert metadata.revision == "0123456789abcdef"
        assert runner.call_args_list[0].args[0] == ["git", "rev-parse", "HEAD"]

    def test_no_revision(self, tmp_path, registry_client) -> None:
        runner = MagicMock(return_value=CommandResult(128, "", "not a git repository", 1))
        config = make_config(tmp_path, revision=None)

        with pytest.raises(BuildFailure, match="not a git repository"):
            BuildStage(config, registry_client, environ={}, runner=runner).resolve_metadata()
