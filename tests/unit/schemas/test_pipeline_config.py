"""Unit tests for keel.yaml loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from keel.errors import ConfigurationError
from keel.schemas.deploy import DeployRequest
from keel.schemas.pipeline import AuthType, EnvironmentConfig, PipelineConfig
from keel.schemas.reference import CanonicalReference

DIGEST = "sha256:" + "e" * 64

KEEL_YAML = """\
app_name: shop
registry:
  host: ghcr.io
  owner: acme
  auth: token
build:
  platforms: [linux/amd64, linux/arm64]
environments:
  - name: staging
    promote_to: staging
    namespace: shop
  - name: prod
    promote_to: [prod, stable]
    namespace: shop
    deployment: storefront
    container: web
"""


@pytest.fixture
def keel_yaml(tmp_path: Path) -> Path:
    path = tmp_path / "keel.yaml"
    path.write_text(KEEL_YAML)
    return path


class TestPipelineConfig:
    """Tests for PipelineConfig.from_yaml."""

    def test_load(self, keel_yaml: Path) -> None:
        config = PipelineConfig.from_yaml(keel_yaml)

        assert config.app_name == "shop"
        assert config.registry.auth == AuthType.TOKEN
        assert config.build.image == "ghcr.io/acme/shop"
        assert config.build.platforms == ["linux/amd64", "linux/arm64"]
        assert [env.name for env in config.environments] == ["staging", "prod"]
        assert config.environment("prod").promote_to == ("prod", "stable")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            PipelineConfig.from_yaml(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "keel.yaml"
        path.write_text("app_name: [unclosed")
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            PipelineConfig.from_yaml(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "keel.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            PipelineConfig.from_yaml(path)

    def test_invalid_content(self, tmp_path: Path) -> None:
        path = tmp_path / "keel.yaml"
        path.write_text("app_name: shop\nbuild: {}\nenvironments:\n  - name: dev\n    promote_to: ','\n")
        with pytest.raises(ConfigurationError, match="Invalid pipeline config"):
            PipelineConfig.from_yaml(path)

    def test_duplicate_environment_names(self) -> None:
        with pytest.raises(ValidationError, match="duplicate environment names"):
            PipelineConfig.model_validate(
                {
                    "app_name": "shop",
                    "registry": {"owner": "acme"},
                    "build": {},
                    "environments": [
                        {"name": "dev", "promote_to": "dev"},
                        {"name": "dev", "promote_to": "dev2"},
                    ],
                }
            )

    def test_unknown_environment(self, keel_yaml: Path) -> None:
        config = PipelineConfig.from_yaml(keel_yaml)
        with pytest.raises(ConfigurationError, match="declared: staging, prod"):
            config.environment("qa")


class TestEnvironmentDeployRequest:
    """Tests for EnvironmentConfig.deploy_request."""

    def test_defaults_to_app_name(self) -> None:
        env = EnvironmentConfig(name="staging", promote_to="staging")
        image = CanonicalReference.parse(f"ghcr.io/acme/shop@{DIGEST}")

        request = env.deploy_request(image, app_name="shop")

        assert request.deployment == "shop"
        assert request.container == "shop"
        assert request.image == image
        assert request.kubeconfig is None

    def test_blank_kubeconfig_is_unset(self) -> None:
        image = CanonicalReference.parse(f"ghcr.io/acme/shop@{DIGEST}")
        request = DeployRequest(
            environment="dev", image=image, deployment="shop", container="app", kubeconfig=SecretStr("  ")
        )
        assert request.kubeconfig is None
        assert request.deployment_id == "default/shop"
