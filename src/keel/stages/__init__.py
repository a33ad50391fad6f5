"""Pipeline stages. Each stage is one invocation that runs to completion."""

from __future__ import annotations

from keel.stages.build import BuildStage
from keel.stages.deploy import DeployStage
from keel.stages.promote import PromoteStage

__all__ = ["BuildStage", "DeployStage", "PromoteStage"]
