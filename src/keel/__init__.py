"""keel: build once, promote by digest, deploy.

Stages:
    keel.stages.build: Build, verify, publish, emit a CanonicalReference
    keel.stages.promote: Point target tags at an existing digest
    keel.stages.deploy: Apply manifests, pin the image digest, await rollout
    keel.pipeline: Run the stages for every environment in keel.yaml
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__: list[str] = ["__version__"]
