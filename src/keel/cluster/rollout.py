"""Rollout monitoring.

``RolloutMonitor.await_rollout`` polls a deployment until it is complete,
explicitly failed, or the timeout elapses. Elapsed time comes from an
injectable monotonic clock and the final sleep is clipped to the remaining
budget, so the loop never runs meaningfully past ``timeout``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

import structlog

from keel.errors import RolloutFailed, RolloutTimedOut
from keel.schemas.deploy import RolloutCondition, RolloutRecord, RolloutState, RolloutStatus
from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


def _is_access_denied(error: Exception) -> bool:
    """401/403 from the API server; retrying cannot succeed."""
    from kubernetes.client import ApiException

    return isinstance(error, ApiException) and error.status in (401, 403)


class RolloutStatusSource(Protocol):
    """Anything that can report a deployment's rollout status."""

    def get_rollout_status(
        self,
        deployment: str,
        *,
        namespace: str,
        image_ref: str | None = None,
    ) -> RolloutStatus: ...


class RolloutMonitor:
    """Poll a deployment's status until a terminal outcome.

    Args:
        cluster: Status source, normally a ClusterClient.
        clock: Monotonic clock in seconds.
        sleep: Sleep function.
    """

    def __init__(
        self,
        cluster: RolloutStatusSource,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cluster = cluster
        self._clock = clock
        self._sleep = sleep

    def await_rollout(
        self,
        record: RolloutRecord,
        *,
        namespace: str,
        deployment: str,
        timeout: float,
        interval: float,
    ) -> RolloutRecord:
        """Poll until the rollout of ``record.desired_image_ref`` ends.

        Status read errors are logged and retried on the next poll, except
        401/403 responses, which end the rollout as failed.

        Returns:
            The record in state ``succeeded``.

        Raises:
            RolloutFailed: If the cluster reports an explicit failure or denies
                access to the deployment status.
            RolloutTimedOut: If ``timeout`` elapses first.
        """
        log = logger.bind(deployment=record.deployment_id, image=record.desired_image_ref)
        start = self._clock()

        with create_span(
            "keel.deploy.rollout",
            attributes={"keel.deployment": record.deployment_id, "keel.timeout": timeout},
        ) as span:
            while True:
                try:
                    status = self._cluster.get_rollout_status(
                        deployment, namespace=namespace, image_ref=record.desired_image_ref
                    )
                except Exception as e:  # noqa: BLE001
                    reason = sanitize_error_message(f"{type(e).__name__}: {e}")
                    record.last_reason = f"status read failed: {reason}"
                    if _is_access_denied(e):
                        record.finish(RolloutState.FAILED)
                        log.error("rollout_status_forbidden", error=reason)
                        raise RolloutFailed(record) from e
                    log.warning("rollout_status_unavailable", error=reason)
                else:
                    record.observe(status)
                    log.info(
                        "rollout_polled",
                        condition=status.condition.value,
                        ready=status.ready_replicas,
                        desired=status.desired_replicas,
                        polls=record.polls,
                    )
                    if status.condition == RolloutCondition.COMPLETE:
                        record.finish(RolloutState.SUCCEEDED)
                        span.set_attribute("keel.polls", record.polls)
                        log.info("rollout_succeeded", polls=record.polls)
                        return record
                    if status.condition == RolloutCondition.FAILED:
                        record.finish(RolloutState.FAILED, status.reason)
                        log.error("rollout_failed", reason=record.last_reason)
                        raise RolloutFailed(record)

                elapsed = self._clock() - start
                if elapsed >= timeout:
                    record.finish(RolloutState.TIMED_OUT)
                    log.error("rollout_timed_out", timeout=timeout, polls=record.polls)
                    raise RolloutTimedOut(record, timeout)

                # Don't sleep past the deadline
                self._sleep(min(interval, timeout - elapsed))


__all__ = ["RolloutMonitor", "RolloutStatusSource"]
