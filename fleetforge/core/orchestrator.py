"""Publish-and-deploy orchestrator — the central coordinator for FleetForge runs.

The Orchestrator wires the Version Resolver, Artifact Store, Registry
Client, Deployment Dispatcher, Trigger Guard and Run Ledger into one
state machine::

    pending -> resolving -> publishing -> dispatching -> monitoring
            -> completed | partially_failed | failed

with two back-edges: ``publishing -> resolving`` when the registry reports
a version conflict, and ``monitoring -> dispatching`` when a deployment
times out and is redispatched.  Every transition is appended to the Run
Ledger.  Registration always completes before dispatch.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fleetforge.backends import build_backends
from fleetforge.config import ProdConfig
from fleetforge.controlplane.base import DeploymentAPI, DeploymentRecords, RegistryAPI
from fleetforge.core.artifact_store import ArtifactStore
from fleetforge.core.dispatcher import DeploymentDispatcher
from fleetforge.core.errors import (
    ArtifactUnreadable,
    DeploymentCancelled,
    DeviceDeploymentFailure,
    DispatchRejected,
    FleetForgeError,
    RegistryUnavailable,
    TimeoutExceeded,
    VersionConflict,
)
from fleetforge.core.production_guard import enforce_production_constraints
from fleetforge.core.registry_client import RegistryClient
from fleetforge.core.retry import RetryPolicy, jittered, retry_async
from fleetforge.core.run_ledger import RunLedger
from fleetforge.core.run_machine import RunStateMachine
from fleetforge.core.trigger_guard import TriggerGuard
from fleetforge.core.version_resolver import VersionResolver
from fleetforge.core.versioning import VersioningPolicy, get_policy
from fleetforge.models.artifacts import BuildArtifact, artifact_key
from fleetforge.models.components import ComponentStatus, ComponentVersion
from fleetforge.models.deployments import (
    Deployment,
    DeploymentStatus,
    DeploymentTarget,
    RolloutPolicy,
)
from fleetforge.models.ledger import LedgerEntry
from fleetforge.models.runs import (
    PublishRequest,
    RunResult,
    RunState,
    StepFailure,
)

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"ff-{ts}-{uuid.uuid4().hex[:6]}"


@dataclass
class _Run:
    """Mutable bookkeeping for one in-flight run."""

    run_id: str
    component_name: str
    target_group_id: str
    version: ComponentVersion | None = None
    deployment: Deployment | None = None
    superseded: list[str] = field(default_factory=list)


class Orchestrator:
    """Drives artifacts through resolve, publish, dispatch and monitor.

    Parameters
    ----------
    config:
        Runtime configuration.  Loaded from the environment if not provided.
    store, registry, fleet, records:
        Backends.  Any that are missing are built from ``config.backend``.
    ledger:
        Run Ledger; defaults to ``config.ledger_path``.
    trigger_guard:
        Guard for ``initialize``; defaults to a SQLite store at
        ``config.trigger_db_path``.
    versioning:
        Versioning policy; defaults to ``config.versioning_scheme``.
    sleep, clock:
        Injectable for tests.  ``clock`` measures deployment timeouts.
    """

    def __init__(
        self,
        config: ProdConfig | None = None,
        *,
        store: ArtifactStore | None = None,
        registry: RegistryAPI | None = None,
        fleet: DeploymentAPI | None = None,
        records: DeploymentRecords | None = None,
        ledger: RunLedger | None = None,
        trigger_guard: TriggerGuard | None = None,
        versioning: VersioningPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or ProdConfig()

        # Production guard: fails hard if production constraints are violated
        enforce_production_constraints(self.config)

        if None in (store, registry, fleet, records):
            backends = build_backends(self.config)
            store = store or backends.store
            registry = registry or backends.registry
            fleet = fleet or backends.fleet
            records = records or backends.records

        self._sleep = sleep
        self._clock = clock
        self._registry = registry
        self.store = store

        self._resolve_policy = self._retry_policy(self.config.resolve_max_attempts)
        registry_policy = self._retry_policy(self.config.registry_max_attempts)
        self.resolver = VersionResolver(
            registry,
            store,
            policy=versioning or get_policy(self.config.versioning_scheme),
            retry_policy=registry_policy,
        )
        self.registry_client = RegistryClient(registry, store, retry_policy=registry_policy)
        self.dispatcher = DeploymentDispatcher(
            fleet,
            records,
            retry_policy=self._retry_policy(self.config.dispatch_max_attempts),
        )
        self.ledger = ledger or RunLedger(self.config.ledger_path)
        self.run_machine = RunStateMachine(self.ledger)
        self.trigger_guard = trigger_guard or TriggerGuard.from_path(
            self.config.trigger_db_path,
            lease_seconds=self.config.trigger_lease_seconds,
            poll_interval=max(self.config.poll_interval_seconds, 0.1),
            sleep=sleep,
        )

    def _retry_policy(self, max_attempts: int) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay=self.config.backoff_base_seconds,
            max_delay=self.config.backoff_max_seconds,
            jitter=self.config.backoff_jitter,
        )

    # ------------------------------------------------------------------
    # Ordinary runs
    # ------------------------------------------------------------------

    async def publish_and_deploy(
        self,
        artifact: BuildArtifact,
        component_name: str,
        target_group_id: str,
        *,
        policy: RolloutPolicy | None = None,
        recipe_template: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        """Publish ``artifact`` as ``component_name`` and deploy it to the group.

        Fatal errors never escape: they end the run in ``failed`` and are
        described by ``RunResult.failure``.  Cancelling the calling task
        cancels the in-flight deployment and re-raises.
        """
        policy = policy or RolloutPolicy()
        run = _Run(
            run_id=run_id or new_run_id(),
            component_name=component_name,
            target_group_id=target_group_id,
        )
        logger.info(
            "Run %s: publishing %s from %s to %s.",
            run.run_id,
            component_name,
            artifact.payload_location,
            target_group_id,
        )
        try:
            await self._advance(run, RunState.RESOLVING)
            payload = await self.store.get(artifact.payload_location)
            published = await self._resolve_and_publish(run, artifact, payload, recipe_template)

            target = DeploymentTarget(
                target_group_id=target_group_id,
                component_version=published,
                policy=policy,
            )
            await self._advance(run, RunState.DISPATCHING)
            run.deployment = await self.dispatcher.create(target)
            run.deployment = await self.dispatcher.start(run.deployment)
            await self._advance(run, RunState.MONITORING)
            deployment = await self._monitor(run, target)
            return await self._finish(run, deployment)
        except asyncio.CancelledError:
            await self._abandon(run)
            raise
        except FleetForgeError as exc:
            return await self._fail(run, exc)

    async def _resolve_and_publish(
        self,
        run: _Run,
        artifact: BuildArtifact,
        payload: bytes,
        recipe_template: dict[str, Any] | None,
    ) -> ComponentVersion:
        """Resolve, store and publish; a version conflict restarts resolution."""
        conflicts = 0
        while True:
            try:
                version = await self.resolver.resolve(
                    artifact,
                    run.component_name,
                    payload=payload,
                    recipe_template=recipe_template,
                )
            except VersionConflict as exc:
                conflicts += 1
                await self._back_off(run, conflicts, exc)
                continue

            run.version = version
            await self._advance(run, RunState.PUBLISHING)
            try:
                await self.store.put(artifact_key(run.component_name, version.content_hash), payload)
                published = await self.registry_client.publish(version)
            except VersionConflict as exc:
                conflicts += 1
                await self._back_off(run, conflicts, exc)
                await self._advance(run, RunState.RESOLVING, detail=str(exc))
                continue

            run.version = published
            return published

    async def _back_off(self, run: _Run, attempt: int, exc: VersionConflict) -> None:
        if attempt >= self._resolve_policy.max_attempts:
            logger.warning(
                "Run %s: version conflicts persisted after %d attempt(s).", run.run_id, attempt
            )
            raise exc
        delay = self._resolve_policy.delay_for(attempt)
        logger.info(
            "Run %s: %s; re-resolving in %.2fs (attempt %d/%d).",
            run.run_id,
            exc,
            delay,
            attempt,
            self._resolve_policy.max_attempts,
        )
        await self._sleep(delay)

    async def _monitor(self, run: _Run, target: DeploymentTarget) -> Deployment:
        """Poll until terminal; time out, expire and redispatch as the policy allows."""
        timeout = self.config.deployment_timeout_seconds
        redispatches = 0
        deadline = self._clock() + timeout
        while True:
            deployment = await self.dispatcher.poll_status(run.deployment.deployment_id)
            run.deployment = deployment
            if deployment.is_terminal:
                return deployment

            if self._clock() >= deadline:
                expired = await self.dispatcher.expire(
                    deployment.deployment_id, f"still in progress after {timeout:g}s"
                )
                run.deployment = expired
                if expired.status != DeploymentStatus.FAILED:
                    # Finished on its own while we were expiring it.
                    return expired
                if redispatches >= target.policy.retry_count:
                    raise TimeoutExceeded(expired.deployment_id, timeout)

                redispatches += 1
                run.superseded.append(expired.deployment_id)
                logger.warning(
                    "Run %s: deployment %s timed out; redispatching (%d/%d).",
                    run.run_id,
                    expired.deployment_id,
                    redispatches,
                    target.policy.retry_count,
                )
                await self._advance(
                    run,
                    RunState.DISPATCHING,
                    detail=f"timeout after {timeout:g}s; redispatch {redispatches}",
                )
                run.deployment = await self.dispatcher.create(
                    target, attempt=redispatches + 1, supersedes=expired.deployment_id
                )
                run.deployment = await self.dispatcher.start(run.deployment)
                await self._advance(run, RunState.MONITORING)
                deadline = self._clock() + timeout
                continue

            await self._sleep(jittered(self.config.poll_interval_seconds, self.config.poll_jitter))

    async def _finish(self, run: _Run, deployment: Deployment) -> RunResult:
        if deployment.status == DeploymentStatus.COMPLETED:
            await self._advance(run, RunState.COMPLETED)
            logger.info(
                "Run %s completed: %s on %d device(s).",
                run.run_id,
                run.version.ref,
                len(deployment.per_device_results),
            )
            return self._result(run, RunState.COMPLETED)

        if deployment.status == DeploymentStatus.PARTIALLY_FAILED:
            failure = DeviceDeploymentFailure(
                deployment.deployment_id,
                {d: o.value for d, o in deployment.failed_devices.items()},
            )
            step_failure = StepFailure(
                step=RunState.MONITORING,
                error_type=type(failure).__name__,
                message=str(failure),
                failed_devices=failure.failed_devices,
            )
            await self._advance(run, RunState.PARTIALLY_FAILED, detail=str(failure))
            logger.warning("Run %s partially failed: %s", run.run_id, failure)
            return self._result(run, RunState.PARTIALLY_FAILED, step_failure)

        if deployment.status == DeploymentStatus.CANCELLED:
            raise DeploymentCancelled(f"Deployment {deployment.deployment_id} was cancelled")
        raise DispatchRejected(
            f"Deployment {deployment.deployment_id} failed: "
            f"{deployment.failure_reason or 'rejected by the control plane'}"
        )

    async def _fail(self, run: _Run, exc: FleetForgeError) -> RunResult:
        step = await asyncio.to_thread(self.run_machine.get_current_state, run.run_id)
        if run.deployment is not None and not run.deployment.is_terminal:
            await self._stop_unwatched(run, f"run failed: {type(exc).__name__}: {exc}")
        failure = StepFailure(
            step=step,
            error_type=type(exc).__name__,
            message=str(exc),
            retryable=exc.retryable,
            failed_devices=getattr(exc, "failed_devices", {}),
        )
        logger.error("Run %s failed while %s: %s", run.run_id, step.value, exc)
        await self._advance(run, RunState.FAILED, detail=f"{failure.error_type}: {exc}")
        return self._result(run, RunState.FAILED, failure)

    async def _stop_unwatched(self, run: _Run, reason: str) -> None:
        """Mark the failed run's deployment failed; nothing polls it after this."""
        try:
            run.deployment = await self.dispatcher.expire(run.deployment.deployment_id, reason)
        except FleetForgeError:
            logger.exception(
                "Run %s: could not mark deployment %s failed.",
                run.run_id,
                run.deployment.deployment_id,
            )

    async def _abandon(self, run: _Run) -> None:
        """Cancel the in-flight deployment of a cancelled run."""
        logger.warning("Run %s cancelled.", run.run_id)
        try:
            if run.deployment is not None and not run.deployment.is_terminal:
                run.deployment = await self.dispatcher.cancel(run.deployment.deployment_id)
            await self._advance(run, RunState.FAILED, detail="run cancelled")
        except FleetForgeError:
            logger.exception("Run %s: cleanup after cancellation failed.", run.run_id)

    async def _advance(self, run: _Run, state: RunState, *, detail: str = "") -> LedgerEntry:
        return await asyncio.to_thread(
            self.run_machine.transition,
            run.run_id,
            state,
            component_name=run.component_name,
            component_version=run.version.semantic_version if run.version else "",
            content_hash=run.version.content_hash if run.version else "",
            deployment_id=run.deployment.deployment_id if run.deployment else "",
            detail=detail,
        )

    @staticmethod
    def _result(run: _Run, state: RunState, failure: StepFailure | None = None) -> RunResult:
        return RunResult(
            run_id=run.run_id,
            component_name=run.component_name,
            state=state,
            component_version=run.version,
            deployment=run.deployment,
            superseded_deployments=list(run.superseded),
            failure=failure,
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def publish_and_deploy_many(self, requests: list[PublishRequest]) -> list[RunResult]:
        """Run requests concurrently, except that one component name runs in order."""
        by_component: dict[str, list[int]] = {}
        for index, request in enumerate(requests):
            by_component.setdefault(request.component_name, []).append(index)

        results: list[RunResult | None] = [None] * len(requests)

        async def run_in_order(indices: list[int]) -> None:
            for index in indices:
                request = requests[index]
                results[index] = await self.publish_and_deploy(
                    request.artifact,
                    request.component_name,
                    request.target_group_id,
                    policy=request.policy,
                    recipe_template=request.recipe_template,
                )

        await asyncio.gather(*(run_in_order(indices) for indices in by_component.values()))
        return [result for result in results if result is not None]

    # ------------------------------------------------------------------
    # One-time initialization
    # ------------------------------------------------------------------

    async def initialize(
        self,
        artifact: BuildArtifact,
        component_name: str,
        target_group_id: str,
        *,
        enabled: bool | None = None,
        trigger_id: str = "init",
        policy: RolloutPolicy | None = None,
        recipe_template: dict[str, Any] | None = None,
    ) -> RunResult | None:
        """Publish and deploy at most once per ``trigger_id``.

        Returns ``None`` when initialization is disabled.  Later calls
        return the recorded result with ``replayed=True``.  A failed run is
        not recorded, so the next call tries again.
        """
        if enabled is None:
            enabled = self.config.run_initialization
        if not enabled:
            logger.info("Initialization is disabled; skipping trigger %s.", trigger_id)
            return None

        async def action() -> RunResult:
            result = await self.publish_and_deploy(
                artifact,
                component_name,
                target_group_id,
                policy=policy,
                recipe_template=recipe_template,
            )
            return result.model_copy(update={"trigger_id": trigger_id})

        async def probe() -> RunResult | None:
            found = await self.find_completed_effect(artifact, component_name, target_group_id)
            return found.model_copy(update={"trigger_id": trigger_id}) if found else None

        fired = await self.trigger_guard.fire_once(
            trigger_id,
            action,
            result_type=RunResult,
            probe=probe,
            should_record=lambda result: result.state != RunState.FAILED,
        )
        return fired.value.model_copy(update={"replayed": fired.replayed})

    async def find_completed_effect(
        self,
        artifact: BuildArtifact,
        component_name: str,
        target_group_id: str,
    ) -> RunResult | None:
        """A published version of this content with a finished deployment, if any."""
        try:
            content_hash = await self.resolver.content_hash(artifact)
        except ArtifactUnreadable as exc:
            logger.debug("Probe cannot read %s: %s", artifact.payload_location, exc)
            return None

        version = await retry_async(
            lambda: self._registry.find_by_hash(component_name, content_hash),
            policy=self._retry_policy(self.config.registry_max_attempts),
            retry_on=(RegistryUnavailable,),
            description=f"find_by_hash({component_name})",
        )
        if version is None or version.status != ComponentStatus.PUBLISHED:
            return None

        for deployment in reversed(await self.dispatcher.history(target_group_id)):
            deployed = deployment.components.get(component_name)
            if deployed is None or deployed.semantic_version != version.semantic_version:
                continue
            if deployment.status == DeploymentStatus.COMPLETED:
                return RunResult(
                    run_id=f"probe-{deployment.deployment_id}",
                    component_name=component_name,
                    state=RunState.COMPLETED,
                    component_version=version,
                    deployment=deployment,
                )
            if deployment.status == DeploymentStatus.PARTIALLY_FAILED:
                failed = {d: o.value for d, o in deployment.failed_devices.items()}
                return RunResult(
                    run_id=f"probe-{deployment.deployment_id}",
                    component_name=component_name,
                    state=RunState.PARTIALLY_FAILED,
                    component_version=version,
                    deployment=deployment,
                    failure=StepFailure(
                        step=RunState.MONITORING,
                        error_type=DeviceDeploymentFailure.__name__,
                        message=str(DeviceDeploymentFailure(deployment.deployment_id, failed)),
                        failed_devices=failed,
                    ),
                )
        return None

    # ------------------------------------------------------------------
    # Ledger queries
    # ------------------------------------------------------------------

    async def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        return await asyncio.to_thread(self.ledger.get_run_entries, run_id)

    async def get_all_run_ids(self) -> list[str]:
        return await asyncio.to_thread(self.ledger.get_all_run_ids)

    async def verify_chain(self, run_id: str) -> bool:
        return await asyncio.to_thread(self.ledger.verify_chain, run_id)
