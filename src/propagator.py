"""
Policy Propagator - Replicates root policies to their placement targets.

For every root policy the propagator resolves the placement decisions bound
to it and makes sure each target cluster namespace carries exactly one
up-to-date replicated policy. Disabling a root removes all of its replicas.

Every unexpected store error aborts the pass and is raised unchanged; the
caller retries the whole pass, which is idempotent.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Set, Tuple

from events import EventBus, PolicyEvent
from models import (
    ObjectMeta,
    OwnershipLabels,
    OWNERSHIP_LABEL_KEYS,
    PlacementBinding,
    PlacementDecision,
    PlacementRule,
    Policy,
    PolicyStatus,
    full_name_for_policy,
    labels_for_root_policy,
)
from store import NotFoundError, ObjectStore


class PolicyLogAdapter(logging.LoggerAdapter):
    """Appends the policy identity to every message."""

    def process(self, msg, kwargs):
        context = " ".join(f"{k}={v}" for k, v in self.extra.items())
        return f"{msg} [{context}]", kwargs


@dataclass
class PropagationResult:
    """Summary of one reconciliation pass."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    targets: Set[Tuple[str, str]] = field(default_factory=set)


def compare_spec_and_annotation(root: Policy, replica: Policy) -> bool:
    """
    Return True when the replica's spec and annotations equal the root's.

    Missing and empty annotation maps compare equal.
    """
    if (root.metadata.annotations or {}) != (replica.metadata.annotations or {}):
        return False
    return root.spec.model_dump() == replica.spec.model_dump()


def build_replicated_policy(root: Policy, decision: PlacementDecision) -> Policy:
    """
    Build a new replica of ``root`` for the target named by ``decision``.

    Only the root's labels, annotations and spec are carried over; the
    resource version and status start empty.
    """
    extra = {
        k: v for k, v in root.metadata.labels.items() if k not in OWNERSHIP_LABEL_KEYS
    }
    labels = OwnershipLabels(
        cluster_name=decision.cluster_name,
        cluster_namespace=decision.cluster_namespace,
        root_policy=full_name_for_policy(root),
        extra=extra,
    )
    annotations = root.metadata.annotations
    return Policy(
        metadata=ObjectMeta(
            namespace=decision.cluster_namespace,
            name=full_name_for_policy(root),
            labels=labels.to_labels(),
            annotations=dict(annotations) if annotations is not None else None,
        ),
        spec=root.spec.model_copy(deep=True),
        status=PolicyStatus(),
    )


class PolicyPropagator:
    """
    Reconciles root policies against placement decisions.

    Holds no state between passes; the object store is the only shared
    state, so passes for different roots can run concurrently.
    """

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventBus,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.recorder = recorder
        self.logger = logger or logging.getLogger(__name__)

    def _log(self, policy: Policy) -> PolicyLogAdapter:
        return PolicyLogAdapter(
            self.logger,
            {"Policy-Namespace": policy.namespace, "Policy-Name": policy.name},
        )

    async def reconcile_root(self, root: Policy) -> PropagationResult:
        """
        Run one reconciliation pass for a root policy.

        Raises:
            StoreError: Any store failure other than the expected NotFound
                cases. Replicas handled before the failure stay as they are.
        """
        if root.disabled:
            return await self._handle_disabled(root)

        log = self._log(root)
        result = PropagationResult()

        bindings = await self.store.list(PlacementBinding, namespace=root.namespace)
        for binding in bindings:
            for subject in binding.subjects:
                if not subject.matches(root):
                    continue

                try:
                    rule = await self.store.get(
                        PlacementRule, root.namespace, binding.placement_ref.name
                    )
                except NotFoundError:
                    # Rule may simply not exist yet; the rule's own creation
                    # triggers another pass.
                    log.warning(
                        f"Placement rule {binding.placement_ref.name} referenced by "
                        f"binding {binding.name} not found, skipping"
                    )
                    break

                for decision in rule.status.decisions:
                    await self.replicate_to_target(root, decision, result)

                # Only the first matching subject of a binding is honoured
                break

        log.info(
            f"Reconciliation complete: {result.created} created, "
            f"{result.updated} updated across {len(result.targets)} cluster(s)"
        )
        return result

    async def _handle_disabled(self, root: Policy) -> PropagationResult:
        log = self._log(root)
        log.info("Policy is disabled, doing clean up...")
        result = PropagationResult()

        replicas = await self.store.list(Policy, labels=labels_for_root_policy(root))
        for replica in replicas:
            try:
                await self.store.delete(replica)
            except NotFoundError:
                continue
            result.deleted += 1
            log.debug(f"Deleted replicated policy {replica.key}")

        root.status = PolicyStatus()
        try:
            await self.store.update_status(root)
        except NotFoundError:
            log.info("Root policy is gone, nothing to clear")

        await self.recorder.record(PolicyEvent.disabled(root.namespace, root.name))
        log.info(
            f"Policy was disabled, {result.deleted} replica(s) removed. "
            "Reconciliation complete."
        )
        return result

    async def replicate_to_target(
        self,
        root: Policy,
        decision: PlacementDecision,
        result: Optional[PropagationResult] = None,
    ) -> PropagationResult:
        """
        Ensure one up-to-date replica of ``root`` exists for ``decision``.

        Calling this twice with an unchanged root performs no write the
        second time.
        """
        if result is None:
            result = PropagationResult()
        log = self._log(root)
        name = full_name_for_policy(root)
        namespace = decision.cluster_namespace
        result.targets.add((decision.cluster_namespace, decision.cluster_name))

        try:
            replica = await self.store.get(Policy, namespace, name)
        except NotFoundError:
            log.info(f"Creating replicated policy {namespace}/{name}")
            replica = await self.store.create(build_replicated_policy(root, decision))
            result.created += 1
            await self.recorder.record(
                PolicyEvent.propagated(
                    root.namespace,
                    root.name,
                    decision.cluster_namespace,
                    decision.cluster_name,
                )
            )

        if not compare_spec_and_annotation(root, replica):
            log.info(
                f"Root policy and replicated policy mismatch, updating "
                f"replicated policy {namespace}/{name}"
            )
            annotations = root.metadata.annotations
            replica.metadata.annotations = (
                dict(annotations) if annotations is not None else None
            )
            replica.spec = root.spec.model_copy(deep=True)
            await self.store.update(replica)
            result.updated += 1
            await self.recorder.record(
                PolicyEvent.updated(
                    root.namespace,
                    root.name,
                    decision.cluster_namespace,
                    decision.cluster_name,
                )
            )

        return result

    async def remove_replicas(self, namespace: str, name: str) -> int:
        """
        Delete every replica of the root ``namespace/name``.

        Used when the root itself no longer exists. Returns the number of
        replicas deleted.
        """
        root = Policy(metadata=ObjectMeta(namespace=namespace, name=name))
        deleted = 0
        for replica in await self.store.list(
            Policy, labels=labels_for_root_policy(root)
        ):
            try:
                await self.store.delete(replica)
            except NotFoundError:
                continue
            deleted += 1
        if deleted:
            self._log(root).info(f"Removed {deleted} orphaned replicated policies")
        return deleted
