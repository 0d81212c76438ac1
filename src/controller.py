"""
Propagator Controller - Work queue driving the policy propagator.

Similar to Kubernetes controllers: changes to policies, placement bindings
and placement rules are mapped to the root policies they affect, queued,
and reconciled by a pool of workers. Failed passes are retried with
exponential backoff; a periodic resync catches anything a trigger missed.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from config import ControllerConfig
from models import (
    PlacementBinding,
    PlacementRule,
    Policy,
    ROOT_POLICY_LABEL,
    StoredObject,
    split_full_name,
)
from propagator import PolicyPropagator, PropagationResult
from store import NotFoundError, ObjectStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class PolicyKey:
    """Identity of a root policy in the work queue."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class Controller:
    """
    Queues root policies and reconciles them with bounded concurrency.

    A key is never processed by two workers at once. A key enqueued while it
    is being processed is run again once the current pass finishes.
    """

    def __init__(
        self,
        store: ObjectStore,
        propagator: PolicyPropagator,
        config: Optional[ControllerConfig] = None,
    ):
        self.store = store
        self.propagator = propagator
        self.config = config or ControllerConfig()
        self.running = False

        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: Set[PolicyKey] = set()
        self._processing: Set[PolicyKey] = set()
        self._dirty: Set[PolicyKey] = set()
        self._retries: Dict[PolicyKey, int] = {}
        self._retry_handles: Dict[PolicyKey, asyncio.TimerHandle] = {}

        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    # ==================== Queue ====================

    def enqueue(self, key: PolicyKey) -> None:
        """Queue a root policy for reconciliation."""
        if key in self._pending:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        self._pending.add(key)
        self._queue.put_nowait(key)

    def queue_length(self) -> int:
        return len(self._pending)

    def backoff_delay(self, retries: int) -> float:
        """Exponential backoff with jitter for the given retry count."""
        delay = min(
            self.config.backoff_base_delay * (2 ** min(retries, 10)),
            self.config.backoff_max_delay,
        )
        jitter = random.uniform(
            -self.config.backoff_jitter_factor, self.config.backoff_jitter_factor
        )
        return delay * (1 + jitter)

    def _schedule_retry(self, key: PolicyKey) -> float:
        retries = self._retries.get(key, 0)
        self._retries[key] = retries + 1
        delay = self.backoff_delay(retries)

        handle = self._retry_handles.pop(key, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._retry_handles[key] = loop.call_later(delay, self._retry, key)
        return delay

    def _retry(self, key: PolicyKey) -> None:
        self._retry_handles.pop(key, None)
        if self.running:
            self.enqueue(key)

    # ==================== Trigger mapping ====================

    def enqueue_for_policy(self, policy: Policy) -> None:
        """Queue the root affected by a change to a root or replicated policy."""
        if not policy.is_replica:
            self.enqueue(PolicyKey(policy.namespace, policy.name))
            return
        try:
            namespace, name = split_full_name(policy.metadata.labels[ROOT_POLICY_LABEL])
        except ValueError as e:
            logger.warning(f"Ignoring replicated policy {policy.key}: {e}")
            return
        self.enqueue(PolicyKey(namespace, name))

    def enqueue_for_binding(self, binding: PlacementBinding) -> None:
        """Queue every policy named as a subject of the binding."""
        for subject in binding.subjects:
            if subject.api_group == Policy.api_group and subject.kind == Policy.kind:
                self.enqueue(PolicyKey(binding.namespace, subject.name))

    async def enqueue_for_rule(self, rule: PlacementRule) -> None:
        """Queue every policy bound to the rule through any binding."""
        bindings = await self.store.list(PlacementBinding, namespace=rule.namespace)
        for binding in bindings:
            if binding.placement_ref.name == rule.name:
                self.enqueue_for_binding(binding)

    async def on_change(self, obj: StoredObject) -> None:
        """Store watcher: map a created, updated or deleted object to roots."""
        if isinstance(obj, Policy):
            self.enqueue_for_policy(obj)
        elif isinstance(obj, PlacementBinding):
            self.enqueue_for_binding(obj)
        elif isinstance(obj, PlacementRule):
            await self.enqueue_for_rule(obj)

    async def resync(self) -> None:
        """Queue every root policy, including roots only known from replicas."""
        policies = await self.store.list(Policy)
        for policy in policies:
            self.enqueue_for_policy(policy)
        logger.debug(f"Resync queued {self.queue_length()} policies")

    # ==================== Reconciliation ====================

    async def reconcile(self, key: PolicyKey) -> Optional[PropagationResult]:
        """Run one pass for ``key``. Store errors propagate to the worker."""
        try:
            policy = await self.store.get(Policy, key.namespace, key.name)
        except NotFoundError:
            logger.info(f"Policy {key} not found, removing its replicated policies")
            await self.propagator.remove_replicas(key.namespace, key.name)
            return None

        if policy.is_replica:
            # Replicas are reconciled through their root
            self.enqueue_for_policy(policy)
            return None

        return await self.propagator.reconcile_root(policy)

    async def process(self, key: PolicyKey) -> bool:
        """Reconcile one dequeued key, scheduling a retry on failure."""
        self._pending.discard(key)
        self._processing.add(key)
        try:
            await self.reconcile(key)
        except Exception as e:
            delay = self._schedule_retry(key)
            logger.error(
                f"Error reconciling policy {key}, retrying in {delay:.1f}s: {e}",
                exc_info=True,
            )
            return False
        else:
            self._retries.pop(key, None)
            return True
        finally:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self.enqueue(key)

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while self.running:
            key = await self._queue.get()
            try:
                await self.process(key)
            finally:
                self._queue.task_done()

    async def _resync_loop(self) -> None:
        while self.running:
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Error during resync: {e}", exc_info=True)
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.config.reconcile_interval
                )
            except asyncio.TimeoutError:
                continue

    async def wait_idle(self) -> None:
        """Wait until every queued key has been processed once."""
        await self._queue.join()

    async def start(self, resync: bool = True) -> None:
        """Start the workers (and the resync loop) and wait for them to stop."""
        logger.info(
            f"Starting Propagator Controller with "
            f"{self.config.max_concurrent_reconciles} worker(s)"
        )
        self.running = True
        self._shutdown_event.clear()

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        ]
        if resync:
            self._tasks.append(asyncio.create_task(self._resync_loop()))

        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self) -> None:
        """Stop workers and cancel pending retries."""
        logger.info("Stopping Propagator Controller")
        self.running = False
        self._shutdown_event.set()

        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()
