"""
Policy Events - Propagation notifications and their listeners.

Notifications are informational: they record what the propagator did
(disabled a policy, propagated it to a cluster, updated a replica) for
audit logging and watchers. Correctness never depends on them.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

PROPAGATION_REASON = "PolicyPropagation"


class EventAction(Enum):
    """What the propagator did."""

    DISABLED = "DISABLED"
    PROPAGATED = "PROPAGATED"
    UPDATED = "UPDATED"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class PolicyEvent:
    """A notification about one root policy, optionally for one cluster."""

    action: EventAction
    policy_namespace: str
    policy_name: str
    message: str
    cluster_name: Optional[str] = None
    cluster_namespace: Optional[str] = None
    event_type: str = "Normal"
    reason: str = PROPAGATION_REASON
    timestamp: str = field(default_factory=_now)

    def to_json(self) -> str:
        data = asdict(self)
        data["action"] = self.action.value
        return json.dumps(data, sort_keys=True)

    @classmethod
    def disabled(cls, namespace: str, name: str) -> "PolicyEvent":
        return cls(
            action=EventAction.DISABLED,
            policy_namespace=namespace,
            policy_name=name,
            message=f"Policy {namespace}/{name} was disabled",
        )

    @classmethod
    def propagated(
        cls, namespace: str, name: str, cluster_namespace: str, cluster_name: str
    ) -> "PolicyEvent":
        return cls(
            action=EventAction.PROPAGATED,
            policy_namespace=namespace,
            policy_name=name,
            cluster_name=cluster_name,
            cluster_namespace=cluster_namespace,
            message=(
                f"Policy {namespace}/{name} was propagated to cluster "
                f"{cluster_namespace}/{cluster_name}"
            ),
        )

    @classmethod
    def updated(
        cls, namespace: str, name: str, cluster_namespace: str, cluster_name: str
    ) -> "PolicyEvent":
        return cls(
            action=EventAction.UPDATED,
            policy_namespace=namespace,
            policy_name=name,
            cluster_name=cluster_name,
            cluster_namespace=cluster_namespace,
            message=(
                f"Policy {namespace}/{name} was updated for cluster "
                f"{cluster_namespace}/{cluster_name}"
            ),
        )


class EventStream:
    """Reads one listener's events until the bus sends the stop marker."""

    def __init__(self, queue: asyncio.Queue):
        self._queue = queue

    def __aiter__(self) -> AsyncIterator[PolicyEvent]:
        return self

    async def __anext__(self) -> PolicyEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """
    Fans propagation events out to listeners such as the audit log.

    ``record`` never blocks the reconciliation pass: a listener that falls
    ``queue_size`` events behind misses new events until it catches up.
    Every queue keeps one slot free so ``unsubscribe`` can always enqueue
    the stop marker behind the events already waiting.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._listeners: Dict[str, asyncio.Queue] = {}

    async def record(self, event: PolicyEvent) -> None:
        for listener_id, queue in list(self._listeners.items()):
            if queue.qsize() >= self._queue_size:
                logger.warning(
                    f"Listener {listener_id} is behind, dropped event: {event.message}"
                )
                continue
            queue.put_nowait(event)

    async def subscribe(self) -> Tuple[str, EventStream]:
        """Register a listener. Returns its id and the stream to read."""
        listener_id = uuid.uuid4().hex[:12]
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size + 1)
        self._listeners[listener_id] = queue
        logger.debug(f"Event listener {listener_id} subscribed")
        return listener_id, EventStream(queue)

    async def unsubscribe(self, listener_id: str) -> None:
        """Stop a listener once it has read everything already queued."""
        queue = self._listeners.pop(listener_id, None)
        if queue is None:
            return
        queue.put_nowait(None)
        logger.debug(f"Event listener {listener_id} unsubscribed")
