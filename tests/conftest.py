"""Pytest configuration and fixtures."""

import pytest

from events import EventBus
from models import (
    ObjectMeta,
    PlacementBinding,
    PlacementDecision,
    PlacementRef,
    PlacementRule,
    PlacementRuleStatus,
    Policy,
    PolicySpec,
    Subject,
)
from store import MemoryObjectStore


def make_policy(namespace="ns1", name="pol-a", disabled=False, annotations=None):
    return Policy(
        metadata=ObjectMeta(
            namespace=namespace,
            name=name,
            labels={"app": "demo"},
            annotations=annotations,
        ),
        spec=PolicySpec(
            disabled=disabled,
            remediation_action="inform",
            policy_templates=[{"kind": "ConfigurationPolicy", "name": "cm-check"}],
        ),
    )


def make_binding(name, rule_name, subject_names, namespace="ns1"):
    return PlacementBinding(
        metadata=ObjectMeta(namespace=namespace, name=name),
        placement_ref=PlacementRef(name=rule_name),
        subjects=[
            Subject(api_group=Policy.api_group, kind=Policy.kind, name=subject)
            for subject in subject_names
        ],
    )


def make_rule(name, clusters, namespace="ns1"):
    return PlacementRule(
        metadata=ObjectMeta(namespace=namespace, name=name),
        status=PlacementRuleStatus(
            decisions=[
                PlacementDecision(cluster_name=c, cluster_namespace=c)
                for c in clusters
            ]
        ),
    )


class RecordingStore(MemoryObjectStore):
    """Memory store that logs every mutating call as (op, kind, namespace, name)."""

    def __init__(self):
        super().__init__()
        self.calls = []

    def _log(self, op, obj):
        self.calls.append((op, obj.kind, obj.namespace, obj.name))

    async def create(self, obj):
        created = await super().create(obj)
        self._log("create", obj)
        return created

    async def update(self, obj):
        updated = await super().update(obj)
        self._log("update", obj)
        return updated

    async def delete(self, obj):
        await super().delete(obj)
        self._log("delete", obj)

    async def update_status(self, obj):
        updated = await super().update_status(obj)
        self._log("update_status", obj)
        return updated


@pytest.fixture
def store():
    """Empty in-memory object store that logs its writes."""
    return RecordingStore()


@pytest.fixture
def event_bus():
    return EventBus(queue_size=64)


@pytest.fixture
def root_policy():
    """Root policy ns1/pol-a with annotations."""
    return make_policy(annotations={"policy.open-cluster-management.io/standards": "NIST"})


@pytest.fixture
def decision():
    return PlacementDecision(cluster_name="c1", cluster_namespace="c1")
