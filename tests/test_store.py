"""Unit tests for store.py - Object store interface and in-memory store."""

import asyncio

import pytest

from conftest import make_binding, make_policy, make_rule
from models import PlacementBinding, PlacementRule, Policy, PolicyStatus
from store import (
    ConflictError,
    MemoryObjectStore,
    NotFoundError,
    ObjectStore,
    StoreError,
)


class TestErrors:
    """Tests for the store error taxonomy."""

    def test_not_found_message(self):
        err = NotFoundError("Policy", "ns1", "pol-a")
        assert str(err) == "Policy ns1/pol-a not found"
        assert err.kind == "Policy"
        assert isinstance(err, StoreError)

    def test_conflict_message(self):
        err = ConflictError("Policy", "c1", "ns1.pol-a", "already exists")
        assert str(err) == "Conflict on Policy c1/ns1.pol-a: already exists"
        assert isinstance(err, StoreError)

    def test_cannot_instantiate_abstract(self):
        with pytest.raises(TypeError):
            ObjectStore()


@pytest.mark.asyncio
class TestMemoryObjectStore:
    """Tests for MemoryObjectStore."""

    async def test_create_and_get(self, store):
        created = await store.create(make_policy())
        assert created.metadata.resource_version == "1"

        fetched = await store.get(Policy, "ns1", "pol-a")
        assert fetched == created

    async def test_get_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.get(Policy, "ns1", "missing")

    async def test_kinds_are_separate(self, store):
        await store.create(make_policy(name="shared"))
        with pytest.raises(NotFoundError):
            await store.get(PlacementRule, "ns1", "shared")

    async def test_create_existing_conflicts(self, store):
        await store.create(make_policy())
        with pytest.raises(ConflictError):
            await store.create(make_policy())

    async def test_returned_objects_are_copies(self, store):
        created = await store.create(make_policy())
        created.spec.remediation_action = "enforce"

        fetched = await store.get(Policy, "ns1", "pol-a")
        assert fetched.spec.remediation_action == "inform"

    async def test_list_filters(self, store):
        await store.create(make_policy(namespace="ns1", name="a"))
        await store.create(make_policy(namespace="ns2", name="b"))
        labelled = make_policy(namespace="ns2", name="c")
        labelled.metadata.labels["tier"] = "gold"
        await store.create(labelled)
        await store.create(make_binding("binding", "rule", ["a"], namespace="ns2"))

        assert len(await store.list(Policy)) == 3
        assert [p.name for p in await store.list(Policy, namespace="ns2")] == ["b", "c"]
        assert [p.name for p in await store.list(Policy, labels={"tier": "gold"})] == [
            "c"
        ]
        assert await store.list(Policy, labels={"tier": "silver"}) == []
        assert len(await store.list(PlacementBinding)) == 1

    async def test_update_bumps_version_and_keeps_status(self, store):
        created = await store.create(make_policy())
        created.status = PolicyStatus(compliant="Compliant")
        await store.update_status(created)

        fetched = await store.get(Policy, "ns1", "pol-a")
        fetched.spec.remediation_action = "enforce"
        fetched.status = PolicyStatus()
        updated = await store.update(fetched)

        assert int(updated.metadata.resource_version) > int(
            fetched.metadata.resource_version
        )
        assert updated.spec.remediation_action == "enforce"
        assert updated.status.compliant == "Compliant"

    async def test_update_stale_version_conflicts(self, store):
        created = await store.create(make_policy())
        first = created.model_copy(deep=True)
        first.spec.remediation_action = "enforce"
        await store.update(first)

        with pytest.raises(ConflictError):
            await store.update(created)

    async def test_update_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.update(make_policy())

    async def test_update_status_only_touches_status(self, store):
        created = await store.create(make_policy())
        created.spec.remediation_action = "enforce"
        created.status = PolicyStatus(compliant="NonCompliant")

        result = await store.update_status(created)

        assert result.spec.remediation_action == "inform"
        assert result.status.compliant == "NonCompliant"

    async def test_update_status_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.update_status(make_policy())

    async def test_delete(self, store):
        created = await store.create(make_rule("rule-1", ["c1"]))
        await store.delete(created)

        with pytest.raises(NotFoundError):
            await store.get(PlacementRule, "ns1", "rule-1")
        with pytest.raises(NotFoundError):
            await store.delete(created)

    async def test_close_is_noop(self):
        await MemoryObjectStore().close()

    async def test_keeps_no_write_history(self):
        store = MemoryObjectStore()
        policy = await store.create(make_policy())
        for _ in range(200):
            policy = await store.update(policy)

        assert not hasattr(store, "calls")
        assert len(store._objects) == 1
        assert policy.metadata.resource_version == "201"


@pytest.mark.asyncio
class TestWatchers:
    """Tests for change notification to watchers."""

    async def test_writes_are_reported(self, store):
        seen = []

        async def watcher(obj):
            seen.append((type(obj).__name__, obj.key, obj.metadata.resource_version))

        store.add_watcher(watcher)
        created = await store.create(make_policy())
        updated = await store.update(created)
        await store.update_status(updated)
        await store.delete(updated)

        assert seen == [
            ("Policy", "ns1/pol-a", "1"),
            ("Policy", "ns1/pol-a", "2"),
            ("Policy", "ns1/pol-a", "3"),
        ]

    async def test_failed_write_is_not_reported(self, store):
        seen = []

        async def watcher(obj):
            seen.append(obj.key)

        store.add_watcher(watcher)
        with pytest.raises(NotFoundError):
            await store.delete(make_policy())

        assert seen == []

    async def test_watcher_can_read_the_store(self, store):
        listed = []

        async def watcher(obj):
            listed.extend(await store.list(PlacementBinding, namespace=obj.namespace))

        store.add_watcher(watcher)
        await asyncio.wait_for(
            store.create(make_binding("binding-1", "rule-1", ["pol-a"])), timeout=1
        )

        assert [b.name for b in listed] == ["binding-1"]

    async def test_watcher_error_does_not_fail_the_write(self, store, caplog):
        async def watcher(obj):
            raise RuntimeError("boom")

        store.add_watcher(watcher)
        created = await store.create(make_policy())

        assert created.metadata.resource_version == "1"
        assert await store.get(Policy, "ns1", "pol-a")
        assert "Watcher failed for Policy ns1/pol-a: boom" in caplog.text

    async def test_watcher_gets_a_copy(self, store):
        async def watcher(obj):
            obj.metadata.labels["tampered"] = "yes"

        store.add_watcher(watcher)
        created = await store.create(make_policy())

        assert "tampered" not in created.metadata.labels
        stored = await store.get(Policy, "ns1", "pol-a")
        assert "tampered" not in stored.metadata.labels
