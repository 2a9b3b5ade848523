"""Tests for remediator.py - drift correction between Apply cycles."""

import asyncio

import pytest
import pytest_asyncio

from backoff import Backoff
from errors import ApplyError, ClusterAPIError
from events import EventType
from fakes import configmap, declared
from kube import WatchEvent
from remediator import (
    RemediationItem,
    RemediationQueue,
    RemediationState,
    Remediator,
    WatchManager,
    Watcher,
)
from resources import (
    MANAGER_ANNOTATION,
    MUTATION_ANNOTATION,
    DeclaredSet,
    LiveResource,
    Management,
    ResourceID,
)

CM_GVK = ResourceID.from_object(configmap("x")).gvk


async def settle(rounds=50):
    """Let background tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def rid_of(payload):
    return ResourceID.from_object(payload)


def item_for(cluster, rid, event_type="MODIFIED"):
    return RemediationItem(rid, event_type, cluster.live(rid))


@pytest.fixture
def watch_manager(cluster, fast_backoff):
    return WatchManager(cluster, fast_backoff, sleep=None)


@pytest_asyncio.fixture
async def synced(cluster, cache, make_applier, root_scope):
    """cm1 applied by the root scope and installed in the declared cache."""
    applier = make_applier(root_scope)
    declared_set = DeclaredSet("rev1", [declared(configmap("cm1"))])
    await applier.apply(declared_set)
    cache.swap(declared_set)
    return applier


@pytest.fixture
def remediator(cluster, registry, cache, watch_manager, root_scope, mock_event_bus, synced):
    return Remediator(
        root_scope,
        cluster,
        registry,
        cache,
        watch_manager,
        synced.writer,
        event_bus=mock_event_bus,
        workers=2,
    )


CM1 = rid_of(configmap("cm1"))


# ==================== Remediate ====================


class TestRemediate:
    """Tests for Remediator.remediate on single events."""

    @pytest.mark.asyncio
    async def test_reverts_edited_field(self, cluster, remediator, mock_event_bus):
        cluster.edit(CM1, lambda obj: obj["data"].update({"key": "tampered"}))

        state = await remediator.remediate(item_for(cluster, CM1))

        assert state == RemediationState.WATCHING
        assert cluster.live(CM1)["data"] == {"key": "value"}
        assert remediator.corrections == 1
        event = mock_event_bus.publish.await_args.args[0]
        assert event.event_type == EventType.DRIFT_CORRECTED

    @pytest.mark.asyncio
    async def test_undeclared_fields_are_not_drift(self, cluster, remediator):
        cluster.edit(CM1, lambda obj: obj["data"].update({"extra": "ok"}))
        cluster.ops.clear()

        await remediator.remediate(item_for(cluster, CM1))

        assert cluster.ops == []
        assert cluster.live(CM1)["data"] == {"key": "value", "extra": "ok"}
        assert remediator.corrections == 0

    @pytest.mark.asyncio
    async def test_recreates_deleted_object(self, cluster, remediator):
        last_seen = cluster.live(CM1)
        cluster.remove(CM1)

        await remediator.remediate(RemediationItem(CM1, "DELETED", last_seen))

        live = cluster.live(CM1)
        assert live is not None
        assert LiveResource(live).manager == ":root_root-sync"

    @pytest.mark.asyncio
    async def test_restores_stripped_stamp(self, cluster, remediator):
        cluster.edit(CM1, lambda obj: obj["metadata"].pop("annotations"))

        await remediator.remediate(item_for(cluster, CM1))

        assert LiveResource(cluster.live(CM1)).manager == ":root_root-sync"

    @pytest.mark.asyncio
    async def test_reports_conflict_once(
        self, cluster, registry, remediator, root_scope, mock_event_bus
    ):
        cluster.edit(
            CM1,
            lambda obj: obj["metadata"]["annotations"].update(
                {MANAGER_ANNOTATION: "team-a_repo-sync"}
            ),
        )
        mock_event_bus.publish.reset_mock()
        cluster.ops.clear()

        first = await remediator.remediate(item_for(cluster, CM1))
        second = await remediator.remediate(item_for(cluster, CM1))

        assert first == second == RemediationState.CONFLICT_REPORTED
        assert registry.has_conflict(root_scope, CM1)
        assert [c.resource_id for c in remediator.conflicts()] == [CM1]
        assert cluster.ops == []
        assert mock_event_bus.publish.await_count == 1
        assert mock_event_bus.publish.await_args.args[0].event_type == EventType.CONFLICT

    @pytest.mark.asyncio
    async def test_conflict_clears_when_stamp_returns(
        self, cluster, registry, remediator, root_scope
    ):
        def set_manager(manager):
            return lambda obj: obj["metadata"]["annotations"].update(
                {MANAGER_ANNOTATION: manager}
            )

        cluster.edit(CM1, set_manager("team-a_repo-sync"))
        await remediator.remediate(item_for(cluster, CM1))
        cluster.edit(CM1, set_manager(":root_root-sync"))

        state = await remediator.remediate(item_for(cluster, CM1))

        assert state == RemediationState.WATCHING
        assert not registry.has_conflict(root_scope, CM1)

    @pytest.mark.asyncio
    async def test_ignore_mutation_left_alone(self, cluster, cache, make_applier, remediator):
        payload = configmap("sticky", annotations={MUTATION_ANNOTATION: "ignore"})
        declared_set = DeclaredSet("rev2", [declared(configmap("cm1")), declared(payload)])
        await make_applier(remediator.scope).apply(declared_set)
        cache.swap(declared_set)
        cluster.edit(rid_of(payload), lambda obj: obj["data"].update({"key": "edited"}))
        cluster.ops.clear()

        await remediator.remediate(item_for(cluster, rid_of(payload)))

        assert cluster.ops == []
        assert cluster.live(rid_of(payload))["data"] == {"key": "edited"}

    @pytest.mark.asyncio
    async def test_write_failure_recorded(self, cluster, remediator):
        cluster.edit(CM1, lambda obj: obj["data"].update({"key": "tampered"}))
        cluster.fail("update", ClusterAPIError(422, "Invalid"))

        state = await remediator.remediate(item_for(cluster, CM1))

        assert state == RemediationState.WATCHING
        assert len(remediator.errors()) == 1
        assert isinstance(remediator.errors()[0], ApplyError)

        await remediator.remediate(item_for(cluster, CM1))
        assert remediator.errors() == []

    @pytest.mark.asyncio
    async def test_withdrawn_object_not_recreated(self, cluster, cache, remediator):
        last_seen = cluster.live(CM1)
        cache.withdraw([CM1])
        cluster.remove(CM1)

        await remediator.remediate(RemediationItem(CM1, "DELETED", last_seen))

        assert cluster.live(CM1) is None

    @pytest.mark.asyncio
    async def test_withdrawn_object_error_cleared(self, cluster, cache, remediator):
        cluster.edit(CM1, lambda obj: obj["data"].update({"key": "tampered"}))
        cluster.fail("update", ClusterAPIError(422, "Invalid"))
        await remediator.remediate(item_for(cluster, CM1))
        assert len(remediator.errors()) == 1

        cache.withdraw([CM1])
        await remediator.remediate(item_for(cluster, CM1))

        assert remediator.errors() == []

    @pytest.mark.asyncio
    async def test_ownership_fight_reported(
        self, cluster, registry, remediator, root_scope, mock_event_bus
    ):
        for owner in ["other_x", ":root_root-sync"] * 2:
            registry.observe_owner(CM1, owner)
        cluster.edit(CM1, lambda obj: obj["data"].update({"key": "drifted"}))
        mock_event_bus.publish.reset_mock()
        cluster.ops.clear()

        state = await remediator.remediate(item_for(cluster, CM1))

        assert state == RemediationState.CONFLICT_REPORTED
        [conflict] = registry.conflicts(root_scope)
        assert conflict.current_owner == "other_x"
        assert conflict.claimant == ":root_root-sync"
        assert cluster.ops == []
        assert mock_event_bus.publish.await_args.args[0].event_type == EventType.CONFLICT

    @pytest.mark.asyncio
    async def test_reclaimed_object_remediated_again(
        self, cluster, registry, remediator, root_scope, synced
    ):
        for owner in ["other_x", ":root_root-sync"] * 2:
            registry.observe_owner(CM1, owner)
        await remediator.remediate(item_for(cluster, CM1))

        await synced.apply(DeclaredSet("rev1", [declared(configmap("cm1"))]))
        cluster.edit(CM1, lambda obj: obj["data"].update({"key": "drifted"}))
        state = await remediator.remediate(item_for(cluster, CM1))

        assert state == RemediationState.WATCHING
        assert registry.conflicts(root_scope) == []
        assert cluster.live(CM1)["data"] == {"key": "value"}


# ==================== Event filtering ====================


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_only_declared_enabled_objects_queued(self, cache, remediator):
        cache.swap(
            DeclaredSet(
                "rev2",
                [
                    declared(configmap("cm1")),
                    declared(configmap("off"), management=Management.DISABLED),
                ],
            )
        )
        for name in ("cm1", "off", "stranger"):
            await remediator.handle_event(WatchEvent("MODIFIED", configmap(name)))

        assert len(remediator.queue) == 1

    @pytest.mark.asyncio
    async def test_namespace_scope_filters_other_namespaces(
        self, cluster, registry, cache, watch_manager, team_scope, synced
    ):
        cache.swap(
            DeclaredSet(
                "rev2",
                [declared(configmap("cm1")), declared(configmap("cm1", namespace="team-b"))],
            )
        )
        remediator = Remediator(
            team_scope, cluster, registry, cache, watch_manager, synced.writer
        )

        await remediator.handle_event(WatchEvent("MODIFIED", configmap("cm1", namespace="team-b")))
        assert len(remediator.queue) == 0

        await remediator.handle_event(WatchEvent("MODIFIED", configmap("cm1")))
        assert len(remediator.queue) == 1


# ==================== Queue ====================


class TestRemediationQueue:
    def _item(self, name, generation):
        obj = configmap(name)
        obj["metadata"]["generation"] = generation
        return RemediationItem(rid_of(obj), "MODIFIED", obj)

    @pytest.mark.asyncio
    async def test_dedupes_by_identity_keeping_newest(self):
        queue = RemediationQueue()
        queue.add(self._item("a", 2))
        queue.add(self._item("a", 1))
        queue.add(self._item("b", 1))

        assert len(queue) == 2
        first = await queue.get()
        assert (first.resource_id.name, first.generation) == ("a", 2)

    @pytest.mark.asyncio
    async def test_key_in_progress_is_requeued_after_done(self):
        queue = RemediationQueue()
        queue.add(self._item("a", 1))
        item = await queue.get()

        queue.add(self._item("a", 2))
        assert len(queue) == 0

        queue.done(item.resource_id)
        again = await queue.get()
        assert again.generation == 2


# ==================== Watches ====================


class TestWatcher:
    @pytest.mark.asyncio
    async def test_lists_then_streams(self, cluster, fast_backoff):
        cluster.seed(configmap("cm1"))
        seen = []

        async def handler(event):
            seen.append((event.type, event.object["metadata"]["name"]))

        watcher = Watcher(cluster, CM_GVK, handler, fast_backoff)
        watcher.start()
        await settle()
        cluster.seed(configmap("cm2"))
        await settle()
        await watcher.stop()

        assert seen == [("ADDED", "cm1"), ("ADDED", "cm2")]
        assert cluster.watch_count == 0

    @pytest.mark.asyncio
    async def test_expired_watch_relists_and_reports_vanished(self, cluster, fast_backoff):
        cluster.seed(configmap("cm1"))
        seen = []

        async def handler(event):
            seen.append((event.type, event.object["metadata"]["name"]))

        watcher = Watcher(cluster, CM_GVK, handler, fast_backoff)
        watcher.start()
        await settle()
        # Vanishes without a watch event, as if missed while disconnected.
        del cluster.objects[CM1.key]
        cluster.expire_watches()
        await settle()
        await watcher.stop()

        assert watcher.relists == 2
        assert seen == [("ADDED", "cm1"), ("DELETED", "cm1")]

    @pytest.mark.asyncio
    async def test_failed_watch_backs_off_and_reconnects(self, cluster):
        cluster.seed(configmap("cm1"))
        cluster.fail("watch", ClusterAPIError(500, "InternalError"))
        delays = []
        seen = []

        async def sleep(delay):
            delays.append(delay)

        async def handler(event):
            seen.append((event.type, event.object["metadata"]["name"]))

        backoff = Backoff(base_delay=1.0, max_delay=30.0, jitter_factor=0.0, max_attempts=3)
        watcher = Watcher(cluster, CM_GVK, handler, backoff, sleep=sleep)
        watcher.start()
        await settle()
        cluster.seed(configmap("cm2"))
        await settle()
        await watcher.stop()

        assert delays == [1.0]
        assert watcher.relists == 1
        assert seen == [("ADDED", "cm1"), ("ADDED", "cm2")]

    @pytest.mark.asyncio
    async def test_broken_stream_resumes_without_losing_events(self, cluster):
        cluster.seed(configmap("cm1"))
        delays = []
        seen = []

        async def sleep(delay):
            delays.append(delay)
            # Changes while disconnected must arrive once the watch resumes.
            cluster.seed(configmap("cm2"))

        async def handler(event):
            seen.append((event.type, event.object["metadata"]["name"]))

        backoff = Backoff(base_delay=1.0, max_delay=30.0, jitter_factor=0.0, max_attempts=3)
        watcher = Watcher(cluster, CM_GVK, handler, backoff, sleep=sleep)
        watcher.start()
        await settle()
        cluster.break_watches()
        await settle()
        await watcher.stop()

        assert delays == [1.0]
        assert watcher.relists == 1
        assert seen == [("ADDED", "cm1"), ("ADDED", "cm2")]
        assert cluster.watch_count == 0


class TestWatchManager:
    @pytest.mark.asyncio
    async def test_one_watcher_per_kind_refcounted(self, cluster, watch_manager):
        async def handler(event):
            return None

        await watch_manager.update_watches("a", [CM_GVK], handler)
        await watch_manager.update_watches("b", [CM_GVK], handler)
        await settle()

        assert watch_manager.refcount(CM_GVK) == 2
        assert watch_manager.watched() == [CM_GVK]
        assert cluster.watch_count == 1

        await watch_manager.update_watches("a", [], handler)
        assert watch_manager.watcher(CM_GVK).running

        await watch_manager.update_watches("b", [], handler)
        await settle()
        assert watch_manager.watched() == []
        assert cluster.watch_count == 0

    @pytest.mark.asyncio
    async def test_events_fan_out_to_every_scope(self, cluster, watch_manager):
        seen = {"a": [], "b": []}

        def handler_for(name):
            async def handler(event):
                seen[name].append(event.type)

            return handler

        await watch_manager.update_watches("a", [CM_GVK], handler_for("a"))
        await watch_manager.update_watches("b", [CM_GVK], handler_for("b"))
        await settle()
        cluster.seed(configmap("cm1"))
        await settle()
        await watch_manager.stop()

        assert seen == {"a": ["ADDED"], "b": ["ADDED"]}


class TestRemediatorLoop:
    @pytest.mark.asyncio
    async def test_drift_corrected_from_watch(self, cluster, remediator):
        await remediator.start()
        await remediator.update_watches([CM_GVK])
        await settle()

        cluster.edit(CM1, lambda obj: obj["data"].update({"key": "tampered"}))
        await settle(200)

        assert cluster.live(CM1)["data"] == {"key": "value"}
        assert remediator.corrections == 1

        await remediator.stop()
        assert cluster.watch_count == 0
