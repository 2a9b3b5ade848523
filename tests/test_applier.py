"""Tests for applier.py - Apply cycles against an in-memory cluster."""

import pytest

from applier import Operation
from errors import (
    ApplyError,
    ClusterAPIError,
    DependencyError,
    GraphCycleError,
    ManagementConflictError,
    PruneBlockedError,
    ScopeError,
    UnknownKindError,
)
from events import EventType
from fakes import configmap, declared, namespace
from resources import (
    DELETION_ANNOTATION,
    DEPENDS_ON_ANNOTATION,
    MANAGER_ANNOTATION,
    OWNING_INVENTORY_ANNOTATION,
    DeclaredSet,
    Lifecycle,
    LiveResource,
    Management,
    ResourceID,
    parse_depends_on,
)

CM1_REF = "/namespaces/team-a/ConfigMap/cm1"


def rid_of(payload):
    return ResourceID.from_object(payload)


def object_ops(cluster, operation=None):
    """Operations on everything but the inventory object."""
    return [
        (op, rid)
        for op, rid in cluster.ops
        if "ResourceGroup" not in rid and (operation is None or op == operation)
    ]


def dependent(name, *refs, **kwargs):
    """A ConfigMap that declares depends-on both as annotation and directive."""
    value = ",".join(refs)
    return declared(
        configmap(name, annotations={DEPENDS_ON_ANNOTATION: value}),
        depends_on=parse_depends_on(value),
        **kwargs,
    )


def codes(result):
    return sorted(e.code for e in result.errors)


# ==================== Create / update ====================


class TestApply:
    """Creating and updating declared objects."""

    @pytest.mark.asyncio
    async def test_creates_in_dependency_order(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        declared_set = DeclaredSet(
            "rev1",
            [dependent("cm2", CM1_REF), declared(configmap("cm1")), declared(namespace("team-a"))],
        )

        result = await applier.apply(declared_set)

        assert result.success
        assert object_ops(cluster) == [
            ("create", "core/Namespace/team-a"),
            ("create", "core/ConfigMap/team-a/cm1"),
            ("create", "core/ConfigMap/team-a/cm2"),
        ]
        assert result.stats.total(Operation.CREATED) == 3
        assert {str(r) for r in result.inventory_ids} == {
            "core/Namespace/team-a",
            "core/ConfigMap/team-a/cm1",
            "core/ConfigMap/team-a/cm2",
        }

    @pytest.mark.asyncio
    async def test_stamps_created_objects(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        payload = configmap("cm1")
        await applier.apply(DeclaredSet("rev1", [declared(payload)]))

        live = LiveResource(cluster.live(rid_of(payload)))
        assert live.manager == ":root_root-sync"
        assert live.annotations[OWNING_INVENTORY_ANNOTATION] == (
            "config-management-system_root-sync"
        )

    @pytest.mark.asyncio
    async def test_second_apply_is_a_no_op(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        declared_set = DeclaredSet(
            "rev1",
            [declared(namespace("team-a")), declared(configmap("cm1")), dependent("cm2", CM1_REF)],
        )
        await applier.apply(declared_set)
        writes = len(cluster.ops)

        result = await applier.apply(declared_set)

        assert result.success
        assert result.stats.empty()
        assert len(cluster.ops) == writes

    @pytest.mark.asyncio
    async def test_update_keeps_foreign_fields_and_clears_dropped_ones(
        self, cluster, make_applier, root_scope
    ):
        applier = make_applier(root_scope)
        before = configmap("cm1", data={"a": "1", "b": "2"})
        await applier.apply(DeclaredSet("rev1", [declared(before)]))
        cluster.edit(rid_of(before), lambda obj: obj["data"].update({"injected": "x"}))

        after = configmap("cm1", data={"a": "changed"})
        result = await applier.apply(DeclaredSet("rev2", [declared(after)]))

        assert result.stats.total(Operation.UPDATED) == 1
        assert cluster.live(rid_of(after))["data"] == {"a": "changed", "injected": "x"}

    @pytest.mark.asyncio
    async def test_events_published(self, make_applier, root_scope, mock_event_bus):
        applier = make_applier(root_scope, event_bus=mock_event_bus)
        await applier.apply(DeclaredSet("rev1", [declared(configmap("cm1"))]))

        event = mock_event_bus.publish.await_args.args[0]
        assert event.event_type == EventType.APPLIED
        assert event.resource == "core/ConfigMap/team-a/cm1"
        assert event.message == "created"


# ==================== Failure isolation ====================


class TestFailures:
    """Per-object failures do not abort the cycle."""

    @pytest.mark.asyncio
    async def test_failed_object_skips_its_dependents_only(
        self, cluster, make_applier, root_scope
    ):
        applier = make_applier(root_scope)
        cluster.fail(
            "create", ClusterAPIError(422, "Invalid"), resource="core/ConfigMap/team-a/cm1"
        )
        declared_set = DeclaredSet(
            "rev1",
            [declared(configmap("cm1")), dependent("cm2", CM1_REF), declared(configmap("cm3"))],
        )

        result = await applier.apply(declared_set)

        assert object_ops(cluster) == [("create", "core/ConfigMap/team-a/cm3")]
        assert all(isinstance(e, ApplyError) for e in result.errors)
        assert sorted(str(e.resources[0]) for e in result.errors) == [
            "core/ConfigMap/team-a/cm1",
            "core/ConfigMap/team-a/cm2",
        ]
        assert {r.name for r in result.inventory_ids} == {"cm3"}

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        cluster.fail(
            "create",
            ClusterAPIError(503, "ServiceUnavailable"),
            resource="core/ConfigMap/team-a/cm1",
        )

        result = await applier.apply(DeclaredSet("rev1", [declared(configmap("cm1"))]))

        assert result.success
        assert object_ops(cluster) == [("create", "core/ConfigMap/team-a/cm1")]

    @pytest.mark.asyncio
    async def test_cycle_isolated(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        x = dependent("x", "/namespaces/team-a/ConfigMap/y")
        y = dependent("y", "/namespaces/team-a/ConfigMap/x")

        result = await applier.apply(DeclaredSet("rev1", [x, y, declared(configmap("v"))]))

        assert codes(result) == ["1064"]
        assert isinstance(result.errors[0], GraphCycleError)
        assert object_ops(cluster) == [("create", "core/ConfigMap/team-a/v")]

    @pytest.mark.asyncio
    async def test_unknown_kind(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        widget = {
            "apiVersion": "example.com/v1",
            "kind": "Widget",
            "metadata": {"name": "w", "namespace": "team-a"},
        }

        result = await applier.apply(
            DeclaredSet("rev1", [declared(widget), declared(configmap("cm1"))])
        )

        assert codes(result) == ["1021"]
        assert isinstance(result.errors[0], UnknownKindError)
        assert rid_of(widget).gvk not in result.applied_gvks
        assert rid_of(configmap("cm1")).gvk in result.applied_gvks
        assert {r.name for r in result.inventory_ids} == {"cm1"}

    @pytest.mark.asyncio
    async def test_inventory_unavailable_skips_cycle(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        cluster.fail(
            "get",
            ClusterAPIError(403, "Forbidden"),
            resource="kpt.dev/ResourceGroup/config-management-system/root-sync",
        )

        result = await applier.apply(DeclaredSet("rev1", [declared(configmap("cm1"))]))

        assert not result.success
        assert object_ops(cluster) == []

    @pytest.mark.asyncio
    async def test_namespace_scope_cannot_leave_its_namespace(
        self, cluster, make_applier, team_scope
    ):
        applier = make_applier(team_scope)

        result = await applier.apply(
            DeclaredSet("rev1", [declared(configmap("cm1", namespace="team-b"))])
        )

        assert codes(result) == ["1058"]
        assert isinstance(result.errors[0], ScopeError)
        assert object_ops(cluster) == []


# ==================== Pruning ====================


class TestPrune:
    """Deleting objects that left the declared set."""

    @pytest.mark.asyncio
    async def test_prunes_in_reverse_dependency_order(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        ns = declared(namespace("team-a"))
        await applier.apply(
            DeclaredSet("rev1", [ns, declared(configmap("cm1")), dependent("cm2", CM1_REF)])
        )
        cluster.ops.clear()

        result = await applier.apply(DeclaredSet("rev2", [ns]))

        assert result.success
        assert object_ops(cluster) == [
            ("delete", "core/ConfigMap/team-a/cm2"),
            ("delete", "core/ConfigMap/team-a/cm1"),
        ]
        assert result.stats.total(Operation.DELETED) == 2
        assert {str(r) for r in result.inventory_ids} == {"core/Namespace/team-a"}

    @pytest.mark.asyncio
    async def test_prevent_deletion_releases_instead(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        payload = configmap("keep", annotations={DELETION_ANNOTATION: "detach"})
        await applier.apply(DeclaredSet("rev1", [declared(payload)]))

        result = await applier.apply(DeclaredSet("rev2", []))

        live = cluster.live(rid_of(payload))
        assert live is not None
        assert not LiveResource(live).has_stamp
        assert result.stats.total(Operation.UNMANAGED) == 1
        assert result.inventory_ids == frozenset()

    @pytest.mark.asyncio
    async def test_prevent_deletion_lifecycle_releases_instead(
        self, cluster, make_applier, root_scope
    ):
        applier = make_applier(root_scope)
        payload = configmap("keep")
        await applier.apply(
            DeclaredSet("rev1", [declared(payload, lifecycle=Lifecycle.PREVENT_DELETION)])
        )

        result = await applier.apply(DeclaredSet("rev2", []))

        live = cluster.live(rid_of(payload))
        assert live is not None
        assert not LiveResource(live).has_stamp
        assert live["metadata"]["annotations"][DELETION_ANNOTATION] == "detach"
        assert result.stats.total(Operation.UNMANAGED) == 1

    @pytest.mark.asyncio
    async def test_protected_namespace_released(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        await applier.apply(DeclaredSet("rev1", [declared(namespace("default"))]))

        await applier.apply(DeclaredSet("rev2", []))

        live = cluster.live(rid_of(namespace("default")))
        assert live is not None
        assert not LiveResource(live).has_stamp

    @pytest.mark.asyncio
    async def test_object_adopted_elsewhere_not_deleted(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        payload = configmap("cm1")
        await applier.apply(DeclaredSet("rev1", [declared(payload)]))
        cluster.edit(
            rid_of(payload),
            lambda obj: obj["metadata"]["annotations"].update(
                {MANAGER_ANNOTATION: "team-a_repo-sync"}
            ),
        )

        result = await applier.apply(DeclaredSet("rev2", []))

        assert cluster.live(rid_of(payload)) is not None
        assert object_ops(cluster, "delete") == []
        assert result.inventory_ids == frozenset()

    @pytest.mark.asyncio
    async def test_prune_blocked_by_declared_dependent(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        await applier.apply(
            DeclaredSet("rev1", [declared(configmap("cm1")), dependent("cm2", CM1_REF)])
        )

        result = await applier.apply(DeclaredSet("rev2", [dependent("cm2", CM1_REF)]))

        assert codes(result) == ["1065", "2013"]
        assert any(isinstance(e, DependencyError) for e in result.errors)
        assert any(isinstance(e, PruneBlockedError) for e in result.errors)
        assert cluster.live(rid_of(configmap("cm1"))) is not None
        assert {r.name for r in result.inventory_ids} == {"cm1", "cm2"}

    @pytest.mark.asyncio
    async def test_local_config_is_pruned(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        await applier.apply(DeclaredSet("rev1", [declared(configmap("cm1"))]))

        await applier.apply(
            DeclaredSet(
                "rev2", [declared(configmap("cm1"), management=Management.LOCAL_CONFIG)]
            )
        )

        assert object_ops(cluster, "delete") == [("delete", "core/ConfigMap/team-a/cm1")]

    @pytest.mark.asyncio
    async def test_local_config_never_applied(self, cluster, make_applier, root_scope):
        applier = make_applier(root_scope)
        await applier.apply(
            DeclaredSet(
                "rev1", [declared(configmap("cm1"), management=Management.LOCAL_CONFIG)]
            )
        )
        assert object_ops(cluster) == []


# ==================== Disabled management ====================


class TestDisabled:
    @pytest.mark.asyncio
    async def test_disabled_object_released_not_deleted(
        self, cluster, cache, make_applier, root_scope, mock_event_bus
    ):
        applier = make_applier(root_scope, event_bus=mock_event_bus)
        payload = configmap("cm1")
        await applier.apply(DeclaredSet("rev1", [declared(payload)]))
        cache.swap(DeclaredSet("rev1", [declared(payload)]))

        result = await applier.apply(
            DeclaredSet("rev2", [declared(payload, management=Management.DISABLED)])
        )

        live = cluster.live(rid_of(payload))
        assert live is not None
        assert not LiveResource(live).has_stamp
        assert rid_of(payload) not in cache.snapshot()
        assert result.stats.total(Operation.UNMANAGED) == 1
        assert result.inventory_ids == frozenset()
        assert object_ops(cluster, "delete") == []
        published = [c.args[0].event_type for c in mock_event_bus.publish.await_args_list]
        assert EventType.UNMANAGED in published


# ==================== Ownership conflicts ====================


class TestConflicts:
    """Two scopes declaring the same object."""

    @pytest.mark.asyncio
    async def test_second_scope_denied(
        self, cluster, registry, make_applier, root_scope, team_scope
    ):
        root = make_applier(root_scope)
        team = make_applier(team_scope)
        payload = configmap("cm1")
        await root.apply(DeclaredSet("rev1", [declared(payload)]))
        cluster.ops.clear()

        result = await team.apply(
            DeclaredSet("rev1", [declared(configmap("cm1", data={"key": "other"}))])
        )

        assert codes(result) == ["1060"]
        assert isinstance(result.errors[0], ManagementConflictError)
        assert registry.has_conflict(team_scope, rid_of(payload))
        assert object_ops(cluster) == []
        assert cluster.live(rid_of(payload))["data"] == {"key": "value"}
        assert result.inventory_ids == frozenset()

    @pytest.mark.asyncio
    async def test_conflict_clears_once_released(
        self, cluster, registry, make_applier, root_scope, team_scope
    ):
        root = make_applier(root_scope)
        team = make_applier(team_scope)
        payload = configmap("cm1")
        await root.apply(DeclaredSet("rev1", [declared(payload)]))
        await team.apply(DeclaredSet("rev1", [declared(payload)]))

        await root.apply(DeclaredSet("rev2", []))
        result = await team.apply(DeclaredSet("rev1", [declared(payload)]))

        assert result.success
        assert not registry.has_conflict(team_scope, rid_of(payload))
        assert LiveResource(cluster.live(rid_of(payload))).manager == "team-a_repo-sync"

    @pytest.mark.asyncio
    async def test_conflict_dropped_once_undeclared(
        self, cluster, registry, make_applier, root_scope, team_scope
    ):
        root = make_applier(root_scope)
        team = make_applier(team_scope)
        payload = configmap("cm1")
        await root.apply(DeclaredSet("rev1", [declared(payload)]))
        await team.apply(DeclaredSet("rev1", [declared(payload)]))
        assert registry.has_conflict(team_scope, rid_of(payload))

        result = await team.apply(DeclaredSet("rev2", []))

        assert result.success
        assert registry.conflicts(team_scope) == []
        assert LiveResource(cluster.live(rid_of(payload))).manager == ":root_root-sync"
