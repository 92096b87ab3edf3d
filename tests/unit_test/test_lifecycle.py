"""
Unit tests for the LifecycleController state machine.

Each test drives reconcile passes against a SQLite store and the in-memory
backend fakes, then inspects the persisted status and the backend state.

Test Coverage:
=============

1. Creation and promotion: finalizer, minting, validation polling
2. Blue/green refresh and standby retention
3. Failure handling: validation errors, transient errors, attempt budget
4. Concurrency: conflicting status writes, deletion during materialize
5. Deletion: ordered teardown and finalizer release
"""

from unittest.mock import patch

import pytest
from sqlmodel import Session

from fake_backends import ES_HOST, make_definition
from xjoin.controller.factory import build_controller
from xjoin.controller.lifecycle import ReconcileResult
from xjoin.db.models import FINALIZER, ConditionType, IndexPipeline, VersionState
from xjoin.exceptions import ConflictError


def status_of(store, name="p1"):
    return store.get(name).observed_status()


def kube_names(backends, plural):
    return sorted(name for obj_plural, name in backends.kube if obj_plural == plural)


class TestCreation:
    """A new pipeline reaches Active once every member is healthy."""

    def test_first_pass_promotes(self, controller, store):
        store.apply(make_definition("p1"))

        result = controller.reconcile("p1")

        record = store.get("p1")
        status = record.observed_status()
        assert record.finalizers == [FINALIZER]
        assert status.active_version == "1000"
        assert status.generations["1000"].state == VersionState.ACTIVE
        assert status.condition(ConditionType.READY).status is True
        assert status.condition(ConditionType.SYNCED).status is True
        assert result == ReconcileResult(requeue=True, requeue_after=300.0)

    def test_members_recorded_in_creation_order(self, controller, store):
        store.apply(make_definition("p1"))
        controller.reconcile("p1")

        members = status_of(store).generations["1000"].members
        assert [m.name for m in members] == [
            "xjoinindexpipeline.p1.1000",
            "xjoinindexpipeline.p1.1000",
            "xjoinindexpipeline.p1.1000",
            "xjoinindexpipeline.p1.1000",
            "xjoinindexpipeline.p1.1000",
            "xjoin-core-xjoinindexpipeline-p1-1000",
            "xjoinindexpipeline-p1-1000",
        ]

    def test_waits_for_health(self, controller, store, backends):
        backends.auto_ready = False
        store.apply(make_definition("p1"))

        result = controller.reconcile("p1")

        status = status_of(store)
        assert result == ReconcileResult(requeue=True, requeue_after=10.0)
        assert status.active_version is None
        assert status.generations["1000"].state == VersionState.NEW
        assert status.condition(ConditionType.READY).reason == "Validating"

        backends.set_ready(True)
        controller.reconcile("p1")
        assert status_of(store).active_version == "1000"

    def test_never_active_while_a_member_is_unhealthy(self, controller, store, backends):
        backends.auto_ready = False
        store.apply(make_definition("p1"))
        controller.reconcile("p1")
        backends.set_ready(True)
        backends.set_ready(False, name="xjoin-core-xjoinindexpipeline-p1-1000")

        for _ in range(3):
            controller.reconcile("p1")

        status = status_of(store)
        assert status.active_version is None
        assert status.generations["1000"].state == VersionState.NEW
        assert "xjoin-core-xjoinindexpipeline-p1-1000" in status.condition(ConditionType.READY).message

    def test_settled_pass_writes_nothing(self, controller, store, backends):
        store.apply(make_definition("p1"))
        controller.reconcile("p1")
        version = store.get("p1").resource_version
        backends.reset_calls()

        controller.reconcile("p1")

        assert store.get("p1").resource_version == version
        assert backends.writes() == []

    def test_drift_is_corrected(self, controller, store, backends):
        store.apply(make_definition("p1"))
        controller.reconcile("p1")
        del backends.kube[("kafkatopics", "xjoinindexpipeline.p1.1000")]

        controller.reconcile("p1")

        assert ("kafkatopics", "xjoinindexpipeline.p1.1000") in backends.kube

    def test_missing_pipeline(self, controller):
        assert controller.reconcile("missing") == ReconcileResult()

    def test_invalid_definition(self, controller, store, engine):
        with Session(engine) as session:
            session.add(IndexPipeline(name="p1", spec={"avro_schema": None}))
            session.commit()

        assert controller.reconcile("p1") == ReconcileResult()
        assert status_of(store).condition(ConditionType.SYNCED).reason == "InvalidDefinition"


class TestBlueGreen:
    """Definition changes mint a new generation and swap it in."""

    def test_previous_active_becomes_standby(self, controller, store, backends):
        store.apply(make_definition("p1"))
        controller.reconcile("p1")
        store.apply(make_definition("p1", pause=True))

        controller.reconcile("p1")

        status = status_of(store)
        assert status.active_version == "1001"
        assert status.standby_versions == ["1000"]
        assert status.generations["1000"].state == VersionState.STANDBY
        assert kube_names(backends, "kafkatopics") == ["xjoinindexpipeline.p1.1000", "xjoinindexpipeline.p1.1001"]

    def test_standby_beyond_limit_is_removed(self, controller, store, backends):
        store.apply(make_definition("p1"))
        controller.reconcile("p1")
        store.apply(make_definition("p1", pause=True))
        controller.reconcile("p1")
        store.apply(make_definition("p1", pause=False, custom_subgraph_images=[{"name": "x1", "image": "img"}]))

        controller.reconcile("p1")

        status = status_of(store)
        assert status.active_version == "1002"
        assert status.standby_versions == ["1001"]
        assert status.generations["1000"].state == VersionState.REMOVED
        assert kube_names(backends, "kafkatopics") == ["xjoinindexpipeline.p1.1001", "xjoinindexpipeline.p1.1002"]
        assert "xjoinindexpipeline.p1.1000" not in backends.artifacts

    def test_standby_ttl(self, settings, store, backends, minter):
        controller = build_controller(
            settings.model_copy(update={"standby_ttl_seconds": 0.0}),
            store=store,
            transport=backends.transport,
            minter=minter,
        )
        store.apply(make_definition("p1"))
        controller.reconcile("p1")
        store.apply(make_definition("p1", pause=True))

        controller.reconcile("p1")

        status = status_of(store)
        assert status.standby_versions == []
        assert status.generations["1000"].state == VersionState.REMOVED
        assert kube_names(backends, "kafkatopics") == ["xjoinindexpipeline.p1.1001"]

    def test_stale_new_generation_is_retired(self, controller, store, backends):
        backends.auto_ready = False
        store.apply(make_definition("p1"))
        controller.reconcile("p1")
        store.apply(make_definition("p1", pause=True))

        controller.reconcile("p1")

        status = status_of(store)
        assert status.generations["1000"].state == VersionState.REMOVED
        assert status.generations["1001"].state == VersionState.NEW
        assert kube_names(backends, "kafkatopics") == ["xjoinindexpipeline.p1.1001"]


class TestFailures:
    def test_validation_error_flags_generation(self, controller, store, backends):
        store.apply(make_definition("p1"))
        backends.fail("PUT", "/xjoinindexpipeline.p1.1000", 400, host=ES_HOST)

        controller.reconcile("p1")

        status = status_of(store)
        generation = status.generations["1000"]
        assert generation.failed is True
        assert generation.state == VersionState.NEW
        assert status.condition(ConditionType.SYNCED).reason == "ValidationError"

        backends.reset_calls()
        controller.reconcile("p1")
        assert backends.writes() == []
        assert list(status_of(store).generations) == ["1000"]

    def test_new_definition_replaces_failed_generation(self, controller, store, backends):
        store.apply(make_definition("p1"))
        backends.fail("PUT", "/xjoinindexpipeline.p1.1000", 400, host=ES_HOST)
        controller.reconcile("p1")
        store.apply(make_definition("p1", pause=True))

        controller.reconcile("p1")

        status = status_of(store)
        assert status.generations["1000"].state == VersionState.REMOVED
        assert status.active_version == "1001"

    def test_transient_error_backs_off(self, controller, store, backends):
        store.apply(make_definition("p1"))
        backends.fail("GET", "/xjoinindexpipeline.p1.1000", 503, host=ES_HOST)

        result = controller.reconcile("p1")

        status = status_of(store)
        assert result == ReconcileResult(requeue=True, requeue_after=4.0)
        assert status.generations["1000"].attempts == 1
        assert status.condition(ConditionType.SYNCED).reason == "TransientBackendError"

        controller.reconcile("p1")
        status = status_of(store)
        assert status.active_version == "1000"
        assert status.generations["1000"].attempts == 0

    def test_attempt_budget_reports_consistency_violation(self, settings, store, backends, minter):
        controller = build_controller(
            settings.model_copy(update={"max_materialize_attempts": 1}),
            store=store,
            transport=backends.transport,
            minter=minter,
        )
        store.apply(make_definition("p1"))
        backends.fail("POST", "/kafkaconnectors", 503, times=2)

        controller.reconcile("p1")
        controller.reconcile("p1")

        status = status_of(store)
        assert status.condition(ConditionType.SYNCED).reason == "ConsistencyViolation"
        assert status.generations["1000"].state == VersionState.NEW
        assert status.active_version is None

    def test_backoff(self, controller):
        assert controller.backoff(0) == 2.0
        assert controller.backoff(1) == 4.0
        assert controller.backoff(20) == 300.0


class TestConcurrency:
    """The conditional status write serializes concurrent passes."""

    def test_conflict_rereads_and_mints_once(self, controller, store):
        store.apply(make_definition("p1"))
        original = store.update_status
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ConflictError("stale")
            return original(*args, **kwargs)

        with patch.object(store, "update_status", side_effect=flaky):
            controller.reconcile("p1")

        status = status_of(store)
        assert list(status.generations) == ["1001"]
        assert status.active_version == "1001"

    def test_persistent_conflict_requeues(self, controller, store):
        store.apply(make_definition("p1"))
        with patch.object(store, "update_status", side_effect=ConflictError("stale")):
            result = controller.reconcile("p1")
        assert result == ReconcileResult(requeue=True, requeue_after=0)

    def test_deletion_during_materialize_switches_to_teardown(self, controller, store, backends):
        store.apply(make_definition("p1"))
        fired = []

        def delete_on_topic_create(request):
            if request.method == "POST" and "/kafkatopics" in request.url.path and not fired:
                fired.append(1)
                store.mark_for_deletion("p1")

        backends.on_request = delete_on_topic_create

        result = controller.reconcile("p1")

        assert result == ReconcileResult()
        assert store.get("p1") is None
        assert backends.requests(method="POST", fragment="/deployments") == []
        assert backends.kube == {}
        assert backends.subjects == {} and backends.artifacts == {}


class TestDeletion:
    """Every generation is torn down before the finalizer is released."""

    def test_delete_tears_down_everything(self, controller, store, backends):
        store.apply(make_definition("p1"))
        controller.reconcile("p1")
        store.apply(make_definition("p1", pause=True))
        controller.reconcile("p1")
        assert store.mark_for_deletion("p1") is True

        result = controller.reconcile("p1")

        assert result == ReconcileResult()
        assert store.get("p1") is None
        assert backends.kube == {}
        assert backends.subjects == {}
        assert backends.artifacts == {}
        assert backends.indices == {}

    def test_teardown_deletes_consumers_before_storage(self, controller, store, backends):
        store.apply(make_definition("p1"))
        controller.reconcile("p1")
        store.mark_for_deletion("p1")
        backends.reset_calls()

        controller.reconcile("p1")

        deletes = backends.requests(method="DELETE")
        first_topic = next(i for i, call in enumerate(deletes) if "/kafkatopics/" in call)
        last_deployment = max(i for i, call in enumerate(deletes) if "/deployments/" in call)
        assert last_deployment < first_topic

    def test_failed_teardown_keeps_finalizer(self, controller, store, backends):
        store.apply(make_definition("p1"))
        controller.reconcile("p1")
        store.mark_for_deletion("p1")
        backends.fail("DELETE", "/deployments/", 503, times=3)

        result = controller.reconcile("p1")

        record = store.get("p1")
        assert result.requeue is True
        assert record.finalizers == [FINALIZER]
        assert record.observed_status().generations["1000"].state == VersionState.REMOVING
        assert record.observed_status().condition(ConditionType.DELETING).status is True

        controller.reconcile("p1")
        assert store.get("p1") is None
        assert backends.kube == {}


@pytest.mark.parametrize(
    "left, right, expected",
    [
        (ReconcileResult(), ReconcileResult(), ReconcileResult()),
        (ReconcileResult(True, 10.0), ReconcileResult(), ReconcileResult(True, 10.0)),
        (ReconcileResult(True, 10.0), ReconcileResult(True, 4.0), ReconcileResult(True, 4.0)),
    ],
)
def test_reconcile_result_merge(left, right, expected):
    assert left.merge(right) == expected
