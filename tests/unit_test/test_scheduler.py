"""
Unit tests for reconcile scheduling: the in-process queue, the Celery
scheduler and the Celery task bodies.
"""

from unittest.mock import MagicMock, patch

import pytest

from xjoin.controller.lifecycle import ReconcileResult
from xjoin.exceptions import NotFoundError
from xjoin.tasks import celery_tasks
from xjoin.tasks.scheduler import (
    CeleryReconcileScheduler,
    LocalReconcileScheduler,
    create_reconcile_scheduler,
)


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class TestLocalReconcileScheduler:
    def test_due_entries_pop_in_order(self):
        clock = FakeClock()
        scheduler = LocalReconcileScheduler(clock=clock)
        scheduler.schedule_reconcile("b", 5)
        scheduler.schedule_reconcile("a", 1)
        scheduler.schedule_reconcile("c", 60)

        assert scheduler.pop_due() == []
        clock.now += 10
        assert scheduler.pop_due() == ["a", "b"]
        assert len(scheduler) == 1
        assert scheduler.next_due_in() == 50

    def test_earlier_due_time_wins(self):
        clock = FakeClock()
        scheduler = LocalReconcileScheduler(clock=clock)
        scheduler.schedule_reconcile("p1", 30)
        scheduler.schedule_reconcile("p1", 300)
        scheduler.schedule_reconcile("p1", 0)

        assert len(scheduler) == 1
        assert scheduler.pop_due() == ["p1"]
        clock.now += 1000
        assert scheduler.pop_due() == []

    def test_empty_queue(self):
        scheduler = LocalReconcileScheduler(clock=FakeClock())
        assert scheduler.next_due_in() is None
        assert scheduler.schedule_reconcile("p1") == "local_p1"

    def test_run_pending_requeues_from_result(self):
        clock = FakeClock()
        scheduler = LocalReconcileScheduler(clock=clock)
        controller = MagicMock()
        controller.reconcile.side_effect = [ReconcileResult(True, 10.0), ReconcileResult()]
        scheduler.schedule_reconcile("p1")
        scheduler.schedule_reconcile("p2")

        assert scheduler.run_pending(controller) == 2
        assert len(scheduler) == 1
        assert scheduler.next_due_in() == 10.0

    def test_run_pending_against_real_controller(self, controller, store):
        from fake_backends import make_definition

        store.apply(make_definition("p1"))
        scheduler = LocalReconcileScheduler(clock=FakeClock())
        scheduler.schedule_reconcile("p1")

        scheduler.run_pending(controller)

        assert store.get("p1").observed_status().active_version == "1000"
        assert scheduler.next_due_in() == 300.0


class TestCeleryReconcileScheduler:
    def test_schedule_uses_countdown(self):
        with patch.object(celery_tasks.reconcile_pipeline_task, "apply_async") as apply_async:
            apply_async.return_value.id = "task-1"
            task_id = CeleryReconcileScheduler().schedule_reconcile("p1", 4.0)

        assert task_id == "task-1"
        apply_async.assert_called_once_with(args=["p1"], countdown=4.0)

    def test_factory(self):
        assert isinstance(create_reconcile_scheduler("local"), LocalReconcileScheduler)
        assert isinstance(create_reconcile_scheduler("celery"), CeleryReconcileScheduler)
        with pytest.raises(ValueError):
            create_reconcile_scheduler("cron")


class TestCeleryTasks:
    def test_reconcile_task_requeues(self):
        controller = MagicMock()
        controller.reconcile.return_value = ReconcileResult(True, 10.0)
        with patch.object(celery_tasks, "get_controller", return_value=controller), patch.object(
            CeleryReconcileScheduler, "schedule_reconcile"
        ) as schedule:
            result = celery_tasks.reconcile_pipeline_task("p1")

        assert result == {"requeue": True, "requeue_after": 10.0}
        schedule.assert_called_once_with("p1", 10.0)
        controller.close.assert_called_once_with()

    def test_reconcile_task_settled(self):
        controller = MagicMock()
        controller.reconcile.return_value = ReconcileResult()
        with patch.object(celery_tasks, "get_controller", return_value=controller), patch.object(
            CeleryReconcileScheduler, "schedule_reconcile"
        ) as schedule:
            result = celery_tasks.reconcile_pipeline_task("p1")

        assert result == {"requeue": False, "requeue_after": None}
        schedule.assert_not_called()

    def test_reconcile_task_missing_pipeline(self):
        controller = MagicMock()
        controller.reconcile.side_effect = NotFoundError("gone")
        with patch.object(celery_tasks, "get_controller", return_value=controller):
            assert celery_tasks.reconcile_pipeline_task("p1") is None

    def test_reconcile_task_propagates_errors(self):
        controller = MagicMock()
        controller.reconcile.side_effect = RuntimeError("boom")
        with patch.object(celery_tasks, "get_controller", return_value=controller):
            with pytest.raises(RuntimeError):
                celery_tasks.reconcile_pipeline_task("p1")

        controller.close.assert_called_once_with()

    def test_reconcile_all_enqueues_every_pipeline(self):
        controller = MagicMock()
        controller.store.list_names.return_value = ["p1", "p2"]
        with patch.object(celery_tasks, "get_controller", return_value=controller), patch.object(
            CeleryReconcileScheduler, "schedule_reconcile"
        ) as schedule:
            assert celery_tasks.reconcile_all_pipelines_task() == 2

        assert [c.args for c in schedule.call_args_list] == [("p1",), ("p2",)]
        controller.close.assert_called_once_with()
