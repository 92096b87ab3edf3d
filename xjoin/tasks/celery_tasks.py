import logging

from celery import current_app

from xjoin.exceptions import NotFoundError
from xjoin.tasks.scheduler import CeleryReconcileScheduler

logger = logging.getLogger(__name__)


def get_controller():
    """Controllers are built per task from settings, nothing is shared between tasks"""
    from xjoin.controller.factory import build_controller

    return build_controller()


@current_app.task(bind=True)
def reconcile_pipeline_task(self, name: str):
    """
    Run one reconcile pass of a pipeline and requeue it per the result

    Args:
        name: Pipeline name
    """
    controller = get_controller()
    try:
        result = controller.reconcile(name)
    except NotFoundError:
        logger.info(f"Pipeline {name} disappeared before reconcile")
        return None
    except Exception as e:
        logger.error(f"Reconcile of pipeline {name} failed: {str(e)}", exc_info=True)
        raise
    finally:
        controller.close()

    if result.requeue:
        CeleryReconcileScheduler().schedule_reconcile(name, result.requeue_after or 0)
    return {"requeue": result.requeue, "requeue_after": result.requeue_after}


@current_app.task
def reconcile_all_pipelines_task():
    """Periodic resync: enqueue a reconcile for every stored pipeline"""
    controller = get_controller()
    try:
        names = controller.store.list_names()
        scheduler = CeleryReconcileScheduler()
        for name in names:
            scheduler.schedule_reconcile(name)
        logger.info(f"Enqueued reconcile of {len(names)} pipelines")
        return len(names)
    except Exception as e:
        logger.error(f"Pipeline resync failed: {e}", exc_info=True)
        raise
    finally:
        controller.close()
