#!/usr/bin/env python3
"""
CLI tool for managing index pipelines

Usage:
    python -m xjoin.cli.pipeline_manager --help
    python -m xjoin.cli.pipeline_manager apply -f pipeline.yaml
    python -m xjoin.cli.pipeline_manager status my-pipeline
    python -m xjoin.cli.pipeline_manager reconcile my-pipeline
    python -m xjoin.cli.pipeline_manager delete my-pipeline
    python -m xjoin.cli.pipeline_manager run
"""

import argparse
import json
import logging
import sys
import time

import yaml

# Setup logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def get_store():
    from xjoin.config import create_sync_engine
    from xjoin.db.ops import PipelineStore

    return PipelineStore(create_sync_engine())


def load_definition(path: str):
    """Load a pipeline definition from a YAML or JSON file"""
    from xjoin.db.models import PipelineDefinition

    with open(path, "r", encoding="utf-8") as f:
        document = yaml.safe_load(f)
    # accept both a bare definition and a {metadata: {name}, spec: {...}} manifest
    if isinstance(document, dict) and "spec" in document:
        spec = dict(document["spec"])
        spec.setdefault("name", document.get("metadata", {}).get("name"))
        if "kind" in document:
            spec.setdefault("kind", document["kind"])
        document = spec
    return PipelineDefinition.model_validate(document)


def apply_pipeline(path: str):
    """Create or update a pipeline"""
    definition = load_definition(path)
    record = get_store().apply(definition)
    print(f"Applied pipeline {record.name} (resource_version {record.resource_version})")


def show_status(name: str):
    """Print the observed status of a pipeline"""
    record = get_store().require(name)
    print(
        json.dumps(
            {
                "name": record.name,
                "resource_version": record.resource_version,
                "finalizers": record.finalizers,
                "deletion_timestamp": record.deletion_timestamp.isoformat() if record.deletion_timestamp else None,
                "status": record.status,
            },
            indent=2,
            ensure_ascii=False,
        )
    )


def delete_pipeline(name: str):
    """Request deletion of a pipeline"""
    pending = get_store().mark_for_deletion(name)
    if pending:
        print(f"Pipeline {name} marked for deletion, teardown runs on the next reconcile")
    else:
        print(f"Pipeline {name} deleted")


def reconcile_pipeline(name: str):
    """Run a single reconcile pass"""
    from xjoin.controller.factory import build_controller

    controller = build_controller()
    try:
        result = controller.reconcile(name)
    finally:
        controller.close()
    print(f"Reconciled {name}: requeue={result.requeue} requeue_after={result.requeue_after}")


def run_controller(poll_interval: float):
    """Watch the store and reconcile pipelines with the local scheduler until interrupted"""
    from xjoin.controller.factory import build_controller
    from xjoin.tasks.scheduler import LocalReconcileScheduler

    controller = build_controller()
    scheduler = LocalReconcileScheduler()

    def idle(seconds: float):
        scheduler.run_pending(controller)
        time.sleep(seconds)

    logger.info("Starting pipeline controller loop")
    try:
        for event in controller.store.watch(poll_interval=poll_interval, sleep=idle):
            if not event.deleted:
                scheduler.schedule_reconcile(event.name)
    finally:
        controller.close()


def main():
    parser = argparse.ArgumentParser(description="Index Pipeline Manager CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    apply_parser = subparsers.add_parser("apply", help="Create or update a pipeline")
    apply_parser.add_argument("-f", "--file", required=True, help="Pipeline definition (YAML or JSON)")

    status_parser = subparsers.add_parser("status", help="Show pipeline status")
    status_parser.add_argument("name", help="Pipeline name")

    delete_parser = subparsers.add_parser("delete", help="Delete a pipeline")
    delete_parser.add_argument("name", help="Pipeline name")

    reconcile_parser = subparsers.add_parser("reconcile", help="Run one reconcile pass")
    reconcile_parser.add_argument("name", help="Pipeline name")

    run_parser = subparsers.add_parser("run", help="Run the controller loop")
    run_parser.add_argument("--poll-interval", type=float, default=1.0, help="Store poll interval in seconds")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == "apply":
            apply_pipeline(args.file)
        elif args.command == "status":
            show_status(args.name)
        elif args.command == "delete":
            delete_pipeline(args.name)
        elif args.command == "reconcile":
            reconcile_pipeline(args.name)
        elif args.command == "run":
            run_controller(args.poll_interval)
        else:
            print(f"Unknown command: {args.command}")
            return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.error(f"Command failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
