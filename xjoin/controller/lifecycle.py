# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import pydantic

from xjoin.db.models import (
    FINALIZER,
    ConditionType,
    GenerationStatus,
    IndexPipeline,
    PipelineDefinition,
    VersionState,
    utc_now,
)
from xjoin.db.ops import PipelineStore
from xjoin.exceptions import ConflictError, ReconcileAborted, TransientBackendError, ValidationError
from xjoin.generation.synchronizer import GenerationSynchronizer
from xjoin.generation.tracker import VersionStateTracker
from xjoin.naming import GenerationMinter

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    requeue: bool = False
    requeue_after: Optional[float] = None

    def merge(self, other: "ReconcileResult") -> "ReconcileResult":
        """Keep the earliest requeue request"""
        if not other.requeue:
            return self
        if not self.requeue:
            return other
        delays = [d for d in (self.requeue_after, other.requeue_after) if d is not None]
        return ReconcileResult(requeue=True, requeue_after=min(delays) if delays else None)


DONE = ReconcileResult()


def _generation_order(generation: GenerationStatus) -> int:
    return int(generation.generation) if generation.generation.isdigit() else 0


class _Pass:
    """Mutable state of one reconcile pass over a single pipeline"""

    def __init__(self, record: IndexPipeline):
        self.name = record.name
        self.record = record
        self.status = record.observed_status()
        self.version = record.resource_version
        self.written = self.status.model_dump(mode="json")
        self.result = DONE

    def requeue(self, after: Optional[float]):
        self.result = self.result.merge(ReconcileResult(requeue=True, requeue_after=after))


class LifecycleController:
    """
    Per-pipeline state machine.

    One reconcile pass attaches the finalizer, mints a generation when none
    matches the current definition, materializes and validates it, promotes
    it to Active while the previous Active becomes Standby, retires Standby
    generations per the retention policy and tears down Removing ones. When
    the pipeline is marked for deletion every generation is torn down before
    the finalizer is released.

    All status writes are conditional on the resource_version read at the
    start of the pass; a lost race re-reads and retries the whole pass.
    """

    def __init__(
        self,
        store: PipelineStore,
        synchronizer: GenerationSynchronizer,
        tracker: VersionStateTracker,
        settings,
        minter: GenerationMinter = None,
    ):
        self.store = store
        self.synchronizer = synchronizer
        self.tracker = tracker
        self.settings = settings
        self.minter = minter or GenerationMinter()

    def close(self):
        self.synchronizer.adapters.close()

    def backoff(self, attempts: int) -> float:
        return min(self.settings.backoff_cap, self.settings.backoff_base * (2 ** max(attempts, 0)))

    def reconcile(self, name: str) -> ReconcileResult:
        for attempt in range(self.settings.conflict_retries + 1):
            try:
                return self._reconcile_once(name)
            except ConflictError as e:
                logger.info(f"Conflict reconciling pipeline {name} (attempt {attempt + 1}): {e}")
        logger.warning(f"Pipeline {name} kept conflicting, requeueing")
        return ReconcileResult(requeue=True, requeue_after=0)

    def _reconcile_once(self, name: str) -> ReconcileResult:
        record = self.store.get(name)
        if record is None:
            logger.debug(f"Pipeline {name} no longer exists")
            return DONE

        state = _Pass(record)
        if record.marked_for_deletion:
            return self._finalize(state)

        if FINALIZER not in record.finalizers:
            state.version = self.store.add_finalizer(name, FINALIZER, state.version)

        try:
            definition = record.definition()
        except pydantic.ValidationError as e:
            state.status.set_condition(ConditionType.SYNCED, False, "InvalidDefinition", str(e))
            self._write(state)
            return DONE

        try:
            self._progress(state, definition)
        except ReconcileAborted as e:
            logger.info(f"{e}, switching to teardown")
            record = self.store.get(name)
            return DONE if record is None else self._finalize(_Pass(record))

        self._write(state)
        if not state.result.requeue:
            state.requeue(self.settings.resync_interval)
        return state.result

    # Status persistence
    def _write(self, state: _Pass):
        current = state.status.model_dump(mode="json")
        if current == state.written:
            return
        state.version = self.store.update_status(state.name, state.status, state.version)
        state.written = current
        logger.debug(f"Wrote status of pipeline {state.name} at resource_version {state.version}")

    def _abort_check(self, name: str):
        def should_abort() -> bool:
            record = self.store.get(name)
            return record is None or record.marked_for_deletion

        return should_abort

    # Creation path
    def _progress(self, state: _Pass, definition: PipelineDefinition):
        status = state.status
        spec_hash = definition.spec_hash()

        for generation in status.in_state(VersionState.NEW, VersionState.VALID):
            if generation.spec_hash != spec_hash:
                logger.info(f"Generation {generation.generation} of {state.name} is stale, retiring it")
                generation.transition(VersionState.REMOVING)

        active = status.active()
        in_flight = status.in_flight()
        if in_flight is None and (active is None or active.spec_hash != spec_hash):
            in_flight = self._mint(state, spec_hash)

        if in_flight is not None:
            self._advance(state, definition, in_flight)
        elif active is not None:
            self._correct_drift(state, definition, active)

        self._retire_standby(state)
        self._teardown_removing(state)

    def _mint(self, state: _Pass, spec_hash: str) -> GenerationStatus:
        token = self.minter.mint(state.status.generations.keys())
        generation = GenerationStatus(generation=token, spec_hash=spec_hash)
        state.status.generations[token] = generation
        # the conditional write is the serialization point: a concurrent pass
        # that also minted loses here and re-reads
        self._write(state)
        logger.info(f"Minted generation {token} for pipeline {state.name}")
        return generation

    def _record_members(self, state: _Pass, generation: GenerationStatus, resources):
        known = {(m.kind, m.name) for m in generation.members}
        for member in resources.members():
            if (member.kind, member.name) not in known:
                generation.members.append(member)
        self._write(state)

    def _apply(self, state: _Pass, definition: PipelineDefinition, generation: GenerationStatus) -> bool:
        """Plan, record members, then materialize. Returns True on success."""
        status = state.status
        try:
            resources = self.synchronizer.plan(definition, generation.generation)
            self._record_members(state, generation, resources)
            self.synchronizer.materialize(
                definition, generation.generation, should_abort=self._abort_check(state.name), resources=resources
            )
        except ValidationError as e:
            generation.failed = True
            generation.message = str(e)
            status.set_condition(ConditionType.SYNCED, False, "ValidationError", str(e))
            logger.warning(f"Generation {generation.generation} of {state.name} rejected: {e}")
            return False
        except TransientBackendError as e:
            generation.attempts += 1
            generation.message = str(e)
            if generation.attempts > self.settings.max_materialize_attempts:
                status.set_condition(
                    ConditionType.SYNCED,
                    False,
                    "ConsistencyViolation",
                    f"generation {generation.generation} still partial after {generation.attempts} attempts: {e}",
                )
            else:
                status.set_condition(ConditionType.SYNCED, False, "TransientBackendError", str(e))
            delay = self.backoff(generation.attempts)
            logger.info(f"Materialize of {generation.generation} failed transiently, requeue in {delay}s: {e}")
            state.requeue(delay)
            return False

        generation.attempts = 0
        generation.message = None
        status.set_condition(ConditionType.SYNCED, True, "Materialized")
        return True

    def _advance(self, state: _Pass, definition: PipelineDefinition, generation: GenerationStatus):
        status = state.status
        if generation.failed:
            logger.debug(f"Generation {generation.generation} of {state.name} failed, waiting for a new definition")
            return
        if not self._apply(state, definition, generation):
            return

        evaluation = self.tracker.observe(generation, definition.validation)
        if evaluation.state != VersionState.VALID:
            status.set_condition(ConditionType.READY, status.active_version is not None, "Validating", evaluation.message)
            state.requeue(self.settings.validation_poll_interval)
            return

        generation.transition(VersionState.VALID)
        self._promote(state, generation)

    def _promote(self, state: _Pass, generation: GenerationStatus):
        status = state.status
        previous = status.active()
        if previous is not None and previous.generation != generation.generation:
            previous.transition(VersionState.STANDBY)
            status.standby_versions.append(previous.generation)
            logger.info(f"Generation {previous.generation} of {state.name} moved to Standby")
        generation.transition(VersionState.ACTIVE)
        status.active_version = generation.generation
        status.set_condition(ConditionType.READY, True, "Active", f"generation {generation.generation} is active")
        logger.info(f"Generation {generation.generation} of {state.name} is Active")

    def _correct_drift(self, state: _Pass, definition: PipelineDefinition, active: GenerationStatus):
        if active.spec_hash != definition.spec_hash():
            return
        self._apply(state, definition, active)

    # Standby retention
    def _retire_standby(self, state: _Pass):
        status = state.status
        standby = sorted(status.in_state(VersionState.STANDBY), key=_generation_order, reverse=True)
        ttl = self.settings.standby_ttl_seconds
        now = utc_now()
        for position, generation in enumerate(standby):
            expired = ttl is not None and now - generation.state_changed_at >= timedelta(seconds=ttl)
            over_limit = position >= self.settings.max_standby_versions
            if expired or over_limit:
                logger.info(f"Standby generation {generation.generation} of {state.name} retired")
                generation.transition(VersionState.REMOVING)
        status.standby_versions = [g.generation for g in status.in_state(VersionState.STANDBY)]

    # Teardown path
    def _teardown_removing(self, state: _Pass) -> bool:
        """Returns True once no generation is left in Removing"""
        removing = sorted(state.status.in_state(VersionState.REMOVING), key=_generation_order)
        if removing:
            self._write(state)
        for generation in removing:
            try:
                self.synchronizer.teardown(generation.members)
            except TransientBackendError as e:
                generation.attempts += 1
                generation.message = str(e)
                state.requeue(self.backoff(generation.attempts))
                logger.info(f"Teardown of {generation.generation} of {state.name} interrupted: {e}")
                return False
            except ValidationError as e:
                # a rejected delete blocks the finalizer, report it and retry at the cap
                generation.message = str(e)
                state.status.set_condition(ConditionType.SYNCED, False, "TeardownRejected", str(e))
                state.requeue(self.settings.backoff_cap)
                logger.warning(f"Teardown of {generation.generation} of {state.name} rejected: {e}")
                return False
            generation.transition(VersionState.REMOVED)
            generation.attempts = 0
            generation.message = None
            if state.status.active_version == generation.generation:
                state.status.active_version = None
            logger.info(f"Generation {generation.generation} of {state.name} removed")
        return True

    def _finalize(self, state: _Pass) -> ReconcileResult:
        status = state.status
        if FINALIZER not in state.record.finalizers:
            return DONE

        status.set_condition(ConditionType.DELETING, True, "Finalizing")
        status.set_condition(ConditionType.READY, False, "Deleting")
        for generation in status.generations.values():
            if generation.state != VersionState.REMOVED:
                generation.transition(VersionState.REMOVING)
        status.active_version = None
        status.standby_versions = []

        done = self._teardown_removing(state)
        self._write(state)
        if not done:
            return state.result

        self.store.remove_finalizer(state.name, FINALIZER, state.version)
        logger.info(f"Released finalizer of pipeline {state.name}")
        return DONE
